"""Core orchestration logic for the asynchronous message dispatcher."""

from __future__ import annotations

import asyncio
import functools
import re
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import aiohttp

from .channel import ChannelManager, SessionDriver
from .errors import ConfigurationError, MessageServiceError, ValidationError
from .gateway import GatewaySession, purge_session_file
from .logger import get_logger
from .persistence import DEFAULT_PRIORITY, PRIORITY_RANKS, Persistence
from .processor import ProcessorConfig, QueueProcessor
from .prometheus import MessageMetrics
from .recovery import RecoveryCoordinator
from .reporter import DeliveryReporter
from .retry import DEFAULT_MAX_ATTEMPTS
from .stall import StallDetector

DEFAULT_COUNTRY_CODE = "62"
MIN_NUMBER_DIGITS = 10
MAX_NUMBER_DIGITS = 15
CHAT_ID_SUFFIX = "@c.us"

_NON_DIGITS = re.compile(r"\D")


def normalise_number(number: Any, country_code: str = DEFAULT_COUNTRY_CODE) -> Tuple[str, str]:
    """
    Normalise a phone number into the channel's addressing scheme.

    Returns:
        tuple: (formatted_number, chat_id)

    Raises:
        ValidationError: when the number does not have 10 to 15 digits
    """
    if number is None:
        raise ValidationError("missing number", field="number")
    digits = _NON_DIGITS.sub("", str(number))
    if not MIN_NUMBER_DIGITS <= len(digits) <= MAX_NUMBER_DIGITS:
        raise ValidationError(
            f"Invalid phone number length. Must be {MIN_NUMBER_DIGITS}-{MAX_NUMBER_DIGITS} digits.",
            field="number",
        )
    if digits.startswith("0"):
        digits = country_code + digits[1:]
    if not digits.startswith(country_code):
        digits = country_code + digits
    return digits, f"{digits}{CHAT_ID_SUFFIX}"


class AsyncMessageCore:
    """Wire the job store, the channel and the background workers together."""

    def __init__(
        self,
        *,
        db_path: str = "/data/message_service.db",
        session_factory: Optional[Callable[[], SessionDriver]] = None,
        purge_credentials: Optional[Callable[[], Awaitable[None]]] = None,
        gateway_url: str | None = None,
        session_name: str = "default",
        gateway_api_key: str | None = None,
        credentials_path: str | None = None,
        logger=None,
        metrics: MessageMetrics | None = None,
        country_code: str = DEFAULT_COUNTRY_CODE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_delay_ms: int | None = None,
        max_delay_ms: int | None = None,
        max_retry_age_ms: int | None = None,
        max_concurrent: int = 3,
        process_interval_ms: int = 5000,
        stalled_timeout_ms: int = 300000,
        stall_check_interval: float = 60.0,
        keepalive_interval: float = 120.0,
        init_timeout: float = 60.0,
        auth_failure_delay: float = 10.0,
        disconnect_delay: float = 3.0,
        retry_delay: float = 30.0,
        retention_hours: float = 24,
        cleanup_interval: float = 3600.0,
        auto_connect: bool = True,
        report_url: str | None = None,
        report_token: str | None = None,
        report_user: str | None = None,
        report_password: str | None = None,
        report_delivery_callable: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        report_interval: float = 5.0,
        report_batch_size: int = 50,
        max_report_backlog: int = 10000,
        result_queue_size: int = 1000,
        max_enqueue_batch: int = 1000,
        shutdown_timeout: float = 30.0,
        log_delivery_activity: bool = False,
    ):
        """Prepare the runtime collaborators."""
        self.logger = logger or get_logger()
        self.metrics = metrics or MessageMetrics()
        self.persistence = Persistence(db_path, base_delay_ms=base_delay_ms, max_delay_ms=max_delay_ms)

        if session_factory is None:
            if not gateway_url:
                raise ConfigurationError("A session gateway URL is required")
            session_factory = functools.partial(
                GatewaySession,
                gateway_url,
                session_name,
                api_key=gateway_api_key,
                credentials_path=credentials_path,
            )
            if purge_credentials is None and credentials_path:
                purge_credentials = functools.partial(purge_session_file, credentials_path)

        self.channel = ChannelManager(
            session_factory,
            purge_credentials=purge_credentials,
            keepalive_interval=keepalive_interval,
            init_timeout=init_timeout,
            metrics=self.metrics,
        )
        self.reporter = DeliveryReporter(
            report_url,
            report_callable=report_delivery_callable,
            token=report_token,
            user=report_user,
            password=report_password,
            log_delivery_activity=log_delivery_activity,
        )
        self.processor = QueueProcessor(
            self.persistence,
            self.channel,
            config=ProcessorConfig(
                max_concurrent=max_concurrent,
                process_interval_ms=process_interval_ms,
                stalled_timeout_ms=stalled_timeout_ms,
            ),
            on_event=self._on_event,
            metrics=self.metrics,
            max_retry_age_ms=max_retry_age_ms,
            log_delivery_activity=log_delivery_activity,
        )
        self.stall_detector = StallDetector(
            self.persistence,
            lambda: self.processor.config.stalled_timeout_ms,
            interval=stall_check_interval,
            on_event=self._on_event,
            metrics=self.metrics,
        )
        self.recovery = RecoveryCoordinator(
            self.channel,
            self.processor,
            auth_failure_delay=auth_failure_delay,
            disconnect_delay=disconnect_delay,
            retry_delay=retry_delay,
            metrics=self.metrics,
        )
        self.channel.add_ready_listener(self._on_channel_ready)

        self._country_code = str(country_code)
        self._max_attempts = max(1, int(max_attempts))
        self._retention_hours = float(retention_hours)
        self._cleanup_interval = float(cleanup_interval)
        self._auto_connect = bool(auto_connect)
        self._max_enqueue_batch = max(1, int(max_enqueue_batch))
        self._shutdown_timeout = float(shutdown_timeout)
        self._log_delivery_activity = bool(log_delivery_activity)
        self._report_interval = max(0.0, float(report_interval))
        self._report_batch_size = max(1, int(report_batch_size))
        self._max_report_backlog = max(1, int(max_report_backlog))

        self._stop = asyncio.Event()
        self._result_queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=result_queue_size)
        self._task_cleanup: Optional[asyncio.Task] = None
        self._task_connect: Optional[asyncio.Task] = None
        self._task_report: Optional[asyncio.Task] = None
        self._pending_reports: Deque[Dict[str, Any]] = deque()
        self._wake_report_event = asyncio.Event()

    async def init(self) -> None:
        """Initialise persistence and the pending gauge."""
        await self.persistence.init_db()
        await self._refresh_queue_gauge()

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute one of the external commands; errors come back as ``{"ok": False}``."""
        payload = payload or {}
        try:
            return await self._dispatch_command(cmd, payload)
        except MessageServiceError as exc:
            result: Dict[str, Any] = {"ok": False, "error": str(exc), "code": exc.code}
            field = getattr(exc, "field", None)
            if field:
                result["field"] = field
            return result

    async def _dispatch_command(self, cmd: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if cmd == "sendMessage":
            queued = await self._submit(payload)
            return {"ok": True, **queued}
        if cmd == "sendMessages":
            return await self._handle_send_messages(payload)
        if cmd == "getJob":
            job = await self._lookup_job(payload)
            if job is None:
                return {"ok": False, "error": "job not found"}
            return {"ok": True, "job": job}
        if cmd == "getJobs":
            jobs = await self.persistence.get_jobs(
                payload.get("status", "waiting"),
                self._int_field(payload, "start", 0),
                self._int_field(payload, "end", 10),
            )
            return {"ok": True, "jobs": jobs}
        if cmd == "getStats":
            return {"ok": True, "stats": await self.persistence.get_stats()}
        if cmd == "getQueueStatus":
            return {
                "ok": True,
                "processor": await self.processor.get_stats(),
                "channel": self.channel.status(),
                "recovery": {
                    "recovering": self.recovery.recovering,
                    "attempts": self.recovery.attempts,
                    "last_delay": self.recovery.last_delay,
                },
            }
        if cmd == "pauseQueue":
            await self.processor.stop(drain=False)
            paused = await self.persistence.pause_all()
            await self._refresh_queue_gauge()
            return {"ok": True, "paused": paused}
        if cmd == "resumeQueue":
            resumed = await self.persistence.resume_all()
            await self.processor.resume()
            self.processor.run_now()
            return {"ok": True, "resumed": resumed}
        if cmd == "clearQueue":
            removed = await self.persistence.clear_all()
            await self._refresh_queue_gauge()
            return {"ok": True, "removed": removed}
        if cmd == "cleanQueue":
            hours = payload.get("retention_hours", self._retention_hours)
            removed = await self.persistence.clean_old_jobs(float(hours))
            return {"ok": True, "removed": removed}
        if cmd == "retryJob":
            job_id = self._require(payload, "job_id")
            if not await self.persistence.retry_job(job_id):
                return {"ok": False, "error": "job not found or not retryable"}
            await self._refresh_queue_gauge()
            self.processor.run_now()
            return {"ok": True, "job_id": job_id}
        if cmd == "removeJob":
            job_id = self._require(payload, "job_id")
            if not await self.persistence.remove_job(job_id):
                return {"ok": False, "error": "job not found"}
            await self._refresh_queue_gauge()
            return {"ok": True, "job_id": job_id}
        if cmd == "updateConfig":
            applied = await self.processor.update_config(**payload)
            return {"ok": True, "applied": applied, "config": self._config_snapshot()}
        if cmd == "runNow":
            self.processor.run_now()
            return {"ok": True}
        if cmd == "channelStatus":
            return {"ok": True, "channel": self.channel.status()}
        if cmd == "connect":
            await self.channel.connect()
            return {"ok": True, "channel": self.channel.status()}
        if cmd == "resetSession":
            await self.reset_session()
            return {"ok": True, "channel": self.channel.status()}
        return {"ok": False, "error": "unknown command"}

    @staticmethod
    def _require(payload: Dict[str, Any], key: str) -> str:
        value = payload.get(key)
        if not value:
            raise ValidationError(f"missing '{key}'", field=key)
        return str(value)

    @staticmethod
    def _int_field(payload: Dict[str, Any], key: str, default: int) -> int:
        value = payload.get(key, default)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"'{key}' must be an integer, got {value!r}", field=key) from None

    def _config_snapshot(self) -> Dict[str, int]:
        config = self.processor.config
        return {
            "max_concurrent": config.max_concurrent,
            "process_interval_ms": config.process_interval_ms,
            "stalled_timeout_ms": config.stalled_timeout_ms,
        }

    async def _lookup_job(self, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if payload.get("job_id"):
            return await self.persistence.get_job(str(payload["job_id"]))
        if payload.get("message_id"):
            return await self.persistence.get_job_by_message_id(str(payload["message_id"]))
        raise ValidationError("missing 'job_id'", field="job_id")

    async def _submit(self, item: Dict[str, Any]) -> Dict[str, Any]:
        message = item.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Number and message are required", field="message")
        original = item.get("number")
        formatted, chat_id = normalise_number(original, self._country_code)
        priority = str(item.get("priority") or DEFAULT_PRIORITY).upper()
        if priority not in PRIORITY_RANKS:
            raise ValidationError(f"unknown priority '{item.get('priority')}'", field="priority")
        queued = await self.persistence.enqueue(
            {
                "chat_id": chat_id,
                "message": message,
                "formatted_number": formatted,
                "original_number": str(original),
            },
            priority,
            item.get("delay") or 0,
            message_id=item.get("message_id"),
            max_attempts=self._max_attempts,
        )
        self.logger.debug("Queued message %s for %s (%s)", queued["message_id"], formatted, queued["status"])
        await self._refresh_queue_gauge()
        if queued["status"] == "waiting":
            self.processor.run_now()
        return {**queued, "to": formatted, "chat_id": chat_id}

    async def _handle_send_messages(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        messages = payload.get("messages")
        if not isinstance(messages, list):
            return {"ok": False, "error": "messages must be a list"}
        if len(messages) > self._max_enqueue_batch:
            return {"ok": False, "error": f"Cannot enqueue more than {self._max_enqueue_batch} messages at once"}

        queued: List[Dict[str, Any]] = []
        rejected: List[Dict[str, Any]] = []
        for index, item in enumerate(messages):
            if not isinstance(item, dict):
                rejected.append({"index": index, "message_id": None, "reason": "invalid payload"})
                continue
            try:
                queued.append(await self._submit(item))
            except ValidationError as exc:
                rejected.append({"index": index, "message_id": item.get("message_id"), "reason": str(exc)})

        if not queued:
            return {"ok": False, "error": "all messages rejected", "rejected": rejected}
        return {"ok": True, "queued": queued, "rejected": rejected}

    async def reset_session(self) -> None:
        """Drop the session and its credentials, then reconnect in the background."""
        await self.recovery.cancel()
        await self.channel.reset()
        self._schedule_connect()

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the processor, the stall detector and the maintenance tasks."""
        self.logger.debug("Starting AsyncMessageCore...")
        await self.init()
        self._stop.clear()
        await self.processor.start()
        self.stall_detector.start()
        if self._cleanup_interval > 0:
            self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="retention-cleanup-loop")
        if self.reporter.enabled:
            self._task_report = asyncio.create_task(self._report_loop(), name="delivery-report-loop")
        if self._auto_connect:
            self._schedule_connect()
        self.logger.debug("All background tasks created")

    async def stop(self) -> None:
        """Stop the background tasks and close the session."""
        self._stop.set()
        await self.recovery.cancel()
        await self.stall_detector.stop()
        try:
            await asyncio.wait_for(self.processor.stop(drain=True), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Shutdown with %d job(s) still in flight; they will be reclaimed as stalled",
                self.processor.in_flight_count,
            )
        for task in (self._task_cleanup, self._task_connect):
            if task is not None and not task.done():
                task.cancel()
        self._wake_report_event.set()
        await asyncio.gather(
            *(task for task in (self._task_cleanup, self._task_connect, self._task_report) if task),
            return_exceptions=True,
        )
        self._task_cleanup = None
        self._task_connect = None
        self._task_report = None
        await self._flush_reports()
        await self.channel.shutdown()

    def _schedule_connect(self) -> None:
        if self._task_connect is not None and not self._task_connect.done():
            return
        self._task_connect = asyncio.create_task(self._connect_in_background(), name="channel-connect")

    async def _connect_in_background(self) -> None:
        try:
            await self.channel.connect()
        except MessageServiceError as exc:
            self.logger.error("Channel connection failed: %s", exc)

    async def _on_channel_ready(self) -> None:
        self.logger.info("Channel ready, waking queue processor")
        self.processor.run_now()

    # ---------------------------------------------------------------- housekeeping
    async def _cleanup_loop(self) -> None:
        """Periodically delete terminal jobs older than the retention window."""
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(self._cleanup_interval):
                    await self._stop.wait()
                return
            except asyncio.TimeoutError:
                pass
            try:
                removed = await self.persistence.clean_old_jobs(self._retention_hours)
            except MessageServiceError as exc:
                self.logger.error("Retention cleanup failed: %s", exc)
                continue
            if removed:
                self.logger.info("Removed %d job(s) past the %sh retention", removed, self._retention_hours)

    async def _refresh_queue_gauge(self) -> None:
        """Refresh the metric describing pending jobs."""
        try:
            count = await self.persistence.count_actionable()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(count)

    # ----------------------------------------------------------------- events
    async def results(self):
        """Yield delivery events to API consumers."""
        while True:
            event = await self._result_queue.get()
            yield event

    def _log_delivery_event(self, event: Dict[str, Any]) -> None:
        """Emit a console log describing the outcome of a delivery attempt."""
        if not self._log_delivery_activity:
            return
        kind = event.get("event")
        msg_id = event.get("message_id") or "-"
        if kind == "message_success":
            self.logger.info("Delivery succeeded for message %s (to=%s)", msg_id, event.get("to") or "-")
        elif kind == "message_retry":
            self.logger.info(
                "Delivery deferred for message %s (attempt %s, next retry at %s)",
                msg_id,
                event.get("attempts"),
                event.get("next_retry"),
            )
        elif kind == "message_failed":
            self.logger.warning("Delivery failed for message %s: %s", msg_id, event.get("error") or "unknown error")
        elif kind == "stalled_jobs":
            self.logger.info("Reclaimed %s stalled job(s)", event.get("count"))

    async def _publish_result(self, event: Dict[str, Any]) -> None:
        """Publish a delivery event, dropping it when nobody drains the queue."""
        self._log_delivery_event(event)
        try:
            self._result_queue.put_nowait(event)
        except asyncio.QueueFull:
            self.logger.debug("Result queue full, dropping %s event", event.get("event"))

    async def _on_event(self, event: str, data: Dict[str, Any]) -> None:
        """Callback shared by the processor and the stall detector."""
        if event in ("message_success", "message_retry", "message_failed", "stalled_jobs"):
            await self._publish_result({"event": event, **data})
            await self._refresh_queue_gauge()
        if self.reporter.accepts(event):
            self._queue_report(self.reporter.build_report(event, data))

    # ----------------------------------------------------------------- reports
    def _queue_report(self, report: Dict[str, Any]) -> None:
        """Append a report for the background loop and wake it up."""
        if len(self._pending_reports) >= self._max_report_backlog:
            dropped = self._pending_reports.popleft()
            self.logger.warning(
                "Delivery report backlog full, dropping oldest %s report for %s",
                dropped.get("event"),
                dropped.get("message_id") or "-",
            )
        self._pending_reports.append(report)
        self._wake_report_event.set()

    async def _report_loop(self) -> None:
        """Background coroutine that pushes queued delivery reports upstream."""
        while not self._stop.is_set():
            try:
                delivered = await self._process_report_cycle()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in delivery report loop: %s", exc)
                delivered = False
            if delivered and self._pending_reports:
                continue
            await self._wait_for_report_wakeup(self._report_interval)

    async def _process_report_cycle(self) -> bool:
        """Send one batch of queued reports; a failed batch goes back to the front."""
        if not self._pending_reports:
            return False
        batch = [
            self._pending_reports.popleft()
            for _ in range(min(self._report_batch_size, len(self._pending_reports)))
        ]
        try:
            await self.reporter.send(batch)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            target = self.reporter.url or "custom callable"
            self.logger.warning(
                "Delivery report batch not delivered (%s, %d item(s)), retrying in %ss: %s",
                target,
                len(batch),
                self._report_interval,
                exc,
            )
            self._pending_reports.extendleft(reversed(batch))
            while len(self._pending_reports) > self._max_report_backlog:
                self._pending_reports.popleft()
            return False
        return True

    async def _flush_reports(self) -> None:
        """Last delivery attempt for reports still queued at shutdown."""
        while self._pending_reports:
            try:
                if not await self._process_report_cycle():
                    break
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error while flushing delivery reports: %s", exc)
                break
        if self._pending_reports:
            self.logger.warning("Shutdown with %d delivery report(s) not delivered", len(self._pending_reports))

    async def _wait_for_report_wakeup(self, timeout: float) -> None:
        """Pause the report loop until new reports arrive or the interval elapses."""
        if self._stop.is_set():
            return
        try:
            async with asyncio.timeout(timeout):
                await self._wake_report_event.wait()
        except asyncio.TimeoutError:
            pass
        self._wake_report_event.clear()
