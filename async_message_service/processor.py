"""Bounded-concurrency processor draining the job store through the channel."""

from __future__ import annotations

import asyncio
import math
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .channel import ChannelManager
from .errors import ConfigurationError, PermanentRecipientError, StorageError
from .logger import get_logger
from .persistence import Persistence, utc_now_ms
from .retry import classify_error, is_invalid_recipient_error

MAX_CONCURRENT_BOUNDS = (1, 10)
MIN_PROCESS_INTERVAL_MS = 2000
MIN_STALLED_TIMEOUT_MS = 60000

# Progress checkpoints, strictly increasing.
PROGRESS_VALIDATION_STARTED = 10
PROGRESS_VALIDATION_PASSED = 30
PROGRESS_SEND_STARTED = 60

EventCallback = Callable[[str, Dict[str, Any]], Awaitable[None]]


@dataclass
class ProcessorConfig:
    """Tunables of the queue processor (all durations in milliseconds)."""

    max_concurrent: int = 3
    process_interval_ms: int = 5000
    stalled_timeout_ms: int = 300000

    def __post_init__(self) -> None:
        validate_config_values(asdict(self))


def validate_config_values(values: Dict[str, Any]) -> Dict[str, int]:
    """Coerce and bound-check processor settings, raising :class:`ConfigurationError`."""
    known = {"max_concurrent", "process_interval_ms", "stalled_timeout_ms"}
    unknown = set(values) - known
    if unknown:
        raise ConfigurationError(f"Unknown processor setting(s): {', '.join(sorted(unknown))}")
    cleaned: Dict[str, int] = {}
    for key, raw in values.items():
        if isinstance(raw, bool):
            raise ConfigurationError(f"{key} must be an integer")
        try:
            value = int(raw)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"{key} must be an integer") from exc
        cleaned[key] = value
    if "max_concurrent" in cleaned:
        low, high = MAX_CONCURRENT_BOUNDS
        if not low <= cleaned["max_concurrent"] <= high:
            raise ConfigurationError(f"max_concurrent must be between {low} and {high}")
    if "process_interval_ms" in cleaned and cleaned["process_interval_ms"] < MIN_PROCESS_INTERVAL_MS:
        raise ConfigurationError(f"process_interval_ms must be at least {MIN_PROCESS_INTERVAL_MS}")
    if "stalled_timeout_ms" in cleaned and cleaned["stalled_timeout_ms"] < MIN_STALLED_TIMEOUT_MS:
        raise ConfigurationError(f"stalled_timeout_ms must be at least {MIN_STALLED_TIMEOUT_MS}")
    return cleaned


class QueueProcessor:
    """Claim ready jobs and dispatch each one as an independent task."""

    def __init__(
        self,
        persistence: Persistence,
        channel: ChannelManager,
        *,
        config: ProcessorConfig | None = None,
        on_event: Optional[EventCallback] = None,
        metrics=None,
        logger=None,
        max_retry_age_ms: Optional[int] = None,
        drain_poll_interval: float = 1.0,
        log_delivery_activity: bool = False,
    ):
        self.persistence = persistence
        self.channel = channel
        self.config = config or ProcessorConfig()
        self.metrics = metrics
        self.logger = logger or get_logger("AsyncMessageService.processor")
        self._on_event = on_event
        self._max_retry_age_ms = max_retry_age_ms
        self._drain_poll_interval = max(0.01, float(drain_poll_interval))
        self._log_delivery_activity = bool(log_delivery_activity)

        self._processing = False
        self._task_loop: Optional[asyncio.Task] = None
        self._wake_event = asyncio.Event()
        self._in_flight: Dict[str, asyncio.Task] = {}

    # ----------------------------------------------------------------- state
    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def in_flight_ids(self) -> List[str]:
        return list(self._in_flight)

    # ------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Begin ticking: one immediate tick, then every ``process_interval_ms``."""
        if self._task_loop is not None and not self._task_loop.done():
            return
        self.logger.info("Starting queue processor (max_concurrent=%d)", self.config.max_concurrent)
        self._processing = True
        self._wake_event.clear()
        self._task_loop = asyncio.create_task(self._dispatch_loop(), name="queue-dispatch-loop")
        await self._emit("started", {})

    async def stop(self, *, drain: bool = True) -> None:
        """Stop scheduling ticks and, when ``drain``, wait for in-flight sends to settle.

        Sends already running are never cancelled; a hung send is eventually
        reclaimed by the stall detector.
        """
        was_processing = self._processing
        self._processing = False
        self._wake_event.set()
        task, self._task_loop = self._task_loop, None
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)
        if drain:
            await self.drain()
        if was_processing:
            self.logger.info("Queue processor stopped")
            await self._emit("stopped", {})

    async def drain(self) -> None:
        """Poll until every in-flight dispatch has finished."""
        while self._in_flight:
            self.logger.info("Waiting for %d job(s) to finish...", len(self._in_flight))
            await asyncio.sleep(self._drain_poll_interval)

    async def resume(self) -> None:
        """Restart processing if stopped; no-op when already running."""
        if self._processing and self._task_loop is not None and not self._task_loop.done():
            return
        await self.start()
        await self._emit("resumed", {})

    def run_now(self) -> None:
        """Wake the dispatch loop for an immediate tick."""
        self._wake_event.set()

    async def update_config(self, **partial: Any) -> Dict[str, int]:
        """Validate every field first, then apply; restart the timer if the interval changed."""
        cleaned = validate_config_values(partial)
        interval_changed = (
            "process_interval_ms" in cleaned
            and cleaned["process_interval_ms"] != self.config.process_interval_ms
        )
        for key, value in cleaned.items():
            setattr(self.config, key, value)
        if cleaned:
            self.logger.info("Queue processor config updated: %s", cleaned)
            await self._emit("config_updated", dict(cleaned))
        if interval_changed and self._processing:
            await self.stop(drain=False)
            await self.start()
        return cleaned

    async def get_stats(self) -> Dict[str, Any]:
        """Return processor state together with the store counters."""
        return {
            "is_processing": self._processing,
            "currently_processing": len(self._in_flight),
            "max_concurrent": self.config.max_concurrent,
            "process_interval_ms": self.config.process_interval_ms,
            "stalled_timeout_ms": self.config.stalled_timeout_ms,
            "queue_stats": await self.persistence.get_stats(),
        }

    # ------------------------------------------------------------- main loop
    async def _dispatch_loop(self) -> None:
        self.logger.debug("Queue dispatch loop started")
        while self._processing:
            try:
                await self.tick()
            except Exception as exc:  # pragma: no cover
                self.logger.exception("Unhandled error in queue processing: %s", exc)
            await self._wait_for_wakeup(self.config.process_interval_ms / 1000)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause the loop while allowing external wake-ups via ``run_now``."""
        if not self._processing:
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        try:
            async with asyncio.timeout(max(0.0, float(timeout))):
                await self._wake_event.wait()
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    async def tick(self) -> int:
        """Claim as many ready jobs as free slots allow and dispatch them.

        Returns the number of jobs dispatched. Never waits for the sends.
        """
        if not self._processing:
            return 0
        if not self.channel.is_ready():
            self.logger.debug("Channel not ready, skipping tick")
            return 0
        available = self.config.max_concurrent - len(self._in_flight)
        if available <= 0:
            self.logger.debug("No free dispatch slot (%d in flight)", len(self._in_flight))
            return 0
        try:
            jobs = await self.persistence.claim_ready(available)
        except StorageError as exc:
            self.logger.error("Could not claim jobs, retrying next tick: %s", exc)
            return 0
        if not jobs:
            return 0

        self.logger.info("Processing %d message(s) from queue", len(jobs))
        dispatched = 0
        for job in jobs:
            job_id = job["id"]
            if job_id in self._in_flight:
                self.logger.warning("Job %s is still in flight, leaving it to the stall detector", job_id)
                continue
            task = asyncio.create_task(self.process_job(job), name=f"dispatch-{job_id}")
            self._in_flight[job_id] = task
            task.add_done_callback(lambda done, job_id=job_id: self._release(job_id, done))
            dispatched += 1
        self._refresh_in_flight_gauge()
        return dispatched

    def _release(self, job_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(job_id) is task:
            del self._in_flight[job_id]
        self._refresh_in_flight_gauge()

    def _refresh_in_flight_gauge(self) -> None:
        if self.metrics is not None:
            self.metrics.set_in_flight(len(self._in_flight))

    # ----------------------------------------------------------- per job
    def _log_activity(self, msg: str, *args: Any) -> None:
        if self._log_delivery_activity:
            self.logger.info(msg, *args)
        else:
            self.logger.debug(msg, *args)

    async def _progress(self, job_id: str, value: int) -> None:
        try:
            await self.persistence.update_progress(job_id, value)
        except StorageError as exc:
            self.logger.debug("Progress update for %s skipped: %s", job_id, exc)

    async def process_job(self, job: Dict[str, Any]) -> None:
        """Validate the recipient, send, and record the outcome of one job."""
        job_id = job["id"]
        chat_id = job["chat_id"]
        self._log_activity(
            "Processing job %s to %s (attempt %d)",
            job_id,
            job.get("formatted_number") or chat_id,
            int(job.get("attempts") or 0) + 1,
        )
        try:
            await self._progress(job_id, PROGRESS_VALIDATION_STARTED)
            handle = self.channel.get_delivery_handle()
            try:
                registered = await handle.validate_recipient(chat_id)
            except PermanentRecipientError:
                raise
            except Exception as exc:
                if is_invalid_recipient_error(exc):
                    raise PermanentRecipientError() from exc
                raise
            if not registered:
                raise PermanentRecipientError()
            await self._progress(job_id, PROGRESS_VALIDATION_PASSED)

            await self._progress(job_id, PROGRESS_SEND_STARTED)
            receipt = await handle.send(chat_id, job["message"])
        except Exception as exc:
            await self._handle_failure(job, exc)
            return

        result = {
            "success": True,
            "message_id": job.get("message_id"),
            "receipt_id": receipt.receipt_id,
            "chat_id": chat_id,
            "to": job.get("formatted_number"),
            "timestamp": receipt.timestamp,
        }
        try:
            await self.persistence.mark_completed(job_id, result)
        except StorageError as exc:
            self.logger.error("Message for job %s sent but completion not recorded: %s", job_id, exc)
            return
        if self.metrics is not None:
            self.metrics.inc_sent()
        self._log_activity("Job %s completed (receipt %s)", job_id, receipt.receipt_id)
        await self._emit(
            "message_success",
            {"message_id": job.get("message_id"), "job_id": job_id, "to": job.get("formatted_number"), "result": result},
        )

    def _retry_window_exceeded(self, job: Dict[str, Any]) -> bool:
        if not self._max_retry_age_ms:
            return False
        created_at = job.get("created_at")
        return created_at is not None and utc_now_ms() - int(created_at) > self._max_retry_age_ms

    async def _handle_failure(self, job: Dict[str, Any], exc: BaseException) -> None:
        job_id = job["id"]
        reason = str(exc) or type(exc).__name__
        retryable, signature = classify_error(exc)
        event: Dict[str, Any] = {
            "message_id": job.get("message_id"),
            "job_id": job_id,
            "to": job.get("formatted_number"),
            "error": reason,
            "attempts": int(job.get("attempts") or 0) + 1,
        }
        try:
            if not retryable or self._retry_window_exceeded(job):
                if retryable:
                    reason = f"Retry window exceeded: {reason}"
                    event["error"] = reason
                await self.persistence.mark_failed(job_id, reason)
                self.logger.error("Job %s failed permanently: %s", job_id, reason)
                if self.metrics is not None:
                    self.metrics.inc_failed("permanent")
                await self._emit("message_failed", {**event, "permanent": True})
                return

            updated = await self.persistence.increment_attempts(job_id, reason)
        except StorageError as store_exc:
            self.logger.error("Could not record outcome of job %s: %s", job_id, store_exc)
            return

        if updated is None:
            self.logger.warning("Job %s was no longer open when recording: %s", job_id, reason)
            return
        if updated["status"] == "failed":
            self.logger.error(
                "Job %s failed after %d attempts: %s", job_id, updated["attempts"], reason
            )
            if self.metrics is not None:
                self.metrics.inc_failed("exhausted")
            await self._emit("message_failed", {**event, "attempts": updated["attempts"], "permanent": False})
            return
        self.logger.warning(
            "Retryable error for job %s (attempt %d/%d, %s): %s",
            job_id,
            updated["attempts"],
            updated["max_attempts"],
            signature or "unclassified",
            reason,
        )
        if self.metrics is not None:
            self.metrics.inc_retried()
        await self._emit(
            "message_retry",
            {**event, "attempts": updated["attempts"], "next_retry": updated["next_retry"]},
        )

    async def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            await self._on_event(event, data)
        except Exception:
            self.logger.exception("Event callback failed for %s", event)
