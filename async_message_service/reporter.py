"""Forward delivery outcomes to an upstream webhook or callable."""

from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .logger import get_logger

JsonDict = Dict[str, Any]
ReportCallable = Callable[[JsonDict], Awaitable[None]]

# Processor events worth reporting upstream.
REPORTED_EVENTS = ("message_success", "message_failed", "message_retry", "stalled_jobs")


class DeliveryReporter:
    """Push delivery reports to the configured endpoint.

    Builds and sends payloads only; queueing and retries live in the core
    report loop.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        report_callable: Optional[ReportCallable] = None,
        token: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        log_delivery_activity: bool = False,
        logger=None,
    ):
        self.url = url
        self.report_callable = report_callable
        self.token = token
        self.user = user
        self.password = password
        self.timeout = float(timeout)
        self._log_delivery_activity = log_delivery_activity
        self.logger = logger or get_logger("AsyncMessageService.reporter")

    @property
    def enabled(self) -> bool:
        return bool(self.url) or self.report_callable is not None

    def build_report(self, event: str, data: JsonDict) -> JsonDict:
        """Flatten an event into the report shape sent upstream."""
        report: JsonDict = {"event": event}
        report.update(data)
        return report

    def accepts(self, event: str) -> bool:
        return self.enabled and event in REPORTED_EVENTS

    async def send(self, payloads: List[JsonDict]) -> None:
        """Send report payloads to the configured callable or webhook."""
        if self.report_callable is not None:
            for payload in payloads:
                await self.report_callable(payload)
            return
        if not self.url:
            if payloads:
                raise RuntimeError("Delivery report URL is not configured")
            return
        headers: Dict[str, str] = {}
        auth = None
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        elif self.user:
            auth = aiohttp.BasicAuth(self.user, self.password or "")
        if self._log_delivery_activity:
            ids_preview = ", ".join(str(item.get("message_id")) for item in payloads[:5] if item.get("message_id"))
            self.logger.info(
                "Posting delivery reports to %s (count=%d, ids=%s)", self.url, len(payloads), ids_preview or "-"
            )
        else:
            self.logger.debug("Posting delivery reports to %s (count=%d)", self.url, len(payloads))
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(
                self.url,
                json={"delivery_report": payloads},
                auth=auth,
                headers=headers or None,
            ) as resp:
                resp.raise_for_status()
        self.logger.debug("Delivery report batch delivered (%d items)", len(payloads))
