"""Periodic sweep reclaiming jobs stuck in ``active``."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from .errors import StorageError
from .logger import get_logger
from .persistence import Persistence, utc_now_ms

STALLED_REASON = "Job stalled - timeout exceeded"


class StallDetector:
    """Requeue (or fail) jobs whose dispatch started longer ago than the stall timeout."""

    def __init__(
        self,
        persistence: Persistence,
        timeout_provider: Callable[[], int],
        *,
        interval: float = 60.0,
        on_event: Optional[Callable[[str, Dict[str, Any]], Awaitable[None]]] = None,
        metrics=None,
        logger=None,
    ):
        self.persistence = persistence
        self._timeout_provider = timeout_provider
        self.interval = float(interval)
        self._on_event = on_event
        self.metrics = metrics
        self.logger = logger or get_logger("AsyncMessageService.stall")
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, *, now_ms: Optional[int] = None) -> int:
        """Reclaim every job active since before ``now - stalled_timeout``; returns the count."""
        ts = now_ms if now_ms is not None else utc_now_ms()
        cutoff = ts - int(self._timeout_provider())
        stalled = await self.persistence.find_stalled(cutoff)
        reclaimed = []
        for job in stalled:
            updated = await self.persistence.reclaim_stalled(job["id"], cutoff, STALLED_REASON, now_ms=ts)
            if updated is None:
                # Finished between the scan and the reclaim.
                continue
            reclaimed.append(updated)
            self.logger.warning(
                "Job %s stalled, %s (attempt %d/%d)",
                updated["id"],
                "failed" if updated["status"] == "failed" else "requeued",
                updated["attempts"],
                updated["max_attempts"],
            )
        if reclaimed:
            self.logger.warning("%d stalled job(s) detected", len(reclaimed))
            if self.metrics is not None:
                self.metrics.inc_stalled(len(reclaimed))
            if self._on_event is not None:
                try:
                    await self._on_event(
                        "stalled_jobs",
                        {"count": len(reclaimed), "job_ids": [job["id"] for job in reclaimed]},
                    )
                except Exception:
                    self.logger.exception("Event callback failed for stalled_jobs")
        return len(reclaimed)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="stall-detector")

    async def stop(self) -> None:
        self._stop.set()
        task, self._task = self._task, None
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                async with asyncio.timeout(self.interval):
                    await self._stop.wait()
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.sweep()
            except StorageError as exc:
                self.logger.error("Stall sweep failed: %s", exc)
            except Exception:
                self.logger.exception("Unexpected error in stall sweep")
