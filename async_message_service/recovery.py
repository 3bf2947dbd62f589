"""Automatic recovery of a failed channel session."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, Tuple

from .channel import ChannelFailure, ChannelManager, ChannelState
from .logger import get_logger
from .retry import is_transient_signature

RECOVERABLE_DISCONNECT_REASONS = frozenset(
    {
        "NAVIGATION",
        "CONFLICT",
        "TIMEOUT",
        "CONNECTION_LOST",
        "SESSION_CLOSED",
        "HEALTH_CHECK_FAILED",
        "LOGOUT",
        "UNPAIRED",
    }
)
# Disconnects that invalidate the stored pairing.
CREDENTIAL_PURGE_REASONS = frozenset({"LOGOUT", "UNPAIRED"})

RECONNECT_ATTEMPTS = 2


class RecoveryCoordinator:
    """Listen for channel failures and reconnect after a policy-defined delay.

    At most one recovery runs at a time; failures reported while one is in
    progress are ignored. Two reconnect attempts are made before giving up,
    after which only an explicit reset brings the channel back.
    """

    def __init__(
        self,
        channel: ChannelManager,
        processor=None,
        *,
        auth_failure_delay: float = 10.0,
        disconnect_delay: float = 3.0,
        retry_delay: float = 30.0,
        metrics=None,
        logger=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.channel = channel
        self.processor = processor
        self.auth_failure_delay = float(auth_failure_delay)
        self.disconnect_delay = float(disconnect_delay)
        self.retry_delay = float(retry_delay)
        self.metrics = metrics
        self.logger = logger or get_logger("AsyncMessageService.recovery")
        self._sleep = sleep

        self.recovering = False
        self.last_delay: Optional[float] = None
        self.attempts = 0
        self._task: Optional[asyncio.Task] = None
        channel.add_failure_listener(self.handle_failure)

    def attach_processor(self, processor) -> None:
        self.processor = processor

    def _plan(self, failure: ChannelFailure) -> Optional[Tuple[float, bool]]:
        """Return ``(delay, purge_credentials)`` or ``None`` when not recoverable."""
        if failure.kind == "auth_failure":
            return self.auth_failure_delay, True
        if failure.kind == "disconnected":
            reason = (failure.reason or "").upper()
            if reason in RECOVERABLE_DISCONNECT_REASONS:
                return self.disconnect_delay, reason in CREDENTIAL_PURGE_REASONS
            self.logger.warning(
                "Channel disconnected (%s): not auto-recoverable, manual reset required", failure.reason
            )
            return None
        if failure.kind == "error":
            error = failure.error if failure.error is not None else RuntimeError(failure.reason)
            if is_transient_signature(error):
                return self.disconnect_delay, False
            self.logger.error("Channel error not recovered automatically: %s", failure.reason)
            return None
        return None

    async def handle_failure(self, failure: ChannelFailure) -> None:
        """Failure listener registered on the channel manager."""
        if self.recovering:
            self.logger.info("Recovery already in progress, ignoring %s (%s)", failure.kind, failure.reason)
            return
        plan = self._plan(failure)
        if plan is None:
            return
        delay, purge = plan

        self.recovering = True
        self.attempts = 0
        resume_processor = self.processor is not None and self.processor.is_processing
        self.last_delay = delay
        self.logger.warning(
            "Starting channel recovery after %s (%s), reconnecting in %.1fs", failure.kind, failure.reason, delay
        )
        if self.metrics is not None:
            self.metrics.inc_recoveries(failure.kind)
        try:
            self.channel.begin_recovery()
            if self.processor is not None:
                await self.processor.stop(drain=False)
            await self.channel.teardown()
            if purge:
                await self.channel.clear_credentials()
        except Exception:
            self.logger.exception("Error while preparing channel recovery")
        self._task = asyncio.create_task(self._reconnect(delay, resume_processor), name="channel-recovery")

    async def _reconnect(self, delay: float, resume_processor: bool = True) -> None:
        try:
            for attempt in range(1, RECONNECT_ATTEMPTS + 1):
                wait = delay if attempt == 1 else self.retry_delay
                self.last_delay = wait
                await self._sleep(wait)
                self.attempts = attempt
                if await self._try_connect(attempt):
                    if resume_processor and self.processor is not None:
                        await self.processor.resume()
                    return
            self.logger.error("Channel recovery gave up after %d attempts", RECONNECT_ATTEMPTS)
            self.channel.give_up()
        finally:
            self.recovering = False
            self._task = None

    async def _try_connect(self, attempt: int) -> bool:
        self.logger.info("Reconnecting channel (attempt %d/%d)", attempt, RECONNECT_ATTEMPTS)
        try:
            await self.channel.connect()
        except Exception as exc:
            self.logger.error("Channel reconnect attempt %d failed: %s", attempt, exc)
            return False
        if self.channel.state not in (ChannelState.INITIALIZING, ChannelState.READY):
            self.logger.error(
                "Channel reconnect attempt %d ended in state %s", attempt, self.channel.state.value
            )
            await self.channel.teardown()
            if self.channel.state is ChannelState.AUTH_FAILED:
                await self.channel.clear_credentials()
            return False
        self.logger.info("Channel reconnected (%s)", self.channel.state.value)
        return True

    async def cancel(self) -> None:
        """Abort a pending recovery, e.g. during shutdown."""
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.recovering = False
