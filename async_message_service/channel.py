"""Lifecycle manager for the single delivery-channel session.

The manager owns the one live session driver and drives an explicit state
machine from the events the driver reports (pairing, readiness,
disconnection, authentication failure, low-level errors) and from its own
keep-alive probe. Consumers never see the driver: the queue processor only
borrows a :class:`DeliveryHandle` exposing recipient validation and sending,
and reacts to readiness rather than to raw events. Failure transitions are
forwarded to registered listeners (the recovery coordinator).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from .errors import (
    AlreadyInitializingError,
    ChannelNotReadyError,
    ConfigurationError,
    TransientChannelError,
)
from .logger import get_logger
from .persistence import utc_now_ms
from .retry import is_transient_signature

HEALTHY_STATE = "CONNECTED"
HEALTH_CHECK_FAILED = "HEALTH_CHECK_FAILED"


class ChannelState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    AUTH_FAILED = "auth_failed"
    DISCONNECTED = "disconnected"
    RECOVERING = "recovering"
    ERROR = "error"
    FAILED = "failed"


class ChannelEvent(str, Enum):
    CONNECT = "connect"
    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    AUTH_FAILURE = "auth_failure"
    ERROR = "error"
    RECOVER = "recover"
    GIVE_UP = "give_up"
    RESET = "reset"


S = ChannelState
E = ChannelEvent

TRANSITIONS: Dict[Tuple[ChannelState, ChannelEvent], ChannelState] = {
    (S.IDLE, E.CONNECT): S.INITIALIZING,
    (S.DISCONNECTED, E.CONNECT): S.INITIALIZING,
    (S.ERROR, E.CONNECT): S.INITIALIZING,
    (S.AUTH_FAILED, E.CONNECT): S.INITIALIZING,
    (S.RECOVERING, E.CONNECT): S.INITIALIZING,
    (S.INITIALIZING, E.QR): S.INITIALIZING,
    (S.INITIALIZING, E.AUTHENTICATED): S.INITIALIZING,
    (S.INITIALIZING, E.READY): S.READY,
    (S.INITIALIZING, E.AUTH_FAILURE): S.AUTH_FAILED,
    (S.INITIALIZING, E.ERROR): S.ERROR,
    (S.INITIALIZING, E.DISCONNECTED): S.DISCONNECTED,
    (S.READY, E.DISCONNECTED): S.DISCONNECTED,
    (S.READY, E.AUTH_FAILURE): S.AUTH_FAILED,
    (S.READY, E.ERROR): S.ERROR,
    (S.READY, E.RECOVER): S.RECOVERING,
    (S.AUTH_FAILED, E.RECOVER): S.RECOVERING,
    (S.DISCONNECTED, E.RECOVER): S.RECOVERING,
    (S.ERROR, E.RECOVER): S.RECOVERING,
    (S.RECOVERING, E.GIVE_UP): S.FAILED,
    (S.ERROR, E.GIVE_UP): S.FAILED,
    (S.DISCONNECTED, E.GIVE_UP): S.FAILED,
    (S.AUTH_FAILED, E.GIVE_UP): S.FAILED,
    (S.INITIALIZING, E.GIVE_UP): S.FAILED,
}
# RESET is accepted from every state, including the terminal one.
TRANSITIONS.update({(state, E.RESET): S.IDLE for state in ChannelState})


@dataclass
class ChannelFailure:
    """A failure transition reported to listeners."""

    kind: str
    reason: str
    error: Optional[BaseException] = None


@dataclass
class DeliveryReceipt:
    """Provider-assigned identifier confirming a successful send."""

    receipt_id: str
    chat_id: str
    timestamp: int = field(default_factory=utc_now_ms)


class ChannelEventSink(Protocol):
    async def on_qr(self, qr: str) -> None: ...

    async def on_authenticated(self) -> None: ...

    async def on_ready(self) -> None: ...

    async def on_disconnected(self, reason: str) -> None: ...

    async def on_auth_failure(self, reason: str) -> None: ...

    async def on_low_level_error(self, error: BaseException) -> None: ...


class SessionDriver(Protocol):
    """Session automation wrapped by the manager (see :mod:`.gateway`)."""

    supports_concurrent_sends: bool

    async def initialize(self, sink: ChannelEventSink) -> None: ...

    async def get_state(self) -> str: ...

    async def is_registered(self, chat_id: str) -> bool: ...

    async def send_message(self, chat_id: str, text: str) -> str: ...

    async def destroy(self) -> None: ...

    async def clear_credentials(self) -> None: ...


FailureListener = Callable[[ChannelFailure], Awaitable[Any]]
ReadyListener = Callable[[], Awaitable[Any]]


class DeliveryHandle:
    """Read-only capability over the live session, borrowed per dispatch.

    A handle is bound to the session generation it was issued for; once the
    manager tears that session down every call fails with a transient error.
    """

    def __init__(self, manager: "ChannelManager", driver: SessionDriver, generation: int):
        self._manager = manager
        self._driver = driver
        self._generation = generation

    def _check(self) -> None:
        if self._generation != self._manager.generation or not self._manager.is_ready():
            raise ChannelNotReadyError("Session closed: channel client not ready")

    async def _call(self, coro_factory: Callable[[], Awaitable[Any]]) -> Any:
        self._check()
        if getattr(self._driver, "supports_concurrent_sends", False):
            return await coro_factory()
        async with self._manager.send_lock:
            self._check()
            return await coro_factory()

    async def validate_recipient(self, chat_id: str) -> bool:
        """Return ``True`` when ``chat_id`` is a deliverable endpoint."""
        return bool(await self._call(lambda: self._driver.is_registered(chat_id)))

    async def send(self, chat_id: str, text: str) -> DeliveryReceipt:
        """Send ``text`` and return the provider receipt."""
        receipt_id = await self._call(lambda: self._driver.send_message(chat_id, text))
        return DeliveryReceipt(receipt_id=str(receipt_id), chat_id=chat_id)


class ChannelManager:
    """Own one delivery-channel session end-to-end."""

    def __init__(
        self,
        session_factory: Callable[[], SessionDriver],
        *,
        purge_credentials: Optional[Callable[[], Awaitable[None]]] = None,
        keepalive_interval: float = 120.0,
        probe_timeout: float = 30.0,
        init_timeout: float = 60.0,
        metrics=None,
        logger=None,
    ):
        self._session_factory = session_factory
        self._purge_credentials = purge_credentials
        self._keepalive_interval = float(keepalive_interval)
        self._probe_timeout = float(probe_timeout)
        self._init_timeout = float(init_timeout)
        self.metrics = metrics
        self.logger = logger or get_logger("AsyncMessageService.channel")

        self._state = ChannelState.IDLE
        self._driver: Optional[SessionDriver] = None
        # Last torn-down session; still able to purge its own credentials.
        self._retired_driver: Optional[SessionDriver] = None
        self._connecting = False
        self.generation = 0
        self.send_lock = asyncio.Lock()
        self._task_keepalive: Optional[asyncio.Task] = None
        self._failure_listeners: List[FailureListener] = []
        self._ready_listeners: List[ReadyListener] = []

        self.qr: Optional[str] = None
        self.last_error: Optional[str] = None
        self.last_disconnect_reason: Optional[str] = None

    # ------------------------------------------------------------------ state
    @property
    def state(self) -> ChannelState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is ChannelState.READY and self._driver is not None

    def add_failure_listener(self, listener: FailureListener) -> None:
        self._failure_listeners.append(listener)

    def add_ready_listener(self, listener: ReadyListener) -> None:
        self._ready_listeners.append(listener)

    def _apply(self, event: ChannelEvent) -> bool:
        """Apply ``event`` through the transition table; ``False`` when ignored."""
        target = TRANSITIONS.get((self._state, event))
        if target is None:
            self.logger.debug("Ignoring channel event %s in state %s", event.value, self._state.value)
            return False
        if target is not self._state:
            self.logger.info("Channel state %s -> %s (%s)", self._state.value, target.value, event.value)
        self._state = target
        if self.metrics is not None:
            self.metrics.set_channel_ready(target is ChannelState.READY)
        return True

    def begin_recovery(self) -> bool:
        """Move a failed session to ``recovering``."""
        return self._apply(ChannelEvent.RECOVER)

    def give_up(self) -> bool:
        """Move to the terminal ``failed`` state after unsuccessful recovery."""
        return self._apply(ChannelEvent.GIVE_UP)

    def status(self) -> Dict[str, Any]:
        """Return a serialisable snapshot of the session."""
        return {
            "state": self._state.value,
            "ready": self.is_ready(),
            "has_qr": bool(self.qr),
            "qr": self.qr,
            "has_session": self._driver is not None,
            "last_error": self.last_error,
            "last_disconnect_reason": self.last_disconnect_reason,
        }

    # -------------------------------------------------------------- lifecycle
    async def connect(self) -> None:
        """Start the session unless it is already initializing or ready."""
        if self._state in (ChannelState.INITIALIZING, ChannelState.READY):
            if self._connecting:
                self.logger.warning("%s", AlreadyInitializingError())
            else:
                self.logger.info("Channel already %s, connect skipped", self._state.value)
            return
        if self._state is ChannelState.FAILED:
            raise ConfigurationError("Channel recovery gave up; an explicit reset is required")

        self._apply(ChannelEvent.CONNECT)
        self._connecting = True
        if self._driver is not None:
            self.logger.info("Closing previous channel session before connecting")
            await self.teardown()
        self.generation += 1
        self.qr = None
        driver = self._session_factory()
        self._driver = driver
        try:
            self.logger.info("Initializing channel session (generation %d)", self.generation)
            await asyncio.wait_for(driver.initialize(self), timeout=self._init_timeout)
        except Exception as exc:
            self.last_error = str(exc) or type(exc).__name__
            self.logger.error("Failed to initialize channel session: %s", self.last_error)
            if self._driver is driver:
                self._driver = None
            if self._state is ChannelState.INITIALIZING:
                self._apply(ChannelEvent.ERROR)
            await self._destroy_driver(driver)
            raise TransientChannelError(f"Channel initialization failed: {self.last_error}") from exc
        finally:
            self._connecting = False

    def get_delivery_handle(self) -> DeliveryHandle:
        """Return a usable delivery capability; only valid while ``ready``."""
        if not self.is_ready():
            raise ChannelNotReadyError(f"Channel client not ready ({self._state.value})")
        return DeliveryHandle(self, self._driver, self.generation)

    async def teardown(self) -> None:
        """Stop probing and destroy the current session, best-effort."""
        self._stop_keepalive()
        driver, self._driver = self._driver, None
        self.qr = None
        if driver is not None:
            self._retired_driver = driver
            await self._destroy_driver(driver)

    async def clear_credentials(self) -> None:
        """Purge persisted session credentials, best-effort."""
        driver = self._driver or self._retired_driver
        try:
            if self._purge_credentials is not None:
                await self._purge_credentials()
            elif driver is not None:
                await driver.clear_credentials()
            self.logger.info("Cleared persisted channel credentials")
        except Exception as exc:
            self.logger.warning("Failed to clear channel credentials: %s", exc)

    async def reset(self) -> None:
        """External intervention: drop the session and its credentials, back to ``idle``."""
        await self.teardown()
        await self.clear_credentials()
        self._apply(ChannelEvent.RESET)
        self.last_error = None
        self.last_disconnect_reason = None

    async def shutdown(self) -> None:
        """Tear the session down and return to ``idle``."""
        await self.teardown()
        self._apply(ChannelEvent.RESET)

    async def _destroy_driver(self, driver: SessionDriver) -> None:
        try:
            await driver.destroy()
        except Exception as exc:
            self.logger.warning("Error destroying channel session: %s", exc)

    # ------------------------------------------------------------ event sink
    async def on_qr(self, qr: str) -> None:
        if self._apply(ChannelEvent.QR):
            self.qr = qr
            self.logger.info("Pairing code received, scan it to authenticate the session")

    async def on_authenticated(self) -> None:
        if self._apply(ChannelEvent.AUTHENTICATED):
            self.logger.info("Channel session authenticated")

    async def on_ready(self) -> None:
        if not self._apply(ChannelEvent.READY):
            return
        self.qr = None
        self.last_error = None
        self._start_keepalive()
        for listener in list(self._ready_listeners):
            try:
                await listener()
            except Exception:
                self.logger.exception("Channel ready listener failed")

    async def on_disconnected(self, reason: str) -> None:
        if self._apply(ChannelEvent.DISCONNECTED):
            self.last_disconnect_reason = reason
            self._stop_keepalive()
            await self._notify_failure(ChannelFailure("disconnected", reason))

    async def on_auth_failure(self, reason: str) -> None:
        if self._apply(ChannelEvent.AUTH_FAILURE):
            self.last_error = reason
            self._stop_keepalive()
            await self._notify_failure(ChannelFailure("auth_failure", reason))

    async def on_low_level_error(self, error: BaseException) -> None:
        if self._apply(ChannelEvent.ERROR):
            self.last_error = str(error) or type(error).__name__
            self._stop_keepalive()
            await self._notify_failure(ChannelFailure("error", self.last_error, error))
        else:
            self.logger.warning("Channel error outside an active session: %s", error)

    async def _notify_failure(self, failure: ChannelFailure) -> None:
        for listener in list(self._failure_listeners):
            try:
                await listener(failure)
            except Exception:
                self.logger.exception("Channel failure listener failed")

    # -------------------------------------------------------------- keep-alive
    def _start_keepalive(self) -> None:
        if self._task_keepalive is not None and not self._task_keepalive.done():
            return
        self._task_keepalive = asyncio.create_task(self._keepalive_loop(), name="channel-keepalive")

    def _stop_keepalive(self) -> None:
        task, self._task_keepalive = self._task_keepalive, None
        # The probe itself may be the one reporting the failure.
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _keepalive_loop(self) -> None:
        while self._state is ChannelState.READY:
            await asyncio.sleep(self._keepalive_interval)
            if not await self.probe():
                return

    async def probe(self) -> bool:
        """Run one health check; returns ``False`` when the session was declared lost."""
        driver = self._driver
        if self._state is not ChannelState.READY or driver is None:
            return False
        try:
            state = await asyncio.wait_for(driver.get_state(), timeout=self._probe_timeout)
        except Exception as exc:
            if is_transient_signature(exc):
                self.logger.warning("Keep-alive probe failed: %s", exc)
                await self.on_disconnected(HEALTH_CHECK_FAILED)
                return False
            self.logger.warning("Keep-alive probe error ignored: %s", exc)
            return True
        if state != HEALTHY_STATE:
            self.logger.warning("Keep-alive probe reported unhealthy state %s", state)
            await self.on_disconnected(HEALTH_CHECK_FAILED)
            return False
        self.logger.debug("Keep-alive probe ok")
        return True
