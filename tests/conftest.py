import asyncio
from typing import Any, Dict, List

import pytest


class DummyDriver:
    """In-memory session driver reporting events straight to the manager."""

    supports_concurrent_sends = False

    def __init__(self, *, ready=True, init_error=None, registered=True, state="CONNECTED"):
        self.sink = None
        self.ready_on_init = ready
        self.init_error = init_error
        self.registered = registered
        self.state = state
        self.state_error: Exception | None = None
        self.validate_error: Exception | None = None
        self.send_error: Exception | None = None
        self.send_gate: asyncio.Event | None = None
        self.sent: List[Dict[str, Any]] = []
        self.active_sends = 0
        self.max_active_sends = 0
        self.destroyed = False
        self.credentials_cleared = False

    async def initialize(self, sink):
        self.sink = sink
        if self.init_error is not None:
            raise self.init_error
        if self.ready_on_init:
            await sink.on_authenticated()
            await sink.on_ready()

    async def get_state(self):
        if self.state_error is not None:
            raise self.state_error
        return self.state

    async def is_registered(self, chat_id):
        if self.validate_error is not None:
            raise self.validate_error
        return self.registered

    async def send_message(self, chat_id, text):
        self.active_sends += 1
        self.max_active_sends = max(self.max_active_sends, self.active_sends)
        try:
            if self.send_gate is not None:
                await self.send_gate.wait()
            if self.send_error is not None:
                raise self.send_error
            self.sent.append({"chat_id": chat_id, "text": text})
            return f"receipt-{len(self.sent)}"
        finally:
            self.active_sends -= 1

    async def destroy(self):
        self.destroyed = True

    async def clear_credentials(self):
        self.credentials_cleared = True


class DriverFactory:
    """Session factory handing out :class:`DummyDriver` instances.

    ``plans`` holds per-driver overrides consumed in creation order.
    """

    def __init__(self, **defaults):
        self.defaults = defaults
        self.plans: List[Dict[str, Any]] = []
        self.created: List[DummyDriver] = []

    def __call__(self):
        overrides = self.plans.pop(0) if self.plans else {}
        driver = DummyDriver(**{**self.defaults, **overrides})
        self.created.append(driver)
        return driver

    @property
    def current(self) -> DummyDriver:
        return self.created[-1]


class DummyMetrics:
    def __init__(self):
        self.sent = 0
        self.failed: List[str] = []
        self.retried = 0
        self.stalled = 0
        self.recoveries: List[str] = []
        self.pending_value = None
        self.in_flight_value = None
        self.channel_ready_value = None

    def inc_sent(self):
        self.sent += 1

    def inc_failed(self, kind):
        self.failed.append(kind)

    def inc_retried(self):
        self.retried += 1

    def inc_stalled(self, count=1):
        self.stalled += count

    def inc_recoveries(self, trigger):
        self.recoveries.append(trigger)

    def set_pending(self, value):
        self.pending_value = value

    def set_in_flight(self, value):
        self.in_flight_value = value

    def set_channel_ready(self, ready):
        self.channel_ready_value = ready

    def generate_latest(self):
        return b""


class EventRecorder:
    def __init__(self):
        self.events: List[tuple] = []

    async def __call__(self, event, data):
        self.events.append((event, data))

    def names(self):
        return [name for name, _ in self.events]


def payload(number="6281234567890", message="hello"):
    return {
        "chat_id": f"{number}@c.us",
        "message": message,
        "formatted_number": number,
        "original_number": number,
    }


async def settle(predicate=None, *, timeout=2.0):
    """Yield to the loop until ``predicate()`` holds (or just a few turns)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        await asyncio.sleep(0.01)
        if predicate is None or predicate():
            return
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")


@pytest.fixture
def driver_factory():
    return DriverFactory()


@pytest.fixture
def metrics():
    return DummyMetrics()


@pytest.fixture
def events():
    return EventRecorder()
