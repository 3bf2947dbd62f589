"""Prometheus metrics exposed by the message dispatcher."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class MessageMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("ams_sent_total", "Total delivered messages", registry=self.registry)
        self.failed = Counter("ams_failed_total", "Total failed messages", ["kind"], registry=self.registry)
        self.retried = Counter("ams_retried_total", "Total retry scheduling events", registry=self.registry)
        self.stalled = Counter("ams_stalled_total", "Total reclaimed stalled jobs", registry=self.registry)
        self.recoveries = Counter("ams_recoveries_total", "Total channel recoveries started", ["trigger"], registry=self.registry)
        self.pending = Gauge("ams_pending_jobs", "Jobs not yet completed or failed", registry=self.registry)
        self.in_flight = Gauge("ams_in_flight_jobs", "Jobs currently being dispatched", registry=self.registry)
        self.channel_ready = Gauge("ams_channel_ready", "1 when the delivery channel is ready", registry=self.registry)

    def inc_sent(self):
        self.sent.inc()

    def inc_failed(self, kind: str):
        """Increase the ``failed`` counter; ``kind`` is ``permanent`` or ``exhausted``."""
        self.failed.labels(kind=kind or "permanent").inc()

    def inc_retried(self):
        self.retried.inc()

    def inc_stalled(self, count: int = 1):
        self.stalled.inc(count)

    def inc_recoveries(self, trigger: str):
        """Increase the recovery counter for the failure kind that triggered it."""
        self.recoveries.labels(trigger=trigger or "unknown").inc()

    def set_pending(self, value: int):
        """Update the gauge tracking pending jobs."""
        self.pending.set(value)

    def set_in_flight(self, value: int):
        self.in_flight.set(value)

    def set_channel_ready(self, ready: bool):
        self.channel_ready.set(1 if ready else 0)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
