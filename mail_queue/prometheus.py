"""Prometheus metrics exposed by the mail queue."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class QueueMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("mq_sent_total", "Total delivered emails", ["kind"], registry=self.registry)
        self.failed = Counter("mq_failed_total", "Total emails failed permanently", ["kind"], registry=self.registry)
        self.retried = Counter("mq_retried_total", "Total delivery attempts rescheduled", ["kind"], registry=self.registry)
        self.ticks_skipped = Counter("mq_ticks_skipped_total", "Processor ticks skipped by the single-flight guard", registry=self.registry)
        self.pending = Gauge("mq_pending_messages", "Messages waiting for delivery", registry=self.registry)

    def inc_sent(self, kind: str):
        self.sent.labels(kind=kind or "unknown").inc()

    def inc_failed(self, kind: str):
        self.failed.labels(kind=kind or "unknown").inc()

    def inc_retried(self, kind: str):
        self.retried.labels(kind=kind or "unknown").inc()

    def inc_tick_skipped(self):
        self.ticks_skipped.inc()

    def set_pending(self, value: int):
        """Update the gauge tracking messages awaiting delivery."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
