"""Prometheus metrics exposed by the dispatch service."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class DispatchMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("ads_sent_total", "Total delivered messages", ["account_id"], registry=self.registry)
        self.errors = Counter("ads_errors_total", "Total failed messages", ["account_id"], registry=self.registry)
        self.deferred = Counter(
            "ads_deferred_total", "Total deferred messages", ["account_id", "reason"], registry=self.registry
        )
        self.skipped = Counter("ads_skipped_total", "Total skipped messages", ["account_id"], registry=self.registry)
        self.events = Counter(
            "ads_crm_events_total", "CRM events seen by the sync layer", ["provider", "outcome"], registry=self.registry
        )
        self.sync_errors = Counter(
            "ads_sync_errors_total", "Failed polls or webhook registrations", ["provider"], registry=self.registry
        )
        self.pending = Gauge("ads_pending_jobs", "Jobs waiting for delivery", registry=self.registry)

    def inc_sent(self, account_id: str):
        """Increase the ``sent`` counter for the given account."""
        self.sent.labels(account_id=account_id or "unknown").inc()

    def inc_error(self, account_id: str):
        """Increase the ``errors`` counter for the given account."""
        self.errors.labels(account_id=account_id or "unknown").inc()

    def inc_deferred(self, account_id: str, reason: str | None = None):
        self.deferred.labels(account_id=account_id or "unknown", reason=reason or "unknown").inc()

    def inc_skipped(self, account_id: str):
        self.skipped.labels(account_id=account_id or "unknown").inc()

    def inc_event(self, provider: str, outcome: str):
        """Count a CRM event as ``accepted``, ``duplicate`` or ``test``."""
        self.events.labels(provider=provider, outcome=outcome).inc()

    def inc_sync_error(self, provider: str):
        self.sync_errors.labels(provider=provider).inc()

    def set_pending(self, value: int):
        """Update the gauge tracking pending jobs."""
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
