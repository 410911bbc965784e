"""Prometheus metrics for tenant resolution."""

from prometheus_client import Counter, Histogram

tenant_resolution_latency_ms = Histogram(
    "tenant_resolution_latency_ms",
    "Tenant resolution latency in milliseconds",
    ["outcome"],
    buckets=[1, 5, 10, 25, 50, 100, 250, 500, 1000],
)

tenant_resolutions_total = Counter(
    "tenant_resolutions_total",
    "Total tenant resolutions by outcome",
    ["outcome"],
)


class PrometheusTenantMetrics:
    """Prometheus-based resolution metrics implementation."""

    def record_resolution(self, outcome: str, latency_ms: float) -> None:
        """Count a resolution and record its latency."""
        tenant_resolutions_total.labels(outcome=outcome).inc()
        tenant_resolution_latency_ms.labels(outcome=outcome).observe(latency_ms)
