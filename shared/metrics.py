"""
Prometheus metrics for the Team Management service.

Each service instance owns its own ``CollectorRegistry`` so several apps can
be built in one process (tests do this) without duplicate registrations.
"""

from typing import Any, Dict, Optional, Tuple

from prometheus_client import CollectorRegistry, Counter, Histogram, Info

SERVICE_VERSION = "1.0.0"

# name -> (type, help, labels)
METRIC_DEFINITIONS: Dict[str, Tuple[type, str, Tuple[str, ...]]] = {
    "http_requests_total": (Counter, "Total HTTP requests", ("method", "endpoint", "status_code")),
    "http_request_duration_seconds": (Histogram, "HTTP request duration in seconds", ("method", "endpoint")),
    "health_check_total": (Counter, "Total health check requests", ("status",)),
    "errors_total": (Counter, "Total errors by type", ("error_type", "service")),
    "business_events_total": (Counter, "Users, teams and projects changed", ("event_type", "service")),
    "rate_limit_rejections_total": (Counter, "Requests rejected by the rate limiter", ("route", "method")),
    "authorization_denials_total": (Counter, "Authorization denials by operation", ("operation",)),
    "backups_total": (Counter, "Backup snapshots by collection and outcome", ("collection", "status")),
}


class MetricsCollector:
    """Owns the service registry and the counters recorded against it."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}

        info = Info("service_info", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": SERVICE_VERSION})

        for name, (kind, documentation, labels) in METRIC_DEFINITIONS.items():
            self._metrics[name] = kind(name, documentation, list(labels), registry=self.registry)

    def get_metric(self, name: str):
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request count and latency."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()
        self._metrics["http_request_duration_seconds"].labels(method=method, endpoint=endpoint).observe(duration)

    def record_health_check(self, status: str):
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str):
        self._metrics["errors_total"].labels(error_type=error_type, service=self.service_name).inc()

    def record_business_event(self, event_type: str):
        """Count a successful domain mutation such as ``team_created``."""
        self._metrics["business_events_total"].labels(event_type=event_type, service=self.service_name).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a labelled counter; unknown names are ignored."""
        metric = self._metrics.get(metric_name)
        if isinstance(metric, Counter):
            metric.labels(**labels).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
