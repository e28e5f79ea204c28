import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_PLAIN_TEXT = "text/plain; version=0.0.4"
_CIRCUIT_STATE_VALUES = {"closed": 0.0, "half_open": 0.5, "open": 1.0}

# attribute -> (instrument, metric name, help text, labels)
_INSTRUMENTS = {
    "http_requests": (Counter, "http_requests_total", "HTTP requests by method, route and status class.",
                      ("method", "path", "status_class")),
    "http_5xx": (Counter, "http_5xx_total", "HTTP responses with status >= 500.", ("method", "path")),
    "http_latency": (Histogram, "http_request_latency_seconds", "HTTP request latency in seconds.",
                     ("method", "path", "status_class")),
    "notifications": (Counter, "notifications_persisted_total", "Notifications stored, by type.", ("type",)),
    "notification_pushes": (Counter, "notification_pushes_total",
                            "Live push attempts by outcome (delivered/offline/failed).", ("outcome",)),
    "ws_connections": (Gauge, "ws_connections", "Open live notification connections.", ()),
    "matches": (Counter, "job_match_notifications_total", "Providers notified of new jobs, by job kind.",
                ("kind",)),
    "escrow_transitions": (Counter, "escrow_transitions_total", "Escrow payment transitions by target status.",
                           ("status",)),
    "processor_errors": (Counter, "payment_processor_errors_total", "Payment processor failures by operation.",
                         ("operation",)),
    "job_last_success": (Gauge, "job_last_success_timestamp", "Unix time of the last successful job run.",
                         ("job",)),
    "job_errors": (Counter, "job_errors_total", "Background job failures by job and reason.", ("job", "reason")),
    "circuit_state": (Gauge, "circuit_state", "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
                      ("circuit",)),
}
_LATENCY_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10)


def _status_class(status_code: int) -> str:
    return f"{status_code // 100}xx" if status_code else "unknown"


class Metrics:
    """Prometheus instruments for the marketplace; every recorder is a no-op while disabled."""

    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        for attribute, (kind, name, help_text, labels) in _INSTRUMENTS.items():
            instrument = None
            if enabled:
                options = {"buckets": _LATENCY_BUCKETS} if kind is Histogram else {}
                instrument = kind(name, help_text, labels, registry=self.registry, **options)
            setattr(self, attribute, instrument)

    def _labelled(self, attribute: str, **labels):  # noqa: ANN202
        instrument = getattr(self, attribute, None) if self.enabled else None
        if instrument is None:
            return None
        return instrument.labels(**labels) if labels else instrument

    def record_http_request(self, method: str, path: str, status_code: int) -> None:
        counter = self._labelled("http_requests", method=method, path=path, status_class=_status_class(status_code))
        if counter is not None:
            counter.inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        counter = self._labelled("http_5xx", method=method, path=path)
        if counter is not None:
            counter.inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        histogram = self._labelled(
            "http_latency", method=method, path=path, status_class=_status_class(status_code)
        )
        if histogram is not None:
            histogram.observe(max(0.0, float(duration_seconds)))

    def record_notification(self, notification_type: str) -> None:
        counter = self._labelled("notifications", type=notification_type or "unknown")
        if counter is not None:
            counter.inc()

    def record_notification_push(self, outcome: str, count: int = 1) -> None:
        counter = self._labelled("notification_pushes", outcome=outcome or "unknown")
        if counter is not None and count > 0:
            counter.inc(count)

    def set_ws_connections(self, count: int) -> None:
        gauge = self._labelled("ws_connections")
        if gauge is not None:
            gauge.set(max(0, count))

    def record_match(self, kind: str, count: int = 1) -> None:
        counter = self._labelled("matches", kind=kind or "unknown")
        if counter is not None and count > 0:
            counter.inc(count)

    def record_escrow_transition(self, status: str) -> None:
        counter = self._labelled("escrow_transitions", status=status)
        if counter is not None:
            counter.inc()

    def record_processor_error(self, operation: str) -> None:
        counter = self._labelled("processor_errors", operation=operation or "unknown")
        if counter is not None:
            counter.inc()

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        gauge = self._labelled("job_last_success", job=job)
        if gauge is not None:
            gauge.set(time.time() if timestamp is None else timestamp)

    def record_job_error(self, job: str, reason: str) -> None:
        counter = self._labelled("job_errors", job=job, reason=reason or "unknown")
        if counter is not None:
            counter.inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        gauge = self._labelled("circuit_state", circuit=circuit)
        if gauge is not None:
            gauge.set(_CIRCUIT_STATE_VALUES.get(state, -1.0))

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", _PLAIN_TEXT
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", _PLAIN_TEXT


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
