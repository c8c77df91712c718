from __future__ import annotations

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server
from prometheus_client import REGISTRY


class Metrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else REGISTRY
        self.jobs_total = Counter(
            "hls_jobs_total", "Transcode jobs by terminal state", ["state"], registry=self.registry
        )
        self.encode_time_seconds = Histogram(
            "hls_encode_seconds", "Per-job remux + encode time (s)", registry=self.registry
        )
        self.jobs_in_flight = Gauge(
            "hls_jobs_in_flight", "Jobs currently holding a worker slot", registry=self.registry
        )
        self.sessions_started = Counter(
            "hls_sessions_started", "On-demand playback sessions started", registry=self.registry
        )

    def start_server(self, port: int = 8000) -> None:
        if port:
            start_http_server(port, registry=self.registry)

    def job_finished(self, state: str, duration: float) -> None:
        self.jobs_total.labels(state=state).inc()
        self.encode_time_seconds.observe(duration)

    def inc_sessions(self) -> None:
        self.sessions_started.inc()


_default: Optional[Metrics] = None


def default_metrics() -> Metrics:
    """Process-wide metrics on the global registry, created on first use."""
    global _default
    if _default is None:
        _default = Metrics()
    return _default
