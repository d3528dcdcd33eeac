"""
Prometheus exporter — expose detection counters for Grafana.

Counts applied events by type and flagged purchases, and tracks how many
groups exist. Use it both as an exporter (anomalies, run report) and as
an EventProcessor listener (applied events).

Requires: pip install peerwatch[prometheus]

Usage::

    from peerwatch.prometheus import PrometheusExporter

    prom = PrometheusExporter(port=9401)
    processor.add_listener(prom.on_event)
    # Metrics now at http://localhost:9401/metrics
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .exporters import BaseExporter

if TYPE_CHECKING:
    from .pipeline import RunReport
    from .types import Anomaly, Event

logger = logging.getLogger("peerwatch.prometheus")

# Lazy imports — only fail when actually used
_prometheus_available = None


def _check_prometheus():
    global _prometheus_available
    if _prometheus_available is None:
        try:
            import prometheus_client  # noqa: F401
            _prometheus_available = True
        except ImportError:
            _prometheus_available = False
    return _prometheus_available


class PrometheusExporter(BaseExporter):
    """
    Exposes detection metrics as Prometheus counters/gauges.

    Metrics exported:
      - peerwatch_events_total       (counter, labels: event_type)
      - peerwatch_anomalies_total    (counter)
      - peerwatch_groups             (gauge)
      - peerwatch_line_errors_total  (counter)

    Metrics live in a registry owned by the exporter. Pass `port` to
    serve them over HTTP.
    """

    def __init__(self, port: int | None = None):
        if not _check_prometheus():
            raise ImportError(
                "PrometheusExporter requires prometheus_client. "
                "Install with: pip install peerwatch[prometheus]"
            )

        import prometheus_client as prom

        self.registry = prom.CollectorRegistry()

        self.events_total = prom.Counter(
            "peerwatch_events_total",
            "Events applied past the replay gate",
            ["event_type"],
            registry=self.registry,
        )
        self.anomalies_total = prom.Counter(
            "peerwatch_anomalies_total",
            "Purchases flagged as anomalous",
            registry=self.registry,
        )
        self.line_errors_total = prom.Counter(
            "peerwatch_line_errors_total",
            "Input lines skipped because they could not be processed",
            registry=self.registry,
        )
        self.groups = prom.Gauge(
            "peerwatch_groups",
            "Groups currently holding at least one user",
            registry=self.registry,
        )

        if port:
            prom.start_http_server(port, registry=self.registry)
            logger.info(f"Prometheus metrics at http://0.0.0.0:{port}/metrics")

    def on_event(self, event: "Event") -> None:
        """EventProcessor listener: count every applied event."""
        self.events_total.labels(event_type=event.event_type.value).inc()

    def export_anomaly(self, anomaly: "Anomaly") -> None:
        self.anomalies_total.inc()

    def export_report(self, report: "RunReport") -> None:
        self.groups.set(report.groups)
        if report.errors:
            self.line_errors_total.inc(report.errors)

    def sample(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        """Current value of one metric sample (used by tests)."""
        return self.registry.get_sample_value(name, labels or {})
