"""
Pipeline metrics on top of the OpenTelemetry metrics API.

A no-op meter is used until ``setup_meter_provider`` installs an SDK one, so the
orchestrator can record unconditionally.
"""

import time
from collections import defaultdict
from collections.abc import Sequence
from contextlib import contextmanager
from typing import Any

from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.metrics import Counter, Histogram, Meter, NoOpMeter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection for pipeline runs."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

        # In-process aggregates for the status endpoint
        self._stage_calls: dict[str, int] = defaultdict(int)
        self._stage_successes: dict[str, int] = defaultdict(int)
        self._stage_durations: dict[str, list[float]] = defaultdict(list)
        self._run_outcomes: dict[str, int] = defaultdict(int)

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self._counters["stage_calls_total"] = self.meter.create_counter(
            "crewfusion_stage_calls_total", description="Total stage executions", unit="1"
        )
        self._counters["stage_successes_total"] = self.meter.create_counter(
            "crewfusion_stage_successes_total",
            description="Stage executions that completed",
            unit="1",
        )
        self._histograms["stage_duration"] = self.meter.create_histogram(
            "crewfusion_stage_duration_seconds", description="Stage duration", unit="s"
        )
        self._counters["api_attempts_total"] = self.meter.create_counter(
            "crewfusion_api_attempts_total", description="Model API attempts", unit="1"
        )
        self._counters["runs_total"] = self.meter.create_counter(
            "crewfusion_runs_total", description="Pipeline runs by outcome", unit="1"
        )
        self._histograms["run_duration"] = self.meter.create_histogram(
            "crewfusion_run_duration_seconds", description="Pipeline run duration", unit="s"
        )

    def histogram(self, name: str, description: str = "", unit: str = "1") -> Histogram:
        """Get or create a histogram metric."""
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(
                f"crewfusion_{name}", description=description, unit=unit
            )
        return self._histograms[name]

    def record_stage(self, stage_id: str, duration: float, success: bool):
        """Record one finished stage."""
        attributes = {"stage": stage_id}

        self._counters["stage_calls_total"].add(1, attributes)
        if success:
            self._counters["stage_successes_total"].add(1, attributes)
        self._histograms["stage_duration"].record(duration, attributes)

        self._stage_calls[stage_id] += 1
        if success:
            self._stage_successes[stage_id] += 1
        self._stage_durations[stage_id].append(duration)

    def record_attempt(self, outcome: str):
        """Record one model API attempt (``ok``, ``retry`` or ``failed``)."""
        self._counters["api_attempts_total"].add(1, {"outcome": outcome})

    def record_run(self, status: str, duration: float):
        """Record a finished pipeline run."""
        attributes = {"status": status}
        self._counters["runs_total"].add(1, attributes)
        self._histograms["run_duration"].record(duration, attributes)
        self._run_outcomes[status] += 1

    def get_summary(self) -> dict[str, Any]:
        """Aggregated per-stage figures and run outcomes."""
        stages = {}
        for stage_id, calls in self._stage_calls.items():
            durations = self._stage_durations[stage_id]
            stages[stage_id] = {
                "calls": calls,
                "successes": self._stage_successes[stage_id],
                "success_rate": self._stage_successes[stage_id] / calls if calls else 0.0,
                "avg_duration": sum(durations) / len(durations) if durations else 0.0,
            }
        return {"stages": stages, "runs": dict(self._run_outcomes)}


_metrics_collector: MetricsCollector | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def setup_meter_provider(
    service_name: str = "crewfusion",
    otlp_endpoint: str | None = None,
    readers: Sequence[MetricReader] = (),
) -> MeterProvider:
    """Install an SDK meter provider behind the global collector.

    Metrics are pushed over OTLP when ``otlp_endpoint`` is set; extra
    ``readers`` are attached as given.
    """
    metric_readers = list(readers)
    if otlp_endpoint:
        metric_readers.append(
            PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=otlp_endpoint))
        )
        logger.info("OTLP metric export enabled", endpoint=otlp_endpoint)

    provider = MeterProvider(
        metric_readers=metric_readers,
        resource=Resource.create({"service.name": service_name}),
    )
    setup_metrics(provider.get_meter(service_name))
    return provider


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector, creating a no-op one on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter("crewfusion"))
    return _metrics_collector


def histogram(name: str, description: str = "", unit: str = "1") -> Histogram:
    """Get or create a histogram metric."""
    return get_metrics_collector().histogram(name, description, unit)


@contextmanager
def timer(metric_name: str, attributes: dict[str, str] | None = None):
    """Context manager for timing operations."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        histogram(f"{metric_name}_duration", "Operation duration", "s").record(
            duration, attributes or {}
        )
