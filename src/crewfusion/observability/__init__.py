"""
Observability for CrewFusion: structured logging, OpenTelemetry metrics and tracing.

Every log line carries the current pipeline run ID:

    t=<ISO8601> level=INFO run=<run id> mod=orchestrator op=run msg="..."

Environment variables:
- CF_OBSERVABILITY__LOG_LEVEL=INFO
- CF_OBSERVABILITY__ENABLE_TRACING=true
- CF_OBSERVABILITY__ENABLE_METRICS=true
- CF_OBSERVABILITY__OTLP_ENDPOINT=http://collector:4317
"""

from .logging import get_logger, get_run_id, set_run_id, setup_logging
from .metrics import (
    get_metrics_collector,
    histogram,
    setup_meter_provider,
    setup_metrics,
    timer,
)
from .tracing import get_tracing_manager, setup_tracing, trace_span

__all__ = [
    "get_logger",
    "setup_logging",
    "get_run_id",
    "set_run_id",
    "histogram",
    "timer",
    "get_metrics_collector",
    "setup_metrics",
    "setup_meter_provider",
    "trace_span",
    "setup_tracing",
    "get_tracing_manager",
]
