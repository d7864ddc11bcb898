"""
Pipeline orchestration core.

- Stage graph validated at construction, launched in dependency wavefronts
- Model calls retried with classified backoff (tenacity)
- Streamed fragments aggregated into live previews
- Stage and run lifecycle published to subscribers
- Generation-tagged runs so reset() orphans in-flight work safely
"""

from .client import Classification, RetryAction, RetryingApiClient, RetryPolicy, Transport
from .context import PipelineContext
from .errors import (
    ConfigurationError,
    ErrorKind,
    InvalidTransitionError,
    NetworkUnavailable,
    PipelineError,
    QuotaExceeded,
    StageFailure,
    Unauthorized,
    UpstreamFailure,
)
from .orchestrator import PipelineOrchestrator, RunResult
from .stages import StageDefinition, chain_sequentially, compute_wavefronts
from .status import RunStatus, StageStatus, StatusEvent, StatusObserver, StatusTracker
from .stream import StreamAggregator

__all__ = [
    "Classification",
    "RetryAction",
    "RetryingApiClient",
    "RetryPolicy",
    "Transport",
    "PipelineContext",
    "ConfigurationError",
    "ErrorKind",
    "InvalidTransitionError",
    "NetworkUnavailable",
    "PipelineError",
    "QuotaExceeded",
    "StageFailure",
    "Unauthorized",
    "UpstreamFailure",
    "PipelineOrchestrator",
    "RunResult",
    "StageDefinition",
    "chain_sequentially",
    "compute_wavefronts",
    "RunStatus",
    "StageStatus",
    "StatusEvent",
    "StatusObserver",
    "StatusTracker",
    "StreamAggregator",
]
