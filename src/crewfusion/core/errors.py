"""
Error taxonomy for pipeline runs.

``ConfigurationError`` is raised before a run starts. ``StageFailure``
subclasses are stage-level and end up as the run-level error message.
"""

from enum import Enum


class ErrorKind(Enum):
    """Terminal failure kinds of a model API call."""

    CONFIGURATION = "configuration"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNAUTHORIZED = "unauthorized"
    NETWORK_UNAVAILABLE = "network_unavailable"
    UPSTREAM_FAILURE = "upstream_failure"


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""

    kind: ErrorKind = ErrorKind.UPSTREAM_FAILURE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(PipelineError):
    """Invalid stage graph or missing credential. Never retried."""

    kind = ErrorKind.CONFIGURATION


class InvalidTransitionError(PipelineError, ValueError):
    """A stage or run status change that the lifecycle does not allow."""


class StageFailure(PipelineError):
    """Unrecoverable failure of one stage's model call."""

    default_message = "Stage failed"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class QuotaExceeded(StageFailure):
    kind = ErrorKind.QUOTA_EXCEEDED
    default_message = "API quota exceeded. Please try again later or check your billing."


class Unauthorized(StageFailure):
    kind = ErrorKind.UNAUTHORIZED
    default_message = "Invalid API key. Please check your API key configuration."


class NetworkUnavailable(StageFailure):
    kind = ErrorKind.NETWORK_UNAVAILABLE
    default_message = "Network error. Please check your internet connection."


class UpstreamFailure(StageFailure):
    """Any other failure; carries the upstream message."""

    kind = ErrorKind.UPSTREAM_FAILURE

    def __init__(self, upstream_message: str):
        super().__init__(f"Failed to get response from Gemini API: {upstream_message}")
        self.upstream_message = upstream_message


_FAILURES_BY_KIND: dict[ErrorKind, type[StageFailure]] = {
    ErrorKind.QUOTA_EXCEEDED: QuotaExceeded,
    ErrorKind.UNAUTHORIZED: Unauthorized,
    ErrorKind.NETWORK_UNAVAILABLE: NetworkUnavailable,
}


def failure_for(kind: ErrorKind, message: str = "") -> StageFailure:
    """Build the terminal failure for a kind; ``message`` feeds ``UpstreamFailure`` only."""
    if kind is ErrorKind.UPSTREAM_FAILURE:
        return UpstreamFailure(message)
    if kind not in _FAILURES_BY_KIND:
        raise ValueError(f"{kind} is not a stage-level failure kind")
    return _FAILURES_BY_KIND[kind]()
