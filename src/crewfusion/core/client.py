"""
Resilient model API client.

Each call is attempted up to ``RetryPolicy.max_attempts`` times. Failures are
classified per attempt:

- HTTP 429: back off ``2**n * 1000`` ms, ``QuotaExceeded`` once exhausted
- network errors: back off ``(n + 1) * 1000`` ms, ``NetworkUnavailable`` once exhausted
- HTTP 401/403: ``Unauthorized`` immediately, no further attempts
- anything else: retried at once, ``UpstreamFailure`` on the last attempt

Retries cover an attempt up to its first fragment. After a fragment has been
handed downstream a failure is terminal, since previews only ever grow.
"""

import asyncio
import functools
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import httpx
from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from ..config.settings import RetryConfig
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector, timer
from ..observability.tracing import get_tracing_manager
from .errors import ErrorKind, PipelineError, StageFailure, failure_for

logger = get_logger(__name__)


class RetryAction(Enum):
    RETRYABLE = "retryable"
    RATE_LIMITED = "rate_limited"
    FATAL = "fatal"


@dataclass(frozen=True)
class Classification:
    """Decision for one failed attempt.

    ``kind`` is the failure raised if this attempt turns out to be the last
    one (or immediately, for ``FATAL``).
    """

    action: RetryAction
    kind: ErrorKind
    delay_ms: int = 0
    message: str = ""

    @classmethod
    def retryable(
        cls, delay_ms: int, kind: ErrorKind = ErrorKind.UPSTREAM_FAILURE, message: str = ""
    ) -> "Classification":
        return cls(RetryAction.RETRYABLE, kind, delay_ms, message)

    @classmethod
    def rate_limited(cls, delay_ms: int) -> "Classification":
        return cls(RetryAction.RATE_LIMITED, ErrorKind.QUOTA_EXCEEDED, delay_ms)

    @classmethod
    def fatal(cls, kind: ErrorKind, message: str = "") -> "Classification":
        return cls(RetryAction.FATAL, kind, 0, message)


def rate_limit_delay_ms(attempt_index: int, base_ms: int = 1000) -> int:
    """1000, 2000, 4000, ... for attempts 0, 1, 2, ..."""
    return (2**attempt_index) * base_ms


def network_delay_ms(attempt_index: int, step_ms: int = 1000) -> int:
    """1000, 2000, 3000, ... for attempts 0, 1, 2, ..."""
    return (attempt_index + 1) * step_ms


def status_code_of(error: BaseException) -> int | None:
    """HTTP status carried by an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def is_network_error(error: BaseException) -> bool:
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    return type(error).__name__ == "NetworkError" or getattr(error, "code", None) == "NETWORK_ERROR"


def classify_error(
    error: BaseException,
    attempt_index: int,
    *,
    rate_limit_base_ms: int = 1000,
    network_step_ms: int = 1000,
) -> Classification:
    """Default classifier for model API failures."""
    if isinstance(error, PipelineError):
        return Classification.fatal(error.kind, error.message)

    status = status_code_of(error)
    if status == 429:
        return Classification.rate_limited(rate_limit_delay_ms(attempt_index, rate_limit_base_ms))
    if status in (401, 403):
        return Classification.fatal(ErrorKind.UNAUTHORIZED)
    if is_network_error(error):
        return Classification.retryable(
            network_delay_ms(attempt_index, network_step_ms), ErrorKind.NETWORK_UNAVAILABLE
        )
    return Classification.retryable(0, message=str(error))


Classifier = Callable[[BaseException, int], Classification]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget plus error classification."""

    max_attempts: int = 3
    rate_limit_base_ms: int = 1000
    network_step_ms: int = 1000
    classifier: Classifier | None = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            rate_limit_base_ms=config.rate_limit_base_ms,
            network_step_ms=config.network_step_ms,
        )

    def classify(self, error: BaseException, attempt_index: int) -> Classification:
        if self.classifier is not None:
            return self.classifier(error, attempt_index)
        return classify_error(
            error,
            attempt_index,
            rate_limit_base_ms=self.rate_limit_base_ms,
            network_step_ms=self.network_step_ms,
        )


class Transport(Protocol):
    """Network-facing primitive the client depends on."""

    def send_prompt(self, prompt: str) -> AsyncIterator[str]:
        """Send a prompt and yield response fragments until the response ends."""
        ...

    def check_credentials(self) -> None:
        """Raise ``ConfigurationError`` when no usable credential is configured."""
        ...


class _AttemptClassifications:
    """Per-call memo so each failed attempt is classified exactly once.

    tenacity consults ``retry``, ``wait`` and ``before_sleep`` for the same
    outcome; all of them read the cached decision.
    """

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self._outcome = None
        self._classification: Classification | None = None

    def for_state(self, retry_state: RetryCallState) -> Classification:
        if retry_state.outcome is not self._outcome:
            self._classification = self.policy.classify(
                retry_state.outcome.exception(), retry_state.attempt_number - 1
            )
            self._outcome = retry_state.outcome
        return self._classification

    def for_error(self, error: BaseException) -> Classification | None:
        """Cached decision for ``error`` if it was the last failed attempt."""
        if self._outcome is not None and self._outcome.exception() is error:
            return self._classification
        return None


async def _aclose(stream: AsyncIterator[str]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()


class RetryingApiClient:
    """Wraps a ``Transport`` with bounded retries and error classification."""

    def __init__(
        self,
        transport: Transport,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def check_credentials(self) -> None:
        self.transport.check_credentials()

    async def invoke(
        self, prompt: str, on_attempt: Callable[[int], None] | None = None
    ) -> AsyncIterator[str]:
        """Yield the response fragments for ``prompt``.

        ``on_attempt`` is called with the 1-based attempt number before each
        attempt starts.
        """
        stream, first = await self._open_stream(prompt, on_attempt)
        try:
            if first is None:
                return
            yield first
            async for fragment in stream:
                yield fragment
        except PipelineError:
            raise
        except Exception as exc:
            logger.warning(f"Response stream failed mid-way: {exc}")
            raise self._terminal_failure(exc, self.policy.max_attempts - 1) from exc
        finally:
            await _aclose(stream)

    async def _open_stream(
        self, prompt: str, on_attempt: Callable[[int], None] | None
    ) -> tuple[AsyncIterator[str], str | None]:
        classifications = _AttemptClassifications(self.policy)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.policy.max_attempts),
            wait=functools.partial(self._wait, classifications),
            retry=functools.partial(self._should_retry, classifications),
            before_sleep=functools.partial(self._before_sleep, classifications),
            sleep=self._sleep,
            reraise=True,
        )
        attempt_index = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempt_index = attempt.retry_state.attempt_number - 1
                    if on_attempt is not None:
                        on_attempt(attempt_index + 1)
                    result = await self._attempt(prompt, attempt_index)
                    get_metrics_collector().record_attempt("ok")
                    return result
        except PipelineError as exc:
            get_metrics_collector().record_attempt("failed")
            if isinstance(exc, StageFailure):
                logger.error(f"Model API call failed: {exc.message}", kind=exc.kind.value)
            raise
        except Exception as exc:
            get_metrics_collector().record_attempt("failed")
            failure = self._terminal_failure(
                exc, attempt_index, classifications.for_error(exc)
            )
            logger.error(
                f"Model API call failed after {attempt_index + 1} attempt(s): {failure.message}",
                kind=failure.kind.value,
            )
            raise failure from exc
        raise RuntimeError("Retry loop completed without result")

    async def _attempt(self, prompt: str, attempt_index: int) -> tuple[AsyncIterator[str], str | None]:
        """Start the transport stream and wait for its first fragment."""
        with get_tracing_manager().span("api.attempt", {"attempt": attempt_index + 1}):
            with timer("api.first_fragment"):
                stream = aiter(self.transport.send_prompt(prompt))
                try:
                    first = await anext(stream)
                except StopAsyncIteration:
                    return stream, None
                except BaseException:
                    await _aclose(stream)
                    raise
                return stream, first

    def _should_retry(
        self, classifications: _AttemptClassifications, retry_state: RetryCallState
    ) -> bool:
        if not retry_state.outcome.failed:
            return False
        return classifications.for_state(retry_state).action is not RetryAction.FATAL

    def _wait(self, classifications: _AttemptClassifications, retry_state: RetryCallState) -> float:
        return classifications.for_state(retry_state).delay_ms / 1000

    def _before_sleep(
        self, classifications: _AttemptClassifications, retry_state: RetryCallState
    ) -> None:
        get_metrics_collector().record_attempt("retry")
        classification = classifications.for_state(retry_state)
        logger.warning(
            f"Model API attempt {retry_state.attempt_number} failed: "
            f"{retry_state.outcome.exception()}; retrying in {classification.delay_ms}ms",
            action=classification.action.value,
        )

    def _terminal_failure(
        self,
        error: BaseException,
        attempt_index: int,
        classification: Classification | None = None,
    ) -> StageFailure:
        if classification is None:
            classification = self.policy.classify(error, attempt_index)
        return failure_for(classification.kind, classification.message or str(error))
