"""
Global pytest configuration, fixtures and fakes.

Global state (settings cache, metrics collector, tracing manager) is reset
around every test. ``ScriptedTransport`` stands in for the Gemini API; sleeps
are injected so no test waits on a real backoff.
"""

import asyncio
from collections import Counter
from collections.abc import Callable

import pytest

from crewfusion.core.client import RetryingApiClient, RetryPolicy
from crewfusion.core.errors import ConfigurationError


def reset_all_global_state():
    """Reset every module-level singleton the package keeps."""
    from crewfusion.config.settings import get_settings
    from crewfusion.observability import metrics, tracing

    get_settings.cache_clear()
    metrics._metrics_collector = None
    tracing._tracing_manager = None


@pytest.fixture(autouse=True)
def test_isolation(monkeypatch):
    """Per-test isolation: no ambient CF_ variables, fresh singletons."""
    import os

    for key in list(os.environ):
        if key.startswith("CF_"):
            monkeypatch.delenv(key)
    reset_all_global_state()
    yield
    reset_all_global_state()


class ScriptedTransport:
    """Transport whose responses come from ``responder(prompt, attempt)``.

    The responder returns a list of fragments (any exception in the list is
    raised when reached), an exception to raise before the first fragment, or
    an async iterable for full control over timing. ``attempt`` counts calls
    per prompt, starting at 1. Every fragment is preceded by a suspension, as
    a network read would be.
    """

    def __init__(self, responder: Callable, has_credentials: bool = True):
        self.responder = responder
        self.has_credentials = has_credentials
        self.calls: list[str] = []
        self.closed = 0
        self._attempts: Counter = Counter()

    def check_credentials(self) -> None:
        if not self.has_credentials:
            raise ConfigurationError(
                "Gemini API key not found. Set CF_GEMINI__API_KEY or configure an API key."
            )

    def attempts(self, prompt: str) -> int:
        return self._attempts[prompt]

    async def send_prompt(self, prompt: str):
        self.calls.append(prompt)
        self._attempts[prompt] += 1
        outcome = self.responder(prompt, self._attempts[prompt])
        try:
            await asyncio.sleep(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if hasattr(outcome, "__aiter__"):
                async for fragment in outcome:
                    yield fragment
                return
            for item in outcome:
                if isinstance(item, BaseException):
                    raise item
                yield item
                await asyncio.sleep(0)
        finally:
            self.closed += 1


class SleepRecorder:
    """Async sleep replacement that records requested delays in seconds."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class GatedSleep(SleepRecorder):
    """Sleep that blocks until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.entered.set()
        await self.release.wait()


def stage_id_of(prompt: str) -> str:
    """Stage id encoded by the ``prompt_for`` builders below."""
    return prompt.split("|", 1)[0]


def prompt_for(stage_id: str) -> Callable:
    """Prompt builder echoing the stage id and every completed dependency."""

    def build(outputs) -> str:
        deps = ",".join(f"{key}={outputs[key]}" for key in sorted(outputs))
        return f"{stage_id}|{deps}"

    return build


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def make_transport():
    def factory(responder, **kwargs) -> ScriptedTransport:
        return ScriptedTransport(responder, **kwargs)

    return factory


@pytest.fixture
def make_client(sleeps):
    def factory(transport, max_attempts: int = 3, sleep=None) -> RetryingApiClient:
        return RetryingApiClient(
            transport, RetryPolicy(max_attempts=max_attempts), sleep=sleep or sleeps
        )

    return factory


@pytest.fixture
def stage_prompt():
    """Prompt builder factory; pair with ``stage_id_of`` in responders."""
    return prompt_for


@pytest.fixture
def prompt_stage():
    return stage_id_of


@pytest.fixture
def gated_sleep():
    return GatedSleep()
