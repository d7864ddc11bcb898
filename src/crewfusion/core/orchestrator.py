"""
Wavefront orchestration of agent stages.

A run walks the stage graph in wavefronts: every stage whose dependencies are
all present in the context launches at once, and the next wavefront is only
computed after every member of the current one is terminal. The first stage
error stops scheduling; siblings already launched are allowed to finish.

``reset()`` bumps a generation counter. Work belonging to an older generation
keeps running until its next suspension point but can no longer write to the
context or the tracker.
"""

import asyncio
import time
import uuid
from collections.abc import Callable, Coroutine, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..observability.logging import get_logger, set_run_id
from ..observability.metrics import get_metrics_collector
from ..observability.tracing import get_tracing_manager, trace_span
from .client import RetryingApiClient
from .context import PipelineContext
from .errors import ConfigurationError, InvalidTransitionError, PipelineError
from .stages import StageDefinition, compute_wavefronts
from .status import Listener, RunStatus, StageStatus, StatusTracker
from .stream import StreamAggregator

logger = get_logger(__name__)


@dataclass
class RunResult:
    """Outcome of one ``PipelineOrchestrator.run`` call."""

    run_id: str
    status: RunStatus
    outputs: dict[str, str]
    error: str | None = None
    attempts: dict[str, int] = field(default_factory=dict)
    duration: float = 0.0
    discarded: bool = False

    @property
    def success(self) -> bool:
        return self.status is RunStatus.COMPLETED and not self.discarded


@dataclass
class _RunState:
    run_id: str
    generation: int
    first_error: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    attempts: dict[str, int] = field(default_factory=dict)


class PipelineOrchestrator:
    """Runs a fixed set of stages against a ``RetryingApiClient``.

    The orchestrator is the only writer of its ``PipelineContext`` and
    ``StatusTracker``; observers subscribe and read.
    """

    def __init__(
        self,
        stages: Sequence[StageDefinition],
        client: RetryingApiClient,
        tracker: StatusTracker | None = None,
    ):
        self.stages = list(stages)
        self.wavefronts = compute_wavefronts(self.stages)
        self._stages_by_id = {stage.id: stage for stage in self.stages}
        self.client = client
        self.context = PipelineContext()
        if tracker is not None and set(tracker.stage_ids) != set(self._stages_by_id):
            raise ConfigurationError("Status tracker does not track the pipeline's stages")
        self.tracker = tracker or StatusTracker(self._stages_by_id)
        self._generation = 0
        self._current_run_id: str | None = None

    @property
    def status(self) -> RunStatus:
        return self.tracker.run_status

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def run_id(self) -> str | None:
        """Id of the run started since the last reset, if any."""
        return self._current_run_id

    @property
    def entry_stage(self) -> StageDefinition:
        """Stage seeded by an initial input: the first dependency-free stage."""
        return self._stages_by_id[self.wavefronts[0][0]]

    def stage(self, stage_id: str) -> StageDefinition:
        return self._stages_by_id[stage_id]

    def outputs(self) -> Mapping[str, str]:
        """Read-only view of the outputs completed so far in the current run."""
        return self.context.view()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.tracker.subscribe(listener)

    def reset(self) -> None:
        """Return to idle, clearing outputs and statuses and orphaning in-flight work."""
        self._generation += 1
        self._current_run_id = None
        self.context.clear()
        self.tracker.reset()
        logger.info("Pipeline reset", generation=self._generation)

    def start(self, initial_input: str | None = None) -> Coroutine[Any, Any, RunResult]:
        """Claim the pipeline and return the coroutine that executes the run.

        The preconditions and the move to ``running`` happen synchronously, so
        two callers racing on the same event loop cannot both start a run.
        Raises ``ConfigurationError`` when no credential is configured and
        ``InvalidTransitionError`` unless the pipeline is idle.
        """
        self.client.check_credentials()
        if self.tracker.run_status is not RunStatus.IDLE:
            raise InvalidTransitionError(
                f"Pipeline is {self.tracker.run_status.value}; reset() before running again"
            )

        state = _RunState(run_id=uuid.uuid4().hex[:12], generation=self._generation)
        set_run_id(state.run_id)
        self._current_run_id = state.run_id
        self.context.clear()
        self.tracker.set_run_status(RunStatus.RUNNING)
        return self._execute(state, initial_input)

    async def run(self, initial_input: str | None = None) -> RunResult:
        """Execute the whole stage graph once; see ``start`` for preconditions."""
        return await self.start(initial_input)

    @trace_span("pipeline.run")
    async def _execute(self, state: _RunState, initial_input: str | None) -> RunResult:
        start_time = time.perf_counter()
        logger.info(
            f"Starting pipeline with {len(self.stages)} stages",
            wavefronts=len(self.wavefronts),
            seeded=bool(initial_input and initial_input.strip()),
        )

        try:
            launched: set[str] = set()
            if initial_input and initial_input.strip():
                self._seed(self.entry_stage, initial_input.strip(), state)
                launched.add(self.entry_stage.id)

            while state.first_error is None and self._is_current(state):
                wave = [
                    stage
                    for stage in self.stages
                    if stage.id not in launched and self.context.has_all(stage.depends_on)
                ]
                if not wave:
                    break
                launched.update(stage.id for stage in wave)
                logger.debug(f"Launching wavefront: {[stage.id for stage in wave]}")

                outcomes = await asyncio.gather(
                    *(self._run_stage(stage, state) for stage in wave), return_exceptions=True
                )
                for outcome in outcomes:
                    if isinstance(outcome, BaseException):
                        raise outcome
        except Exception as e:
            if not self._is_current(state):
                raise
            logger.exception(f"Pipeline aborted by unexpected error: {e}")
            if state.first_error is None:
                state.first_error = str(e)

        duration = time.perf_counter() - start_time

        if not self._is_current(state):
            return self._discarded(state, duration)

        if state.first_error is None and len(self.context) == len(self.stages):
            self.tracker.set_run_status(RunStatus.COMPLETED)
        else:
            error = state.first_error or "Pipeline stopped before every stage ran"
            self.tracker.set_run_status(RunStatus.ERROR, error)

        # A listener may reset() while handling the final status event.
        if not self._is_current(state):
            return self._discarded(state, duration)

        status = self.tracker.run_status
        get_metrics_collector().record_run(status.value, duration)
        logger.timed(f"Pipeline finished: {status.value}", duration * 1000)

        return RunResult(
            run_id=state.run_id,
            status=status,
            outputs=self.context.as_dict(),
            error=self.tracker.run_error,
            attempts=dict(state.attempts),
            duration=duration,
        )

    def _is_current(self, state: _RunState) -> bool:
        return state.generation == self._generation

    def _discarded(self, state: _RunState, duration: float) -> RunResult:
        logger.info("Discarding result of a run superseded by reset()")
        return RunResult(
            run_id=state.run_id,
            status=RunStatus.IDLE,
            outputs=dict(state.outputs),
            attempts=dict(state.attempts),
            duration=duration,
            discarded=True,
        )

    def _seed(self, stage: StageDefinition, initial_input: str, state: _RunState) -> None:
        """Complete ``stage`` from the initial input without calling the API."""
        output = stage.seed_output(initial_input)
        self.tracker.set_stage_status(stage.id, StageStatus.WORKING)
        self.tracker.set_stage_output(stage.id, output)
        self.context.record(stage.id, output)
        state.outputs[stage.id] = output
        self.tracker.set_stage_status(stage.id, StageStatus.COMPLETED)
        logger.info(f"Stage '{stage.id}' seeded from initial input", stage=stage.id)

    async def _run_stage(self, stage: StageDefinition, state: _RunState) -> None:
        if not self._is_current(state):
            return

        self.tracker.set_stage_status(stage.id, StageStatus.WORKING)
        logger.info(f"Stage '{stage.id}' started", stage=stage.id)
        start_time = time.perf_counter()

        def on_attempt(attempt: int) -> None:
            if self._is_current(state):
                state.attempts[stage.id] = attempt
                self.tracker.set_stage_attempts(stage.id, attempt)

        def on_update(snapshot: str) -> None:
            if self._is_current(state):
                self.tracker.set_stage_output(stage.id, snapshot)

        try:
            with get_tracing_manager().span("pipeline.stage", {"stage": stage.id}):
                prompt = stage.build_prompt(self.context.view())
                aggregator = StreamAggregator()
                output = await aggregator.consume(
                    self.client.invoke(prompt, on_attempt=on_attempt),
                    on_update=on_update,
                    should_continue=lambda: self._is_current(state),
                )
        except Exception as e:
            duration = time.perf_counter() - start_time
            if not self._is_current(state):
                logger.debug(f"Discarding failure of stale stage '{stage.id}': {e}")
                return
            message = e.message if isinstance(e, PipelineError) else str(e)
            self.tracker.set_stage_status(stage.id, StageStatus.ERROR, error=message)
            if state.first_error is None:
                state.first_error = message
            get_metrics_collector().record_stage(stage.id, duration, False)
            logger.error(f"Stage '{stage.id}' failed: {message}", stage=stage.id)
            return

        if output is None or not self._is_current(state):
            logger.debug(f"Discarding output of stale stage '{stage.id}'")
            return

        duration = time.perf_counter() - start_time
        self.context.record(stage.id, output)
        state.outputs[stage.id] = output
        self.tracker.set_stage_status(stage.id, StageStatus.COMPLETED)
        get_metrics_collector().record_stage(stage.id, duration, True)
        logger.timed(
            f"Stage '{stage.id}' completed", duration * 1000, stage=stage.id, chars=len(output)
        )
