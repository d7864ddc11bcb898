"""
Tests for wavefront orchestration: fan-out/fan-in, first-error semantics,
seeding, reset and stale-run handling.
"""

import asyncio
import random

import httpx
import pytest

from crewfusion.core.errors import ConfigurationError, InvalidTransitionError
from crewfusion.core.orchestrator import PipelineOrchestrator
from crewfusion.core.stages import StageDefinition
from crewfusion.core.status import EventType, RunStatus, StageStatus, StatusTracker
from crewfusion.crew.prompts import seeded_idea
from crewfusion.observability.metrics import get_metrics_collector
from crewfusion.transport.gemini import GeminiAPIError

NETWORK_MESSAGE = "Network error. Please check your internet connection."
UNAUTHORIZED_MESSAGE = "Invalid API key. Please check your API key configuration."


@pytest.fixture
def build_stages(stage_prompt):
    def factory(graph: dict[str, list[str]], **extra) -> list[StageDefinition]:
        return [
            StageDefinition(
                id=stage_id,
                build_prompt=stage_prompt(stage_id),
                depends_on=set(deps),
                **extra.get(stage_id, {}),
            )
            for stage_id, deps in graph.items()
        ]

    return factory


def echo(prompt_stage):
    return lambda prompt, attempt: [f"{prompt_stage(prompt)}-out"]


class TestScenarios:
    """End-to-end runs over scripted transports."""

    @pytest.mark.asyncio
    async def test_dependent_stage_after_retry(
        self, build_stages, make_transport, make_client, prompt_stage, sleeps
    ):
        """A succeeds on its second attempt, then B runs on A's output."""

        def responder(prompt, attempt):
            stage_id = prompt_stage(prompt)
            if stage_id == "a" and attempt == 1:
                return GeminiAPIError(429, "Resource has been exhausted")
            return [f"{stage_id}-out"]

        transport = make_transport(responder)
        orchestrator = PipelineOrchestrator(
            build_stages({"a": [], "b": ["a"]}), make_client(transport)
        )

        result = await orchestrator.run()

        assert result.status is RunStatus.COMPLETED
        assert result.success
        assert result.outputs == {"a": "a-out", "b": "b-out"}
        assert result.attempts == {"a": 2, "b": 1}
        assert orchestrator.tracker.stage("a").attempts == 2
        assert sleeps.delays == [1.0]
        assert transport.calls[-1] == "b|a=a-out"
        assert get_metrics_collector().get_summary()["runs"] == {"completed": 1}

    @pytest.mark.asyncio
    async def test_independent_stages_run_concurrently(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        """Every member of a wavefront is working before any finishes."""
        started = []
        all_started = asyncio.Event()

        async def wait_for_siblings(stage_id):
            started.append(stage_id)
            if len(started) == 3:
                all_started.set()
            await asyncio.wait_for(all_started.wait(), timeout=1)
            yield f"{stage_id}-out"

        transport = make_transport(lambda prompt, attempt: wait_for_siblings(prompt_stage(prompt)))
        orchestrator = PipelineOrchestrator(
            build_stages({"a": [], "b": [], "c": []}), make_client(transport)
        )
        events = []
        orchestrator.subscribe(events.append)

        result = await orchestrator.run()

        statuses = [e.stage_status for e in events if e.type is EventType.STAGE_STATUS]
        assert statuses[:3] == [StageStatus.WORKING] * 3
        assert result.outputs == {"a": "a-out", "b": "b-out", "c": "c-out"}
        assert result.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_network_exhaustion_fails_run(
        self, build_stages, make_transport, make_client, sleeps
    ):
        """Three network failures end the stage and the run; dependents stay idle."""
        transport = make_transport(lambda prompt, attempt: httpx.ConnectError("offline"))
        orchestrator = PipelineOrchestrator(
            build_stages({"a": [], "b": ["a"]}), make_client(transport)
        )

        result = await orchestrator.run()

        assert result.status is RunStatus.ERROR
        assert result.error == NETWORK_MESSAGE
        assert orchestrator.tracker.run_error == NETWORK_MESSAGE
        assert orchestrator.tracker.stage_status("a") is StageStatus.ERROR
        assert orchestrator.tracker.stage("a").error == NETWORK_MESSAGE
        assert orchestrator.tracker.stage_status("b") is StageStatus.IDLE
        assert len(transport.calls) == 3
        assert sleeps.delays == [1.0, 2.0]
        assert result.outputs == {}

    @pytest.mark.asyncio
    async def test_reset_mid_retry_discards_stale_run(
        self, build_stages, make_transport, make_client, prompt_stage, gated_sleep
    ):
        """A run orphaned during backoff cannot touch the next run's state."""
        replies = {1: GeminiAPIError(429, "quota"), 2: ["fresh"], 3: ["stale"]}

        def responder(prompt, attempt):
            if prompt_stage(prompt) == "a":
                return replies[attempt]
            return ["b-out"]

        transport = make_transport(responder)
        orchestrator = PipelineOrchestrator(
            build_stages({"a": [], "b": ["a"]}), make_client(transport, sleep=gated_sleep)
        )

        first = asyncio.create_task(orchestrator.run())
        await asyncio.wait_for(gated_sleep.entered.wait(), timeout=1)
        assert orchestrator.status is RunStatus.RUNNING

        orchestrator.reset()
        assert orchestrator.status is RunStatus.IDLE
        assert orchestrator.tracker.stage_status("a") is StageStatus.IDLE

        second = await orchestrator.run()
        assert second.status is RunStatus.COMPLETED
        assert second.outputs == {"a": "fresh", "b": "b-out"}

        gated_sleep.release.set()
        stale = await asyncio.wait_for(first, timeout=1)

        assert stale.discarded
        assert stale.status is RunStatus.IDLE
        assert not stale.success
        assert orchestrator.status is RunStatus.COMPLETED
        assert dict(orchestrator.outputs()) == {"a": "fresh", "b": "b-out"}
        assert orchestrator.tracker.stage_output("a") == "fresh"
        assert orchestrator.tracker.stage("a").attempts == 1
        assert transport.attempts("a|") == 3


class TestFailureSemantics:
    """First error stops scheduling while launched siblings finish."""

    @pytest.mark.asyncio
    async def test_siblings_finish_and_later_stages_stay_idle(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        def responder(prompt, attempt):
            stage_id = prompt_stage(prompt)
            if stage_id == "a":
                return GeminiAPIError(403, "Permission denied")
            return ["b1", "b2", "b3"]

        transport = make_transport(responder)
        orchestrator = PipelineOrchestrator(
            build_stages({"a": [], "b": [], "c": ["b"]}), make_client(transport)
        )

        result = await orchestrator.run()

        assert result.status is RunStatus.ERROR
        assert result.error == UNAUTHORIZED_MESSAGE
        assert result.outputs == {"b": "b1b2b3"}
        assert orchestrator.tracker.stage_status("b") is StageStatus.COMPLETED
        assert orchestrator.tracker.stage_status("c") is StageStatus.IDLE
        assert not any(prompt_stage(p) == "c" for p in transport.calls)

    @pytest.mark.asyncio
    async def test_first_error_in_time_wins(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        def responder(prompt, attempt):
            if prompt_stage(prompt) == "a":
                return ["partial", "more", RuntimeError("connection reset mid-stream")]
            return GeminiAPIError(401, "API key not valid")

        orchestrator = PipelineOrchestrator(
            build_stages({"a": [], "b": []}), make_client(make_transport(responder))
        )

        result = await orchestrator.run()

        assert result.error == UNAUTHORIZED_MESSAGE
        assert orchestrator.tracker.stage_status("a") is StageStatus.ERROR
        assert orchestrator.tracker.stage("a").error == (
            "Failed to get response from Gemini API: connection reset mid-stream"
        )
        assert orchestrator.tracker.stage_output("a") == "partialmore"


class TestRunLifecycle:
    """Preconditions, seeding and reset."""

    @pytest.mark.asyncio
    async def test_missing_credentials(self, build_stages, make_transport, make_client, prompt_stage):
        transport = make_transport(echo(prompt_stage), has_credentials=False)
        orchestrator = PipelineOrchestrator(build_stages({"a": []}), make_client(transport))

        with pytest.raises(ConfigurationError, match="API key not found"):
            await orchestrator.run()

        assert orchestrator.status is RunStatus.IDLE
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_run_requires_idle(self, build_stages, make_transport, make_client, prompt_stage):
        orchestrator = PipelineOrchestrator(
            build_stages({"a": []}), make_client(make_transport(echo(prompt_stage)))
        )
        await orchestrator.run()

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run()

        orchestrator.reset()
        result = await orchestrator.run()
        assert result.status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_concurrent_run_rejected(self, build_stages, make_transport, make_client, prompt_stage):
        orchestrator = PipelineOrchestrator(
            build_stages({"a": []}), make_client(make_transport(echo(prompt_stage)))
        )
        task = asyncio.create_task(orchestrator.run())
        await asyncio.sleep(0)
        assert orchestrator.status is RunStatus.RUNNING

        with pytest.raises(InvalidTransitionError):
            await orchestrator.run()

        assert (await task).status is RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_claims_pipeline_synchronously(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        orchestrator = PipelineOrchestrator(
            build_stages({"a": []}), make_client(make_transport(echo(prompt_stage)))
        )

        execution = orchestrator.start()
        assert orchestrator.status is RunStatus.RUNNING
        with pytest.raises(InvalidTransitionError):
            orchestrator.start()

        result = await execution
        assert result.status is RunStatus.COMPLETED
        assert result.run_id == orchestrator.run_id

        orchestrator.reset()
        assert orchestrator.run_id is None

    @pytest.mark.asyncio
    async def test_reset_from_final_status_listener_discards_run(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        orchestrator = PipelineOrchestrator(
            build_stages({"a": []}), make_client(make_transport(echo(prompt_stage)))
        )

        def reset_when_done(event):
            if event.type is EventType.RUN_STATUS and event.run_status is RunStatus.COMPLETED:
                orchestrator.reset()

        orchestrator.subscribe(reset_when_done)
        result = await orchestrator.run()

        assert result.discarded
        assert result.status is RunStatus.IDLE
        assert not result.success
        assert orchestrator.status is RunStatus.IDLE
        assert get_metrics_collector().get_summary()["runs"] == {}

    @pytest.mark.asyncio
    async def test_initial_input_seeds_first_stage(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        transport = make_transport(echo(prompt_stage))
        stages = build_stages(
            {"idea": [], "plan": ["idea"]}, idea={"synthesize": seeded_idea}
        )
        orchestrator = PipelineOrchestrator(stages, make_client(transport))
        events = []
        orchestrator.subscribe(events.append)

        result = await orchestrator.run("  Recipe planner  ")

        seeded = "Title: Recipe planner\nDescription: Recipe planner"
        assert result.outputs == {"idea": seeded, "plan": "plan-out"}
        assert transport.calls == [f"plan|idea={seeded}"]
        idea_statuses = [
            e.stage_status
            for e in events
            if e.type is EventType.STAGE_STATUS and e.stage_id == "idea"
        ]
        assert idea_statuses == [StageStatus.WORKING, StageStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_blank_input_does_not_seed(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        transport = make_transport(echo(prompt_stage))
        orchestrator = PipelineOrchestrator(build_stages({"idea": []}), make_client(transport))

        result = await orchestrator.run("   ")

        assert result.outputs == {"idea": "idea-out"}
        assert transport.calls == ["idea|"]

    @pytest.mark.asyncio
    async def test_reset_clears_everything(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        orchestrator = PipelineOrchestrator(
            build_stages({"a": [], "b": ["a"]}), make_client(make_transport(echo(prompt_stage)))
        )
        await orchestrator.run()

        orchestrator.reset()

        assert orchestrator.generation == 1
        assert orchestrator.status is RunStatus.IDLE
        assert dict(orchestrator.outputs()) == {}
        assert set(orchestrator.tracker.stage_statuses().values()) == {StageStatus.IDLE}

    @pytest.mark.asyncio
    async def test_previews_grow_with_each_fragment(
        self, build_stages, make_transport, make_client
    ):
        orchestrator = PipelineOrchestrator(
            build_stages({"a": []}),
            make_client(make_transport(lambda prompt, attempt: ["He", "llo", "!"])),
        )
        previews = []
        orchestrator.subscribe(
            lambda e: previews.append(e.output) if e.type is EventType.STAGE_OUTPUT else None
        )

        await orchestrator.run()

        assert previews == ["He", "Hello", "Hello!"]

    @pytest.mark.asyncio
    async def test_broken_listener_does_not_break_run(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        orchestrator = PipelineOrchestrator(
            build_stages({"a": []}), make_client(make_transport(echo(prompt_stage)))
        )

        def broken(event):
            raise RuntimeError("ui crashed")

        orchestrator.subscribe(broken)
        result = await orchestrator.run()

        assert result.status is RunStatus.COMPLETED

    def test_tracker_must_match_stages(self, build_stages, make_transport, make_client, prompt_stage):
        with pytest.raises(ConfigurationError):
            PipelineOrchestrator(
                build_stages({"a": []}),
                make_client(make_transport(echo(prompt_stage))),
                tracker=StatusTracker(["x"]),
            )

    def test_cyclic_graph_rejected_at_construction(
        self, build_stages, make_transport, make_client, prompt_stage
    ):
        with pytest.raises(ConfigurationError):
            PipelineOrchestrator(
                build_stages({"a": ["b"], "b": ["a"]}),
                make_client(make_transport(echo(prompt_stage))),
            )


class TestRandomGraphs:
    """No stage starts before its dependencies are in the context."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", range(8))
    async def test_dependencies_complete_before_start(
        self, seed, build_stages, make_transport, make_client, prompt_stage
    ):
        rng = random.Random(seed)
        ids = [f"s{i}" for i in range(8)]
        graph = {
            stage_id: rng.sample(ids[:index], rng.randint(0, min(index, 3)))
            for index, stage_id in enumerate(ids)
        }
        declared = list(graph.items())
        rng.shuffle(declared)

        orchestrator = PipelineOrchestrator(
            build_stages(dict(declared)), make_client(make_transport(echo(prompt_stage)))
        )
        violations = []

        def check(event):
            if event.type is EventType.STAGE_STATUS and event.stage_status is StageStatus.WORKING:
                missing = set(graph[event.stage_id]) - set(orchestrator.outputs())
                if missing:
                    violations.append((event.stage_id, missing))

        orchestrator.subscribe(check)
        result = await orchestrator.run()

        assert violations == []
        assert result.status is RunStatus.COMPLETED
        assert set(result.outputs) == set(ids)
        assert sum(len(level) for level in orchestrator.wavefronts) == len(ids)
