"""
FastAPI server exposing the agent crew.

Endpoints:
- GET /health: component status and uptime
- GET /pipeline: run status plus every stage's status, output and error
- POST /pipeline/run: start a run (409 unless idle, 400 without credentials)
- POST /pipeline/reset: return to idle, orphaning any in-flight run
- GET /agents: agent definitions with their dependencies and current status
- GET /metrics: per-stage call counts, success rates and run outcomes

Usage:
    $ crewfusion serve
    $ curl -X POST http://localhost:8000/pipeline/run \
      -H 'Content-Type: application/json' \
      -d '{"idea": "Recipe planner for shared kitchens"}'
    $ curl http://localhost:8000/pipeline | jq .status

A run started without ``wait`` continues in the background; poll
``GET /pipeline`` for progress.
"""

import asyncio
import time
from collections.abc import AsyncGenerator, Awaitable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config.container import Container, setup_container
from ..config.settings import get_settings
from ..core.errors import ConfigurationError, InvalidTransitionError
from ..core.orchestrator import PipelineOrchestrator, RunResult
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector

logger = get_logger(__name__)


class RunRequest(BaseModel):
    """Request model for starting a run."""

    idea: str | None = Field(None, max_length=5000, description="Seed for the first agent")
    wait: bool = Field(False, description="Block until the run finishes")


class RunResponse(BaseModel):
    """Response model for run and reset endpoints."""

    status: str
    run_id: str | None = None
    error: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    attempts: dict[str, int] = Field(default_factory=dict)
    duration: float | None = None


class AgentInfo(BaseModel):
    id: str
    name: str
    role: str
    description: str
    depends_on: list[str]
    status: str


class HealthResponse(BaseModel):
    """Response model for health endpoint."""

    status: str
    version: str
    uptime_seconds: float
    components: dict[str, str]


def _orchestrator(request: Request) -> PipelineOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


async def _run_in_background(execution: Awaitable[RunResult]) -> None:
    try:
        await execution
    except Exception as e:
        logger.exception(f"Background run failed: {e}")


def create_app(container: Container | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``container`` defaults to one built from the current settings; tests pass
    their own to inject fake transports.
    """
    settings = container.settings if container is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Starting CrewFusion API server...")
        active = container or setup_container(settings)
        app.state.container = active
        app.state.orchestrator = active.get("orchestrator")
        app.state.startup_time = time.time()
        app.state.tasks = set()
        logger.info("CrewFusion API server ready")

        yield

        logger.info("Shutting down CrewFusion API server...")
        for task in list(app.state.tasks):
            task.cancel()
        await active.cleanup()

    app = FastAPI(
        title="CrewFusion",
        description="Multi-agent app generation pipeline",
        version=__version__,
        lifespan=lifespan,
    )

    if settings.api.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.api.cors_origins,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["content-type"],
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        return JSONResponse(status_code=400, content={"error": "configuration", "message": exc.message})

    @app.exception_handler(InvalidTransitionError)
    async def transition_error_handler(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"error": "conflict", "message": exc.message})

    @app.get("/health", response_model=HealthResponse)
    async def health_check_endpoint(request: Request) -> HealthResponse:
        """Health check endpoint."""
        startup_time = getattr(request.app.state, "startup_time", time.time())
        orchestrator = getattr(request.app.state, "orchestrator", None)

        components = {"config": "healthy"}
        components["orchestrator"] = "healthy" if orchestrator else "not_initialized"
        components["credentials"] = (
            "configured" if settings.gemini.has_credentials() else "missing"
        )

        return HealthResponse(
            status="healthy" if orchestrator else "unhealthy",
            version=__version__,
            uptime_seconds=max(0.0, time.time() - startup_time),
            components=components,
        )

    @app.get("/pipeline")
    async def pipeline_endpoint(request: Request) -> dict[str, Any]:
        """Current run and stage state."""
        orchestrator = _orchestrator(request)
        snapshot = orchestrator.tracker.snapshot()
        snapshot["generation"] = orchestrator.generation
        snapshot["wavefronts"] = orchestrator.wavefronts
        return snapshot

    @app.post("/pipeline/run", response_model=RunResponse)
    async def run_endpoint(body: RunRequest, request: Request) -> RunResponse:
        """Start a run; with ``wait`` the response carries the final result."""
        orchestrator = _orchestrator(request)

        if body.wait:
            result = await orchestrator.run(body.idea)
            return RunResponse(
                status=result.status.value,
                run_id=result.run_id,
                error=result.error,
                outputs=result.outputs,
                attempts=result.attempts,
                duration=result.duration,
            )

        # start() moves to RUNNING before this handler yields again.
        execution = orchestrator.start(body.idea)
        task = asyncio.create_task(_run_in_background(execution))
        request.app.state.tasks.add(task)
        task.add_done_callback(request.app.state.tasks.discard)
        return RunResponse(status=orchestrator.status.value, run_id=orchestrator.run_id)

    @app.post("/pipeline/reset", response_model=RunResponse)
    async def reset_endpoint(request: Request) -> RunResponse:
        orchestrator = _orchestrator(request)
        orchestrator.reset()
        return RunResponse(status=orchestrator.status.value)

    @app.get("/agents", response_model=list[AgentInfo])
    async def agents_endpoint(request: Request) -> list[AgentInfo]:
        """Agent definitions in display order."""
        orchestrator = _orchestrator(request)
        return [
            AgentInfo(
                id=stage.id,
                name=stage.name,
                role=stage.role,
                description=stage.description,
                depends_on=sorted(stage.depends_on),
                status=orchestrator.tracker.stage_status(stage.id).value,
            )
            for stage in orchestrator.stages
        ]

    @app.get("/metrics")
    async def metrics_endpoint() -> dict[str, Any]:
        """Aggregated stage and run metrics since process start."""
        return get_metrics_collector().get_summary()

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled API exception at {request.url.path}: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc) if not settings.is_production() else "An unexpected error occurred",
            },
        )

    return app
