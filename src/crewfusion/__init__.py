"""
CrewFusion - a crew of LLM agents that turns an app idea into a project.

Six agents (idea, requirements, code, review, deployment, testing) run as a
dependency graph against the Gemini API. Independent agents run concurrently,
streamed output is visible while it arrives, and transient API failures are
retried with backoff.

Quick Start:
    >>> from crewfusion.config import setup_container
    >>>
    >>> container = setup_container()
    >>> orchestrator = container.get("orchestrator")
    >>> result = await orchestrator.run("Recipe planner for shared kitchens")
    >>> print(result.status, list(result.outputs))

Command line:
    $ export CF_GEMINI__API_KEY=...
    $ crewfusion run --idea "Recipe planner" --output-dir ./outputs
    $ crewfusion serve
"""

__version__ = "0.1.0"

from .config.settings import Settings
from .core.orchestrator import PipelineOrchestrator, RunResult
from .core.stages import StageDefinition
from .crew.agents import build_crew

__all__ = [
    "PipelineOrchestrator",
    "RunResult",
    "StageDefinition",
    "Settings",
    "build_crew",
]
