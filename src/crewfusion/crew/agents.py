"""
The six-agent app-building crew.

Dependency graph (data dependencies only):

    idea-generation -> app-requirements -> code-generation -> code-review
           |                                     |
           +--> deployment                       +--> testing (also needs the idea)

With ``sequential`` every stage additionally waits for the one declared
before it, which reproduces a strict one-at-a-time pipeline.
"""

from collections.abc import Mapping

from ..config.settings import PipelineConfig
from ..core.client import RetryingApiClient
from ..core.orchestrator import PipelineOrchestrator
from ..core.stages import StageDefinition, chain_sequentially
from . import prompts
from .history import IdeaHistory, IdeaHistoryRecorder

IDEA_GENERATION = "idea-generation"
APP_REQUIREMENTS = "app-requirements"
CODE_GENERATION = "code-generation"
CODE_REVIEW = "code-review"
DEPLOYMENT = "deployment"
TESTING = "testing"


def build_crew_stages(
    history: IdeaHistory | None = None, config: PipelineConfig | None = None
) -> list[StageDefinition]:
    """Stage definitions for the crew, in display order."""
    history = history if history is not None else IdeaHistory()
    config = config or PipelineConfig()

    def idea(outputs: Mapping[str, str]) -> str:
        return outputs.get(IDEA_GENERATION, "")

    stages = [
        StageDefinition(
            id=IDEA_GENERATION,
            name="Idea Generator",
            role="Creative Strategist",
            description="Generates innovative full-stack application ideas that solve "
            "real-world problems with clear business value.",
            build_prompt=lambda outputs: prompts.idea_generation(history.titles),
            synthesize=prompts.seeded_idea,
        ),
        StageDefinition(
            id=APP_REQUIREMENTS,
            name="Requirements Analyst",
            role="Product Manager",
            description="Creates comprehensive requirements documents with user stories, "
            "functional specs, and technical recommendations.",
            depends_on={IDEA_GENERATION},
            build_prompt=lambda outputs: prompts.app_requirements(idea(outputs)),
        ),
        StageDefinition(
            id=CODE_GENERATION,
            name="Code Generator",
            role="Full-Stack Developer",
            description="Generates production-ready boilerplate code for both frontend "
            "React components and backend Express servers.",
            depends_on={IDEA_GENERATION, APP_REQUIREMENTS},
            build_prompt=lambda outputs: prompts.code_generation(
                idea(outputs),
                outputs.get(APP_REQUIREMENTS, ""),
                config.requirements_excerpt_chars,
            ),
        ),
        StageDefinition(
            id=CODE_REVIEW,
            name="Code Reviewer",
            role="Senior Engineer",
            description="Analyzes generated code for security vulnerabilities, performance "
            "issues, and suggests best practice improvements.",
            depends_on={CODE_GENERATION},
            build_prompt=lambda outputs: prompts.code_review(
                outputs.get(CODE_GENERATION, ""), config.review_code_excerpt_chars
            ),
        ),
        StageDefinition(
            id=DEPLOYMENT,
            name="DevOps Engineer",
            role="Infrastructure Specialist",
            description="Creates detailed deployment strategies for modern cloud platforms "
            "with CI/CD pipelines and monitoring.",
            depends_on={IDEA_GENERATION},
            build_prompt=lambda outputs: prompts.deployment(idea(outputs)),
        ),
        StageDefinition(
            id=TESTING,
            name="QA Engineer",
            role="Quality Assurance",
            description="Develops comprehensive testing strategies including unit tests, "
            "integration tests, and E2E test scenarios.",
            depends_on={IDEA_GENERATION, CODE_GENERATION},
            build_prompt=lambda outputs: prompts.testing(
                idea(outputs), outputs.get(CODE_GENERATION, ""), config.testing_code_excerpt_chars
            ),
        ),
    ]

    if config.sequential:
        return chain_sequentially(stages)
    return stages


def build_crew(
    client: RetryingApiClient,
    history: IdeaHistory | None = None,
    config: PipelineConfig | None = None,
) -> PipelineOrchestrator:
    """Orchestrator for the crew, recording each generated idea into ``history``."""
    history = history if history is not None else IdeaHistory()
    orchestrator = PipelineOrchestrator(build_crew_stages(history, config), client)
    orchestrator.subscribe(IdeaHistoryRecorder(history, orchestrator.tracker, IDEA_GENERATION))
    return orchestrator
