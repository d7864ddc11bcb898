"""
Stage definitions and dependency-graph validation.
"""

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace

from .errors import ConfigurationError

PromptBuilder = Callable[[Mapping[str, str]], str]


@dataclass(frozen=True)
class StageDefinition:
    """One unit of pipeline work.

    ``build_prompt`` receives a read-only mapping of completed outputs and
    must not depend on anything else. ``synthesize`` turns an initial input
    into this stage's output when the stage is seeded instead of invoked.
    """

    id: str
    build_prompt: PromptBuilder
    depends_on: frozenset[str] = field(default_factory=frozenset)
    name: str = ""
    role: str = ""
    description: str = ""
    synthesize: Callable[[str], str] | None = None

    def __post_init__(self):
        if not self.id:
            raise ConfigurationError("Stage id must be a non-empty string")
        # accept any iterable of ids
        object.__setattr__(self, "depends_on", frozenset(self.depends_on))
        if not self.name:
            object.__setattr__(self, "name", self.id)

    def seed_output(self, initial_input: str) -> str:
        if self.synthesize is None:
            return initial_input
        return self.synthesize(initial_input)


def validate_stages(stages: Sequence[StageDefinition]) -> None:
    """Reject duplicate ids and dependencies on unknown stages."""
    if not stages:
        raise ConfigurationError("A pipeline needs at least one stage")

    seen: set[str] = set()
    for stage in stages:
        if stage.id in seen:
            raise ConfigurationError(f"Duplicate stage id '{stage.id}'")
        seen.add(stage.id)

    for stage in stages:
        if stage.id in stage.depends_on:
            raise ConfigurationError(f"Stage '{stage.id}' depends on itself")
        unknown = stage.depends_on - seen
        if unknown:
            raise ConfigurationError(
                f"Stage '{stage.id}' depends on unknown stage(s): {', '.join(sorted(unknown))}"
            )


def compute_wavefronts(stages: Sequence[StageDefinition]) -> list[list[str]]:
    """Group stage ids into dependency levels, keeping declaration order.

    Raises ``ConfigurationError`` if the graph has a cycle.
    """
    validate_stages(stages)

    in_degree = {stage.id: len(stage.depends_on) for stage in stages}
    dependents: dict[str, list[str]] = {stage.id: [] for stage in stages}
    for stage in stages:
        for dep in stage.depends_on:
            dependents[dep].append(stage.id)

    order = [stage.id for stage in stages]
    remaining = set(order)
    levels: list[list[str]] = []

    while remaining:
        ready = [stage_id for stage_id in order if stage_id in remaining and in_degree[stage_id] == 0]
        if not ready:
            cycle = ", ".join(stage_id for stage_id in order if stage_id in remaining)
            raise ConfigurationError(f"Circular dependency between stages: {cycle}")

        levels.append(ready)
        for stage_id in ready:
            remaining.remove(stage_id)
            for dependent in dependents[stage_id]:
                in_degree[dependent] -= 1

    return levels


def chain_sequentially(stages: Iterable[StageDefinition]) -> list[StageDefinition]:
    """Add a dependency on the previous stage to every stage after the first."""
    chained: list[StageDefinition] = []
    for stage in stages:
        if chained:
            stage = replace(stage, depends_on=stage.depends_on | {chained[-1].id})
        chained.append(stage)
    return chained
