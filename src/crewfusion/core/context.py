"""
Write-once store of finished stage outputs for one pipeline run.
"""

from collections.abc import Iterator, Mapping
from types import MappingProxyType


class ContextWriteError(KeyError):
    """A stage output was written twice within one run."""


class PipelineContext(Mapping[str, str]):
    """Mapping of stage id to finished output.

    Entries are inserted once, at stage completion, and never overwritten or
    removed until ``clear()`` starts a new run. Readers get ``view()``.
    """

    def __init__(self):
        self._outputs: dict[str, str] = {}

    def record(self, stage_id: str, output: str) -> None:
        if stage_id in self._outputs:
            raise ContextWriteError(f"Output for stage '{stage_id}' already recorded")
        self._outputs[stage_id] = output

    def clear(self) -> None:
        self._outputs = {}

    def has_all(self, stage_ids) -> bool:
        return all(stage_id in self._outputs for stage_id in stage_ids)

    def view(self) -> Mapping[str, str]:
        """Read-only live view handed to prompt builders and observers."""
        return MappingProxyType(self._outputs)

    def as_dict(self) -> dict[str, str]:
        return dict(self._outputs)

    def __getitem__(self, stage_id: str) -> str:
        return self._outputs[stage_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._outputs)

    def __len__(self) -> int:
        return len(self._outputs)

    def __repr__(self) -> str:
        return f"PipelineContext({sorted(self._outputs)})"
