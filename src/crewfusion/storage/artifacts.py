"""
Local export of stage outputs.

Each stage output is written as ``<agent-name>-output.txt`` next to a
``run.json`` summary of the run.
"""

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..core.orchestrator import RunResult
from ..core.stages import StageDefinition
from ..observability.logging import get_logger

log = get_logger(__name__)


@dataclass
class ArtifactRef:
    """Reference to a stored artifact."""

    uri: str
    size_bytes: int


def output_filename(stage: StageDefinition) -> str:
    """``Idea Generator`` -> ``idea-generator-output.txt``."""
    slug = re.sub(r"\s+", "-", stage.name.strip().lower())
    return f"{slug}-output.txt"


class LocalStore:
    """Filesystem artifact storage rooted at one directory."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, relpath: str) -> Path:
        path = (self.root / relpath).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Path escapes store root: {relpath}")
        return path

    def save_text(self, relpath: str, text: str) -> ArtifactRef:
        path = self._path(relpath)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return ArtifactRef(uri=path.as_uri(), size_bytes=path.stat().st_size)

    def save_json(self, relpath: str, obj: Any) -> ArtifactRef:
        return self.save_text(relpath, json.dumps(obj, indent=2, ensure_ascii=False))

    def read_text(self, relpath: str) -> str:
        return self._path(relpath).read_text(encoding="utf-8")

    def read_json(self, relpath: str) -> Any:
        return json.loads(self.read_text(relpath))

    def exists(self, relpath: str) -> bool:
        return self._path(relpath).exists()

    def delete(self, relpath: str) -> bool:
        """Remove an artifact; returns whether it existed."""
        path = self._path(relpath)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def list_artifacts(self, prefix: str = "") -> list[str]:
        return sorted(
            str(path.relative_to(self.root))
            for path in self.root.rglob("*")
            if path.is_file() and str(path.relative_to(self.root)).startswith(prefix)
        )


def export_run(
    store: LocalStore, stages: Sequence[StageDefinition], result: RunResult
) -> list[ArtifactRef]:
    """Write every produced output plus a ``run.json`` summary.

    Output files left by an earlier run for stages without output this time
    are removed.
    """
    refs = []
    files = {}
    for stage in stages:
        filename = output_filename(stage)
        if stage.id not in result.outputs:
            if store.delete(filename):
                log.debug(f"Removed stale output {filename}", stage=stage.id)
            continue
        refs.append(store.save_text(filename, result.outputs[stage.id]))
        files[stage.id] = filename

    refs.append(
        store.save_json(
            "run.json",
            {
                "run_id": result.run_id,
                "status": result.status.value,
                "error": result.error,
                "duration": round(result.duration, 3),
                "attempts": result.attempts,
                "files": files,
            },
        )
    )
    log.info(f"Exported {len(files)} stage output(s)", root=str(store.root))
    return refs
