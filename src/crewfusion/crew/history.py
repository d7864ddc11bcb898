"""
Append-only history of generated idea titles.

The history outlives pipeline runs so the idea prompt can steer away from
ideas already produced.
"""

from ..core.status import StageStatus, StatusObserver, StatusTracker
from ..observability.logging import get_logger

logger = get_logger(__name__)


def idea_title(output: str) -> str:
    """Title of an idea-stage output: its first line without the ``Title:`` label."""
    first_line = output.strip().split("\n", 1)[0].strip()
    return first_line.replace("Title: ", "", 1).strip()


class IdeaHistory:
    def __init__(self, titles: list[str] | None = None):
        self._titles: list[str] = list(titles or [])

    @property
    def titles(self) -> tuple[str, ...]:
        return tuple(self._titles)

    def record(self, output: str) -> str | None:
        title = idea_title(output)
        if not title:
            return None
        self._titles.append(title)
        logger.debug(f"Recorded idea title: {title}", history_size=len(self._titles))
        return title

    def __len__(self) -> int:
        return len(self._titles)


class IdeaHistoryRecorder(StatusObserver):
    """Records the idea stage's final output each time it completes."""

    def __init__(self, history: IdeaHistory, tracker: StatusTracker, stage_id: str):
        self.history = history
        self.tracker = tracker
        self.stage_id = stage_id

    def on_stage_status_changed(self, stage_id: str, status: StageStatus) -> None:
        if stage_id == self.stage_id and status is StageStatus.COMPLETED:
            self.history.record(self.tracker.stage_output(stage_id))
