"""
Stage and run lifecycle tracking with synchronous change notifications.

Stage lifecycle, once per run:

    idle -> working -> completed | error

Run lifecycle:

    idle -> running -> completed | error,  reset() -> idle
"""

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..observability.logging import get_logger
from .errors import InvalidTransitionError

logger = get_logger(__name__)


class StageStatus(Enum):
    IDLE = "idle"
    WORKING = "working"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.COMPLETED, StageStatus.ERROR)


class RunStatus(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.ERROR)


_STAGE_TRANSITIONS = {
    StageStatus.IDLE: {StageStatus.WORKING},
    StageStatus.WORKING: {StageStatus.COMPLETED, StageStatus.ERROR},
    StageStatus.COMPLETED: set(),
    StageStatus.ERROR: set(),
}

_RUN_TRANSITIONS = {
    RunStatus.IDLE: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.ERROR},
    RunStatus.COMPLETED: set(),
    RunStatus.ERROR: set(),
}


class EventType(Enum):
    STAGE_STATUS = "stage_status"
    STAGE_OUTPUT = "stage_output"
    RUN_STATUS = "run_status"


@dataclass(frozen=True)
class StatusEvent:
    """One change notification."""

    type: EventType
    stage_id: str | None = None
    stage_status: StageStatus | None = None
    output: str | None = None
    run_status: RunStatus | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type.value}
        if self.stage_id is not None:
            data["stage_id"] = self.stage_id
        if self.stage_status is not None:
            data["status"] = self.stage_status.value
        if self.run_status is not None:
            data["status"] = self.run_status.value
        if self.output is not None:
            data["output"] = self.output
        if self.error is not None:
            data["error"] = self.error
        return data


Listener = Callable[[StatusEvent], None]


class StatusObserver:
    """Listener base class dispatching events to per-type hooks."""

    def __call__(self, event: StatusEvent) -> None:
        if event.type is EventType.STAGE_STATUS:
            self.on_stage_status_changed(event.stage_id, event.stage_status)
        elif event.type is EventType.STAGE_OUTPUT:
            self.on_stage_output_updated(event.stage_id, event.output)
        else:
            self.on_run_status_changed(event.run_status, event.error)

    def on_stage_status_changed(self, stage_id: str, status: StageStatus) -> None:
        pass

    def on_stage_output_updated(self, stage_id: str, text: str) -> None:
        pass

    def on_run_status_changed(self, status: RunStatus, error_message: str | None) -> None:
        pass


@dataclass
class StageRecord:
    """Observable state of one stage within the current run."""

    status: StageStatus = StageStatus.IDLE
    output: str = ""
    error: str | None = None
    attempts: int = 0
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class StatusTracker:
    """Per-run record of stage and run state.

    Listeners are called synchronously, in subscription order, from inside
    the mutating call. A listener that raises is logged and skipped.
    """

    def __init__(self, stage_ids: Iterable[str]):
        self._stage_ids = tuple(stage_ids)
        self._stages = {stage_id: StageRecord() for stage_id in self._stage_ids}
        self._run_status = RunStatus.IDLE
        self._run_error: str | None = None
        self._listeners: list[Listener] = []

    @property
    def stage_ids(self) -> tuple[str, ...]:
        return self._stage_ids

    @property
    def run_status(self) -> RunStatus:
        return self._run_status

    @property
    def run_error(self) -> str | None:
        return self._run_error

    def stage(self, stage_id: str) -> StageRecord:
        try:
            return self._stages[stage_id]
        except KeyError:
            raise KeyError(f"Unknown stage '{stage_id}'") from None

    def stage_status(self, stage_id: str) -> StageStatus:
        return self.stage(stage_id).status

    def stage_output(self, stage_id: str) -> str:
        return self.stage(stage_id).output

    def stage_statuses(self) -> dict[str, StageStatus]:
        return {stage_id: record.status for stage_id, record in self._stages.items()}

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_stage_status(self, stage_id: str, status: StageStatus, error: str | None = None) -> None:
        record = self.stage(stage_id)
        if status not in _STAGE_TRANSITIONS[record.status]:
            raise InvalidTransitionError(
                f"Stage '{stage_id}' cannot go from {record.status.value} to {status.value}"
            )
        record.status = status
        if status is StageStatus.WORKING:
            record.started_at = time.monotonic()
        else:
            record.finished_at = time.monotonic()
        if status is StageStatus.ERROR:
            record.error = error
        self._emit(
            StatusEvent(EventType.STAGE_STATUS, stage_id=stage_id, stage_status=status, error=error)
        )

    def set_stage_output(self, stage_id: str, output: str) -> None:
        record = self.stage(stage_id)
        if record.status is not StageStatus.WORKING:
            raise InvalidTransitionError(
                f"Stage '{stage_id}' output can only change while working, not {record.status.value}"
            )
        record.output = output
        self._emit(StatusEvent(EventType.STAGE_OUTPUT, stage_id=stage_id, output=output))

    def set_stage_attempts(self, stage_id: str, attempts: int) -> None:
        self.stage(stage_id).attempts = attempts

    def set_run_status(self, status: RunStatus, error: str | None = None) -> None:
        if status not in _RUN_TRANSITIONS[self._run_status]:
            raise InvalidTransitionError(
                f"Run cannot go from {self._run_status.value} to {status.value}"
            )
        self._run_status = status
        self._run_error = error if status is RunStatus.ERROR else None
        self._emit(StatusEvent(EventType.RUN_STATUS, run_status=status, error=self._run_error))

    def reset(self) -> None:
        """Return every stage and the run to idle, notifying for each change."""
        for stage_id, record in self._stages.items():
            was_idle = record.status is StageStatus.IDLE
            self._stages[stage_id] = StageRecord()
            if not was_idle:
                self._emit(
                    StatusEvent(
                        EventType.STAGE_STATUS, stage_id=stage_id, stage_status=StageStatus.IDLE
                    )
                )
        if self._run_status is not RunStatus.IDLE:
            self._run_status = RunStatus.IDLE
            self._run_error = None
            self._emit(StatusEvent(EventType.RUN_STATUS, run_status=RunStatus.IDLE))

    def snapshot(self) -> dict[str, Any]:
        """Serialisable view of the whole run."""
        return {
            "status": self._run_status.value,
            "error": self._run_error,
            "stages": {
                stage_id: {
                    "status": record.status.value,
                    "output": record.output,
                    "error": record.error,
                    "attempts": record.attempts,
                    "duration": record.duration,
                }
                for stage_id, record in self._stages.items()
            },
        }

    def _emit(self, event: StatusEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Status listener {listener!r} failed on {event.type.value}")
