"""The app-building agent crew: stage definitions, prompts and idea history."""

from .agents import (
    APP_REQUIREMENTS,
    CODE_GENERATION,
    CODE_REVIEW,
    DEPLOYMENT,
    IDEA_GENERATION,
    TESTING,
    build_crew,
    build_crew_stages,
)
from .history import IdeaHistory, IdeaHistoryRecorder

__all__ = [
    "APP_REQUIREMENTS",
    "CODE_GENERATION",
    "CODE_REVIEW",
    "DEPLOYMENT",
    "IDEA_GENERATION",
    "TESTING",
    "build_crew",
    "build_crew_stages",
    "IdeaHistory",
    "IdeaHistoryRecorder",
]
