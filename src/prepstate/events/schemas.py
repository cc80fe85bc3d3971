"""Canonical attempt event and the raw record shapes it is normalized from.

Every attempt, whatever session produced it, becomes one ``AttemptEvent``:

{
    "event_key": "a1b2...",
    "skill": "Linear Equations in One Variable",
    "subject": "math",
    "difficulty": "hard",
    "correct": true,
    "occurred_at": "2026-02-23T14:05:00+00:00",
    "source": "marathon"
}

Events are immutable. Aggregators fold them; nothing rewrites them.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Subject(str, Enum):
    MATH = "math"
    VERBAL = "verbal"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

    @property
    def rank(self) -> int:
        return DIFFICULTY_RANK[self]


DIFFICULTY_RANK: dict[Difficulty, int] = {
    Difficulty.EASY: 0,
    Difficulty.MEDIUM: 1,
    Difficulty.HARD: 2,
}


class Source(str, Enum):
    """Session type that produced an attempt."""

    QUIZ = "quiz"
    MARATHON = "marathon"
    MOCK_TEST = "mockTest"
    DRILL = "drill"


class AttemptEvent(BaseModel):
    """One practice attempt. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    event_key: str
    skill: str = Field(min_length=1)
    subject: Subject
    difficulty: Difficulty = Difficulty.MEDIUM
    correct: bool
    occurred_at: datetime
    source: Source = Source.DRILL


class RawAttempt(BaseModel):
    """Loosely-typed attempt record as produced by quiz, marathon, mock test
    and drill sessions. Field names vary by origin; aliases cover them all.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    attempt_id: str | int | None = Field(
        default=None, validation_alias=AliasChoices("attempt_id", "attemptId", "event_key", "id")
    )
    user_id: str | int | None = Field(default=None, validation_alias=AliasChoices("user_id", "userId"))
    session_id: str | int | None = Field(default=None, validation_alias=AliasChoices("session_id", "sessionId"))
    question_id: str | int | None = Field(default=None, validation_alias=AliasChoices("question_id", "questionId"))
    skill: str | None = Field(default=None, validation_alias=AliasChoices("skill", "topic", "target_topic"))
    subject: str | None = None
    difficulty: str | None = None
    correct: bool | None = Field(default=None, validation_alias=AliasChoices("correct", "is_correct", "isCorrect"))
    occurred_at: Any = Field(
        default=None,
        validation_alias=AliasChoices("occurred_at", "occurredAt", "created_at", "createdAt", "timestamp", "ts"),
    )
    source: str | None = Field(default=None, validation_alias=AliasChoices("source", "session_type", "sessionType"))
