"""Quest value types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from prepstate.events.schemas import Difficulty


class QuestType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"


class QuestStatus(str, Enum):
    ACTIVE = "active"
    COMPLETABLE = "completable"
    COMPLETED = "completed"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Quest:
    """A skill-targeted, expiring goal with a one-time point reward.

    ``counted_event_keys`` holds the attempts already counted toward
    ``progress`` so re-applying an event is a no-op.
    """

    id: str
    title: str
    description: str
    target_skill: str
    target_count: int
    difficulty_tier: Difficulty
    type: QuestType
    reward_points: int
    expires_at: datetime
    progress: int = 0
    completed: bool = False
    created_at: datetime | None = None
    completed_at: datetime | None = None
    counted_event_keys: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.target_count <= 0:
            raise ValueError(f"target_count must be positive, got {self.target_count}")
        if self.reward_points <= 0:
            raise ValueError(f"reward_points must be positive, got {self.reward_points}")
        if self.progress < 0:
            raise ValueError(f"progress must be non-negative, got {self.progress}")

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    @property
    def is_completable(self) -> bool:
        return not self.completed and self.progress >= self.target_count

    def status(self, now: datetime) -> QuestStatus:
        if self.completed:
            return QuestStatus.COMPLETED
        if self.is_expired(now):
            return QuestStatus.EXPIRED
        if self.progress >= self.target_count:
            return QuestStatus.COMPLETABLE
        return QuestStatus.ACTIVE

    def is_active(self, now: datetime) -> bool:
        """Not completed and not expired. Completable quests are still active."""
        return not self.completed and not self.is_expired(now)


@dataclass(frozen=True)
class QuestStats:
    completed: int
    total: int
    points_earned: int = 0
