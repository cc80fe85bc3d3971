"""Durable store and change-feed abstractions.

Concrete stores raise ``DurableStoreUnavailable`` for any I/O failure;
callers never see driver-specific exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from prepstate.events.schemas import AttemptEvent
from prepstate.quests.models import Quest

TABLE_ATTEMPT_EVENTS = "attempt_events"
TABLE_QUESTS = "quests"
TABLE_POINTS = "points_ledger"
TABLE_STREAKS = "user_streaks"

ALL_TABLES: tuple[str, ...] = (TABLE_ATTEMPT_EVENTS, TABLE_QUESTS, TABLE_POINTS, TABLE_STREAKS)


@dataclass(frozen=True)
class StreakRecord:
    longest_streak: int = 0
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ChangeNotification:
    user_id: str
    table: str
    payload: dict[str, Any] | None = None


class DurableStore(ABC):
    """Long-term store for events, quests and point awards."""

    @abstractmethod
    async def fetch_events_since(self, user_id: str, since: datetime | None) -> list[AttemptEvent]:
        """Events with ``occurred_at >= since`` (all events when ``since`` is None)."""
        ...

    @abstractmethod
    async def append_events(self, user_id: str, events: Sequence[AttemptEvent]) -> int:
        """Store events, ignoring keys already stored. Returns the number inserted."""
        ...

    @abstractmethod
    async def fetch_active_quests(self, user_id: str) -> list[Quest]:
        """The user's current quest set, including completed quests not yet retired."""
        ...

    @abstractmethod
    async def fetch_quest(self, quest_id: str) -> Quest | None: ...

    @abstractmethod
    async def upsert_quests(self, user_id: str, quests: Iterable[Quest]) -> None:
        """Replace the user's quest set with ``quests``."""
        ...

    @abstractmethod
    async def update_quest_progress(
        self,
        quest_id: str,
        progress: int,
        counted_event_keys: Iterable[str] = (),
    ) -> None:
        """Raise stored progress to ``progress``. Never lowers it."""
        ...

    @abstractmethod
    async def mark_quest_completed(self, quest_id: str, completed_at: datetime | None = None) -> bool:
        """Set the completion flag. Returns False if it was already set."""
        ...

    @abstractmethod
    async def award_points(self, user_id: str, points: int, idempotency_key: str) -> bool:
        """Credit points once per key. Returns False if the key was already used."""
        ...

    @abstractmethod
    async def is_points_awarded(self, idempotency_key: str) -> bool: ...

    @abstractmethod
    async def fetch_points_total(self, user_id: str) -> int: ...

    @abstractmethod
    async def fetch_streak_record(self, user_id: str) -> StreakRecord: ...

    @abstractmethod
    async def save_streak_record(self, user_id: str, longest_streak: int) -> None:
        """Persist the longest streak. Keeps the larger of stored and given."""
        ...


class ChangeFeed(ABC):
    """Push notifications that a user's durable state changed."""

    @abstractmethod
    def subscribe_changes(
        self, user_id: str, tables: Iterable[str] = ALL_TABLES
    ) -> AsyncIterator[ChangeNotification]:
        """Async iterator of notifications for ``user_id`` on ``tables``."""
        ...

    @abstractmethod
    async def publish_change(
        self, user_id: str, table: str, payload: dict[str, Any] | None = None
    ) -> None: ...
