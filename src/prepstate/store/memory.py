"""In-process store and change feed.

Same semantics as the SQL store and Redis feed; used by tests and by
single-process deployments.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable, Sequence
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from prepstate.errors import DurableStoreUnavailable, QuestNotFound
from prepstate.events.schemas import AttemptEvent
from prepstate.quests.models import Quest
from prepstate.store.base import (
    ALL_TABLES,
    TABLE_ATTEMPT_EVENTS,
    TABLE_POINTS,
    TABLE_QUESTS,
    TABLE_STREAKS,
    ChangeFeed,
    ChangeNotification,
    DurableStore,
    StreakRecord,
)


class InMemoryChangeFeed(ChangeFeed):
    """Fan-out of change notifications to per-subscriber queues."""

    def __init__(self) -> None:
        self._subscribers: dict[str, set[asyncio.Queue[ChangeNotification]]] = defaultdict(set)

    def subscribe_changes(
        self, user_id: str, tables: Iterable[str] = ALL_TABLES
    ) -> AsyncIterator[ChangeNotification]:
        # Registered before the first iteration so no publish is missed
        queue: asyncio.Queue[ChangeNotification] = asyncio.Queue()
        self._subscribers[user_id].add(queue)
        return self._drain(user_id, queue, frozenset(tables))

    async def _drain(
        self, user_id: str, queue: asyncio.Queue[ChangeNotification], wanted: frozenset[str]
    ) -> AsyncIterator[ChangeNotification]:
        try:
            while True:
                note = await queue.get()
                if note.table in wanted:
                    yield note
        finally:
            self._subscribers[user_id].discard(queue)
            if not self._subscribers[user_id]:
                del self._subscribers[user_id]

    async def publish_change(
        self, user_id: str, table: str, payload: dict[str, Any] | None = None
    ) -> None:
        note = ChangeNotification(user_id=user_id, table=table, payload=payload)
        for queue in list(self._subscribers.get(user_id, ())):
            queue.put_nowait(note)

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, ()))


class InMemoryStore(DurableStore):
    """Dict-backed durable store.

    Set ``available = False`` to make every call raise
    ``DurableStoreUnavailable``.
    """

    def __init__(self, feed: ChangeFeed | None = None) -> None:
        self.feed = feed
        self.available = True
        self._events: dict[str, dict[str, AttemptEvent]] = defaultdict(dict)
        self._quests: dict[str, Quest] = {}
        self._quest_owner: dict[str, str] = {}
        self._ledger: dict[str, tuple[str, int]] = {}
        self._points: dict[str, int] = defaultdict(int)
        self._streaks: dict[str, StreakRecord] = {}

    def _check(self) -> None:
        if not self.available:
            raise DurableStoreUnavailable("in-memory store marked unavailable")

    async def _notify(self, user_id: str, table: str, payload: dict[str, Any] | None = None) -> None:
        if self.feed is not None:
            await self.feed.publish_change(user_id, table, payload)

    # --- Events ---

    async def fetch_events_since(self, user_id: str, since: datetime | None) -> list[AttemptEvent]:
        self._check()
        events = self._events.get(user_id, {}).values()
        if since is not None:
            events = [e for e in events if e.occurred_at >= since]
        return sorted(events, key=lambda e: (e.occurred_at, e.event_key))

    async def append_events(self, user_id: str, events: Sequence[AttemptEvent]) -> int:
        self._check()
        stored = self._events[user_id]
        inserted = 0
        for event in events:
            if event.event_key not in stored:
                stored[event.event_key] = event
                inserted += 1
        if inserted:
            await self._notify(user_id, TABLE_ATTEMPT_EVENTS, {"inserted": inserted})
        return inserted

    # --- Quests ---

    async def fetch_active_quests(self, user_id: str) -> list[Quest]:
        self._check()
        return [q for qid, q in self._quests.items() if self._quest_owner[qid] == user_id]

    async def fetch_quest(self, quest_id: str) -> Quest | None:
        self._check()
        return self._quests.get(quest_id)

    async def upsert_quests(self, user_id: str, quests: Iterable[Quest]) -> None:
        self._check()
        incoming = {q.id: q for q in quests}
        for qid in [qid for qid, owner in self._quest_owner.items() if owner == user_id]:
            if qid not in incoming:
                del self._quests[qid]
                del self._quest_owner[qid]
        for qid, quest in incoming.items():
            current = self._quests.get(qid)
            if current is not None:
                # Stored progress and completion never move backwards
                quest = replace(
                    quest,
                    progress=max(quest.progress, current.progress),
                    counted_event_keys=quest.counted_event_keys | current.counted_event_keys,
                    completed=quest.completed or current.completed,
                    completed_at=quest.completed_at or current.completed_at,
                )
            self._quests[qid] = quest
            self._quest_owner[qid] = user_id
        await self._notify(user_id, TABLE_QUESTS)

    def _require_quest(self, quest_id: str) -> Quest:
        quest = self._quests.get(quest_id)
        if quest is None:
            raise QuestNotFound(quest_id)
        return quest

    async def update_quest_progress(
        self,
        quest_id: str,
        progress: int,
        counted_event_keys: Iterable[str] = (),
    ) -> None:
        self._check()
        quest = self._require_quest(quest_id)
        self._quests[quest_id] = replace(
            quest,
            progress=max(quest.progress, progress),
            counted_event_keys=quest.counted_event_keys | frozenset(counted_event_keys),
        )
        await self._notify(self._quest_owner[quest_id], TABLE_QUESTS, {"quest_id": quest_id})

    async def mark_quest_completed(self, quest_id: str, completed_at: datetime | None = None) -> bool:
        self._check()
        quest = self._require_quest(quest_id)
        if quest.completed:
            return False
        self._quests[quest_id] = replace(
            quest, completed=True, completed_at=completed_at or datetime.now(timezone.utc)
        )
        await self._notify(self._quest_owner[quest_id], TABLE_QUESTS, {"quest_id": quest_id})
        return True

    # --- Points ---

    async def award_points(self, user_id: str, points: int, idempotency_key: str) -> bool:
        self._check()
        if idempotency_key in self._ledger:
            return False
        self._ledger[idempotency_key] = (user_id, points)
        self._points[user_id] += points
        await self._notify(user_id, TABLE_POINTS, {"key": idempotency_key, "points": points})
        return True

    async def is_points_awarded(self, idempotency_key: str) -> bool:
        self._check()
        return idempotency_key in self._ledger

    async def fetch_points_total(self, user_id: str) -> int:
        self._check()
        return self._points.get(user_id, 0)

    # --- Streaks ---

    async def fetch_streak_record(self, user_id: str) -> StreakRecord:
        self._check()
        return self._streaks.get(user_id, StreakRecord())

    async def save_streak_record(self, user_id: str, longest_streak: int) -> None:
        self._check()
        current = self._streaks.get(user_id, StreakRecord())
        if longest_streak > current.longest_streak:
            self._streaks[user_id] = StreakRecord(
                longest_streak=longest_streak, updated_at=datetime.now(timezone.utc)
            )
            await self._notify(user_id, TABLE_STREAKS)
