"""PostgreSQL durable store over async SQLAlchemy."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prepstate.errors import DurableStoreUnavailable, QuestNotFound
from prepstate.events.schemas import AttemptEvent, Difficulty, Source, Subject
from prepstate.quests.models import Quest, QuestType
from prepstate.store.base import DurableStore, StreakRecord
from prepstate.store.models import (
    AttemptEventRow,
    PointsLedgerRow,
    QuestRow,
    UserPointsRow,
    UserStreakRow,
)

logger = logging.getLogger(__name__)


def event_from_row(row: AttemptEventRow) -> AttemptEvent:
    return AttemptEvent(
        event_key=row.event_key,
        skill=row.skill,
        subject=Subject(row.subject),
        difficulty=Difficulty(row.difficulty),
        correct=row.correct,
        occurred_at=row.occurred_at,
        source=Source(row.source),
    )


def quest_from_row(row: QuestRow) -> Quest:
    return Quest(
        id=row.id,
        title=row.title,
        description=row.description,
        target_skill=row.target_skill,
        target_count=row.target_count,
        difficulty_tier=Difficulty(row.difficulty_tier),
        type=QuestType(row.quest_type),
        reward_points=row.reward_points,
        expires_at=row.expires_at,
        progress=row.progress,
        completed=row.completed,
        created_at=row.created_at,
        completed_at=row.completed_at,
        counted_event_keys=frozenset(row.counted_event_keys or ()),
    )


def quest_values(user_id: str, quest: Quest) -> dict:
    return {
        "id": quest.id,
        "user_id": user_id,
        "title": quest.title,
        "description": quest.description,
        "target_skill": quest.target_skill,
        "target_count": quest.target_count,
        "difficulty_tier": quest.difficulty_tier.value,
        "quest_type": quest.type.value,
        "reward_points": quest.reward_points,
        "expires_at": quest.expires_at,
        "progress": quest.progress,
        "completed": quest.completed,
        "created_at": quest.created_at,
        "completed_at": quest.completed_at,
        "counted_event_keys": sorted(quest.counted_event_keys),
    }


class SqlAlchemyStore(DurableStore):
    """Durable store backed by the tables in ``prepstate.store.models``.

    Every driver or connection error surfaces as ``DurableStoreUnavailable``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            logger.warning("Durable store error: %s", e)
            raise DurableStoreUnavailable(str(e)) from e

    # --- Events ---

    async def fetch_events_since(self, user_id: str, since: datetime | None) -> list[AttemptEvent]:
        stmt = select(AttemptEventRow).where(AttemptEventRow.user_id == user_id)
        if since is not None:
            stmt = stmt.where(AttemptEventRow.occurred_at >= since)
        stmt = stmt.order_by(AttemptEventRow.occurred_at, AttemptEventRow.event_key)
        async with self._session() as db:
            result = await db.execute(stmt)
            return [event_from_row(row) for row in result.scalars()]

    async def append_events(self, user_id: str, events: Sequence[AttemptEvent]) -> int:
        if not events:
            return 0
        stmt = (
            pg_insert(AttemptEventRow)
            .values(
                [
                    {
                        "user_id": user_id,
                        "event_key": e.event_key,
                        "skill": e.skill,
                        "subject": e.subject.value,
                        "difficulty": e.difficulty.value,
                        "correct": e.correct,
                        "occurred_at": e.occurred_at,
                        "source": e.source.value,
                    }
                    for e in events
                ]
            )
            .on_conflict_do_nothing(constraint="attempt_events_user_key")
            .returning(AttemptEventRow.id)
        )
        async with self._session() as db:
            result = await db.execute(stmt)
            inserted = len(result.all())
            await db.commit()
        return inserted

    # --- Quests ---

    async def fetch_active_quests(self, user_id: str) -> list[Quest]:
        async with self._session() as db:
            result = await db.execute(
                select(QuestRow).where(QuestRow.user_id == user_id).order_by(QuestRow.created_at, QuestRow.id)
            )
            return [quest_from_row(row) for row in result.scalars()]

    async def fetch_quest(self, quest_id: str) -> Quest | None:
        async with self._session() as db:
            row = await db.get(QuestRow, quest_id)
            return quest_from_row(row) if row else None

    async def upsert_quests(self, user_id: str, quests: Iterable[Quest]) -> None:
        rows = [quest_values(user_id, q) for q in quests]
        async with self._session() as db:
            await db.execute(
                delete(QuestRow).where(
                    QuestRow.user_id == user_id,
                    QuestRow.id.not_in([r["id"] for r in rows]),
                )
            )
            if rows:
                stmt = pg_insert(QuestRow).values(rows)
                # Stored progress and completion never move backwards
                stmt = stmt.on_conflict_do_update(
                    index_elements=[QuestRow.id],
                    set_={
                        "title": stmt.excluded.title,
                        "description": stmt.excluded.description,
                        "expires_at": stmt.excluded.expires_at,
                        "progress": func.greatest(QuestRow.progress, stmt.excluded.progress),
                        "completed": QuestRow.completed | stmt.excluded.completed,
                        "completed_at": func.coalesce(QuestRow.completed_at, stmt.excluded.completed_at),
                    },
                )
                await db.execute(stmt)
            await db.commit()

    async def update_quest_progress(
        self,
        quest_id: str,
        progress: int,
        counted_event_keys: Iterable[str] = (),
    ) -> None:
        async with self._session() as db:
            row = await db.get(QuestRow, quest_id, with_for_update=True)
            if row is None:
                raise QuestNotFound(quest_id)
            row.progress = max(row.progress, progress)
            row.counted_event_keys = sorted(set(row.counted_event_keys or ()) | set(counted_event_keys))
            await db.commit()

    async def mark_quest_completed(self, quest_id: str, completed_at: datetime | None = None) -> bool:
        async with self._session() as db:
            result = await db.execute(
                update(QuestRow)
                .where(QuestRow.id == quest_id, QuestRow.completed.is_(False))
                .values(completed=True, completed_at=completed_at or datetime.now(timezone.utc))
            )
            await db.commit()
            if result.rowcount:
                return True
            if await db.get(QuestRow, quest_id) is None:
                raise QuestNotFound(quest_id)
            return False

    # --- Points ---

    async def award_points(self, user_id: str, points: int, idempotency_key: str) -> bool:
        """Insert a ledger row and bump the user's total. False if the key exists."""
        now = datetime.now(timezone.utc)
        async with self._session() as db:
            existing = await db.execute(
                select(PointsLedgerRow.id).where(PointsLedgerRow.idempotency_key == idempotency_key)
            )
            if existing.scalar_one_or_none() is not None:
                return False

            db.add(
                PointsLedgerRow(
                    user_id=user_id,
                    amount=points,
                    idempotency_key=idempotency_key,
                    created_at=now,
                )
            )
            stmt = pg_insert(UserPointsRow).values(user_id=user_id, total_points=points, updated_at=now)
            stmt = stmt.on_conflict_do_update(
                index_elements=[UserPointsRow.user_id],
                set_={"total_points": UserPointsRow.total_points + points, "updated_at": now},
            )
            try:
                await db.flush()
                await db.execute(stmt)
                await db.commit()
            except IntegrityError:
                # Concurrent award with the same key won the insert
                await db.rollback()
                return False
        return True

    async def is_points_awarded(self, idempotency_key: str) -> bool:
        async with self._session() as db:
            result = await db.execute(
                select(PointsLedgerRow.id).where(PointsLedgerRow.idempotency_key == idempotency_key)
            )
            return result.scalar_one_or_none() is not None

    async def fetch_points_total(self, user_id: str) -> int:
        async with self._session() as db:
            row = await db.get(UserPointsRow, user_id)
            return row.total_points if row else 0

    # --- Streaks ---

    async def fetch_streak_record(self, user_id: str) -> StreakRecord:
        async with self._session() as db:
            row = await db.get(UserStreakRow, user_id)
            if row is None:
                return StreakRecord()
            return StreakRecord(longest_streak=row.longest_streak, updated_at=row.updated_at)

    async def save_streak_record(self, user_id: str, longest_streak: int) -> None:
        now = datetime.now(timezone.utc)
        stmt = pg_insert(UserStreakRow).values(user_id=user_id, longest_streak=longest_streak, updated_at=now)
        stmt = stmt.on_conflict_do_update(
            index_elements=[UserStreakRow.user_id],
            set_={
                "longest_streak": func.greatest(UserStreakRow.longest_streak, stmt.excluded.longest_streak),
                "updated_at": now,
            },
        )
        async with self._session() as db:
            await db.execute(stmt)
            await db.commit()
