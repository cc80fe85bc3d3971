"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
import pytest_asyncio

from prepstate.config import Settings
from prepstate.events.schemas import AttemptEvent, Difficulty, Source, Subject
from prepstate.events.skills import subject_for_skill
from prepstate.quests.models import Quest, QuestType
from prepstate.service import PrepStateService
from prepstate.store.memory import InMemoryStore

NOW = datetime(2026, 3, 4, 15, 0, 0, tzinfo=timezone.utc)  # Wednesday


class FakeClock:
    """Settable clock for actors and services."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


_keys = count(1)


def make_event(
    skill: str = "Algebra",
    correct: bool = True,
    difficulty: Difficulty = Difficulty.MEDIUM,
    occurred_at: datetime = NOW,
    source: Source = Source.DRILL,
    subject: Subject | None = None,
    key: str | None = None,
) -> AttemptEvent:
    return AttemptEvent(
        event_key=key or f"evt-{next(_keys)}",
        skill=skill,
        subject=subject or subject_for_skill(skill),
        difficulty=difficulty,
        correct=correct,
        occurred_at=occurred_at,
        source=source,
    )


def make_quest(
    quest_id: str = "q-1",
    target_skill: str = "Algebra",
    target_count: int = 3,
    difficulty: Difficulty = Difficulty.MEDIUM,
    progress: int = 0,
    completed: bool = False,
    expires_at: datetime | None = None,
    reward_points: int = 15,
    quest_type: QuestType = QuestType.DAILY,
    completed_at: datetime | None = None,
) -> Quest:
    return Quest(
        id=quest_id,
        title=f"Solve {target_count} {target_skill} questions",
        description="",
        target_skill=target_skill,
        target_count=target_count,
        difficulty_tier=difficulty,
        type=quest_type,
        reward_points=reward_points,
        expires_at=expires_at or NOW + timedelta(days=1),
        progress=progress,
        completed=completed,
        created_at=NOW - timedelta(hours=1),
        completed_at=completed_at,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        reference_timezone="UTC",
        claim_timeout_seconds=1.0,
        claim_retry_attempts=3,
        claim_retry_backoff_seconds=0.0,
        outbox_retry_seconds=0.05,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def event_factory() -> Callable[..., AttemptEvent]:
    return make_event


@pytest_asyncio.fixture
async def service(
    store: InMemoryStore, settings: Settings, clock: FakeClock
) -> AsyncGenerator[PrepStateService, None]:
    svc = PrepStateService(store, settings=settings, clock=clock)
    yield svc
    await svc.close()


@pytest.fixture
def quest_factory() -> Callable[..., Quest]:
    return make_quest
