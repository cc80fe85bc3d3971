"""Immutable read views and the cache entry they are served from."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo

from prepstate.mastery.aggregator import SkillMasteryState, build_mastery
from prepstate.quests.models import Quest, QuestStats
from prepstate.reconcile.state import DerivedState
from prepstate.streaks.calculator import StreakState, streak_for_events


@dataclass(frozen=True)
class UserSnapshot:
    """What a consumer sees for one user at one instant."""

    user_id: str
    as_of: datetime
    version: int
    mastery: tuple[SkillMasteryState, ...]
    streak: StreakState
    quests: tuple[Quest, ...]
    quest_stats: QuestStats
    points: int
    pending_mutations: int = 0
    stale: bool = False


@dataclass(frozen=True)
class StalenessPolicy:
    stale_after: timedelta = timedelta(seconds=120)

    def is_stale(self, fetched_at: datetime | None, now: datetime) -> bool:
        return fetched_at is None or now - fetched_at > self.stale_after


@dataclass(frozen=True)
class CacheEntry:
    """Last authoritative base plus when and at which version it was fetched."""

    state: DerivedState
    fetched_at: datetime | None = None
    version: int = 0

    def is_stale(self, policy: StalenessPolicy, now: datetime) -> bool:
        return policy.is_stale(self.fetched_at, now)


def visible_quests(quests: tuple[Quest, ...], now: datetime) -> tuple[Quest, ...]:
    """Active quests (completable included), soonest expiry first."""
    active = [q for q in quests if q.is_active(now)]
    active.sort(key=lambda q: (q.expires_at, q.id))
    return tuple(active)


def quest_stats(quests: tuple[Quest, ...]) -> QuestStats:
    completed = [q for q in quests if q.completed]
    return QuestStats(
        completed=len(completed),
        total=len(quests),
        points_earned=sum(q.reward_points for q in completed),
    )


def build_snapshot(
    user_id: str,
    state: DerivedState,
    now: datetime,
    tz: tzinfo,
    min_daily_attempts: int,
    version: int = 0,
    pending_mutations: int = 0,
    stale: bool = False,
) -> UserSnapshot:
    return UserSnapshot(
        user_id=user_id,
        as_of=now,
        version=version,
        mastery=tuple(build_mastery(state.skills, now)),
        streak=streak_for_events(
            state.events.values(), now, tz, min_daily_attempts, state.longest_record
        ),
        quests=visible_quests(state.quests, now),
        quest_stats=quest_stats(state.quests),
        points=state.points,
        pending_mutations=pending_mutations,
        stale=stale,
    )
