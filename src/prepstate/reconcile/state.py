"""Derived per-user state and the pure mutations applied to it."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime

from prepstate.events.schemas import AttemptEvent
from prepstate.events.skills import skill_key
from prepstate.mastery.aggregator import SkillAccumulator, fold_events, tier_of
from prepstate.quests.engine import mark_completed
from prepstate.quests.models import Quest
from prepstate.quests.progress import apply_to_quests


@dataclass(frozen=True)
class DerivedState:
    """Everything the engine derives for one user.

    Mutations return a new state; mappings held here are never modified
    after construction.
    """

    events: Mapping[str, AttemptEvent] = field(default_factory=dict)
    skills: Mapping[str, SkillAccumulator] = field(default_factory=dict)
    quests: tuple[Quest, ...] = ()
    points: int = 0
    longest_record: int = 0

    @classmethod
    def from_durable(
        cls,
        events: Iterable[AttemptEvent],
        quests: Iterable[Quest],
        points: int = 0,
        longest_record: int = 0,
    ) -> DerivedState:
        by_key = {e.event_key: e for e in events}
        return cls(
            events=by_key,
            skills=fold_events(by_key.values()),
            quests=tuple(quests),
            points=points,
            longest_record=longest_record,
        )

    def quest(self, quest_id: str) -> Quest | None:
        for q in self.quests:
            if q.id == quest_id:
                return q
        return None


def apply_attempt(state: DerivedState, event: AttemptEvent, now: datetime) -> tuple[DerivedState, list[Quest]]:
    """Fold one attempt into mastery and quest progress.

    Quest difficulty floors use the skill's tier before this attempt.
    Returns the new state and the quests whose progress moved.

    An event key already in the state is not folded into mastery again,
    but quests that have not counted it yet still do. A fetch can see an
    appended event while reading quest rows from before its progress write.
    """
    quests, changed = apply_to_quests(
        state.quests, event, lambda skill: tier_of(state.skills, skill, now), now
    )
    if event.event_key in state.events:
        if not changed:
            return state, []
        return replace(state, quests=tuple(quests)), changed

    events = dict(state.events)
    events[event.event_key] = event
    return (
        replace(
            state,
            events=events,
            skills=fold_events([event], state.skills),
            quests=tuple(quests),
        ),
        changed,
    )


def catch_up_quests(state: DerivedState) -> tuple[DerivedState, list[Quest]]:
    """Count stored events that stored quest progress has not seen yet.

    Attempts reach the store from other devices and from the ingestion
    worker without touching quest rows. Events are replayed in the order
    they occurred, each as of its own ``occurred_at`` and with the skill's
    tier just before it, so only attempts inside a quest's window count.
    Returns the new state and the quests whose progress moved.
    """
    open_quests = [q for q in state.quests if not q.completed and q.progress < q.target_count]
    if not open_quests or not state.events:
        return state, []
    starts = [q.created_at for q in open_quests if q.created_at is not None]
    start = min(starts) if len(starts) == len(open_quests) else None

    quests = list(state.quests)
    skills: dict[str, SkillAccumulator] = {}
    for event in sorted(state.events.values(), key=lambda e: (e.occurred_at, e.event_key)):
        if event.correct and (start is None or event.occurred_at >= start):
            tier = tier_of(skills, event.skill, event.occurred_at)
            quests, _ = apply_to_quests(quests, event, lambda _skill: tier, event.occurred_at)
        key = skill_key(event.skill)
        skills[key] = (skills.get(key) or SkillAccumulator.start(event)).add(event)

    moved = [new for new, old in zip(quests, state.quests) if new is not old]
    if not moved:
        return state, []
    return replace(state, quests=tuple(quests)), moved


def apply_claim(state: DerivedState, quest_id: str, now: datetime) -> DerivedState:
    """Locally mark a quest completed and credit its points once."""
    quest = state.quest(quest_id)
    if quest is None or quest.completed:
        return state
    done = mark_completed(quest, now)
    return replace(
        state,
        quests=tuple(done if q.id == quest_id else q for q in state.quests),
        points=state.points + quest.reward_points,
    )


def merge_quest(newer: Quest, base: Quest | None) -> Quest:
    """``newer`` with progress and completion never behind ``base``."""
    if base is None:
        return newer
    return replace(
        newer,
        progress=max(newer.progress, base.progress),
        counted_event_keys=newer.counted_event_keys | base.counted_event_keys,
        completed=newer.completed or base.completed,
        completed_at=newer.completed_at or base.completed_at,
    )


def apply_quest_set(state: DerivedState, quests: Iterable[Quest]) -> DerivedState:
    """Replace the quest set, keeping progress already recorded for the same ids."""
    current = {q.id: q for q in state.quests}
    return replace(state, quests=tuple(merge_quest(q, current.get(q.id)) for q in quests))
