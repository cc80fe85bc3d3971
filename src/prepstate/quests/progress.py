"""Quest progress from attempt events.

``apply_event`` is pure: it returns the quest unchanged when the event does
not count, so feeding the same event twice leaves progress where the
first application put it.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime

from prepstate.events.schemas import AttemptEvent, Difficulty
from prepstate.events.skills import skills_match
from prepstate.mastery.tiers import Tier
from prepstate.quests.models import Quest

# Hardest quest difficulty a skill at each tier may be held to.
TIER_DIFFICULTY_CEILING: dict[Tier, Difficulty] = {
    Tier.NOVICE: Difficulty.MEDIUM,
    Tier.PRO: Difficulty.HARD,
    Tier.GOD: Difficulty.HARD,
}


def difficulty_floor(quest: Quest, skill_tier: Tier) -> Difficulty:
    """Easiest event difficulty that counts toward ``quest`` for a skill at ``skill_tier``."""
    ceiling = TIER_DIFFICULTY_CEILING[skill_tier]
    return quest.difficulty_tier if quest.difficulty_tier.rank <= ceiling.rank else ceiling


def counts_toward(quest: Quest, event: AttemptEvent, skill_tier: Tier, now: datetime) -> bool:
    if not event.correct:
        return False
    if not quest.is_active(now) or quest.progress >= quest.target_count:
        return False
    # Attempts made before the quest was issued never count
    if quest.created_at is not None and event.occurred_at < quest.created_at:
        return False
    if event.event_key in quest.counted_event_keys:
        return False
    if not skills_match(quest.target_skill, event.skill, event.subject, event.source):
        return False
    return event.difficulty.rank >= difficulty_floor(quest, skill_tier).rank


def apply_event(quest: Quest, event: AttemptEvent, skill_tier: Tier, now: datetime) -> Quest:
    """Quest after ``event``. Progress only moves up, by one per counted attempt."""
    if not counts_toward(quest, event, skill_tier, now):
        return quest
    return replace(
        quest,
        progress=quest.progress + 1,
        counted_event_keys=quest.counted_event_keys | {event.event_key},
    )


def apply_to_quests(
    quests: Iterable[Quest],
    event: AttemptEvent,
    tier_lookup: Callable[[str], Tier],
    now: datetime,
) -> tuple[list[Quest], list[Quest]]:
    """Apply one event to every quest.

    Returns ``(quests, changed)`` where ``changed`` lists only the quests
    whose progress moved.
    """
    tier = tier_lookup(event.skill)
    updated: list[Quest] = []
    changed: list[Quest] = []
    for quest in quests:
        new = apply_event(quest, event, tier, now)
        updated.append(new)
        if new is not quest:
            changed.append(new)
    return updated, changed
