"""Per-skill mastery: XP fold, read-time decay, tiers.

Raw XP is a plain sum over a skill's events, so any permutation of the
same events folds to the same value. Decay never touches raw XP; it is
applied when a ``SkillMasteryState`` is built for a given ``now``.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from prepstate.events.schemas import AttemptEvent, Difficulty, Subject
from prepstate.events.skills import skill_key
from prepstate.mastery.tiers import GOD_THRESHOLD, PRO_THRESHOLD, Tier, compute_tier, tier_for

XP_BY_DIFFICULTY: dict[Difficulty, int] = {
    Difficulty.EASY: 10,
    Difficulty.MEDIUM: 25,
    Difficulty.HARD: 50,
}
INCORRECT_PENALTY = -15

DECAY_GRACE_DAYS = 14
DECAY_PER_DAY = 5


def xp_for_event(event: AttemptEvent) -> int:
    """XP delta for one attempt."""
    if event.correct:
        return XP_BY_DIFFICULTY[event.difficulty]
    return INCORRECT_PENALTY


@dataclass(frozen=True)
class SkillAccumulator:
    """Running fold for one skill. ``add`` returns a new accumulator."""

    key: str
    skill: str
    subject: Subject
    raw_xp: int = 0
    attempts: int = 0
    correct: int = 0
    last_activity_at: datetime | None = None

    @classmethod
    def start(cls, event: AttemptEvent) -> SkillAccumulator:
        return cls(key=skill_key(event.skill), skill=event.skill, subject=event.subject)

    def add(self, event: AttemptEvent) -> SkillAccumulator:
        """Fold one event. Callers skip event keys they have already folded."""
        skill, subject, last = self.skill, self.subject, self.last_activity_at
        # Label follows the most recent event; ties resolve to the smaller label
        if last is None or event.occurred_at > last or (
            event.occurred_at == last and event.skill < skill
        ):
            skill, subject, last = event.skill, event.subject, event.occurred_at

        return replace(
            self,
            skill=skill,
            subject=subject,
            raw_xp=self.raw_xp + xp_for_event(event),
            attempts=self.attempts + 1,
            correct=self.correct + (1 if event.correct else 0),
            last_activity_at=last,
        )

    @property
    def accuracy(self) -> float:
        return self.correct / self.attempts if self.attempts else 0.0


def fold_events(
    events: Iterable[AttemptEvent],
    base: Mapping[str, SkillAccumulator] | None = None,
    seen: Collection[str] = (),
) -> dict[str, SkillAccumulator]:
    """Fold events into per-skill accumulators keyed by normalized skill key.

    ``base`` is not modified. Events whose key is in ``seen`` (the keys
    already folded into ``base``) or repeats within ``events`` are skipped.
    """
    accumulators = dict(base or {})
    folded: set[str] = set()
    for event in events:
        if event.event_key in seen or event.event_key in folded:
            continue
        folded.add(event.event_key)
        key = skill_key(event.skill)
        acc = accumulators.get(key) or SkillAccumulator.start(event)
        accumulators[key] = acc.add(event)
    return accumulators


def days_inactive(last_activity_at: datetime | None, now: datetime) -> int | None:
    """Whole days between last activity and now, floored. None if never active."""
    if last_activity_at is None:
        return None
    return max(0, (now - last_activity_at) // timedelta(days=1))


def apply_decay(raw_xp: int, last_activity_at: datetime | None, now: datetime) -> int:
    """Decayed XP at ``now``.

    Only XP in [1000, 2000) decays, by 5 per idle day past 14, floored at 0.
    XP below 1000 and at or above 2000 is returned unchanged.
    """
    if raw_xp >= GOD_THRESHOLD or raw_xp < PRO_THRESHOLD:
        return raw_xp
    days = days_inactive(last_activity_at, now)
    if days is None or days <= DECAY_GRACE_DAYS:
        return raw_xp
    return max(0, raw_xp - DECAY_PER_DAY * (days - DECAY_GRACE_DAYS))


@dataclass(frozen=True)
class SkillMasteryState:
    skill: str
    subject: Subject
    raw_xp: int
    decayed_xp: int
    last_activity_at: datetime | None
    tier: Tier
    attempts: int = 0
    correct: int = 0
    days_since_activity: int | None = None
    at_risk: bool = False

    @property
    def display_xp(self) -> int:
        return max(0, self.decayed_xp)

    @property
    def accuracy(self) -> float:
        return self.correct / self.attempts if self.attempts else 0.0

    @property
    def xp_to_next_tier(self) -> int:
        return compute_tier(self.decayed_xp)["xp_to_next"]


def mastery_state(acc: SkillAccumulator, now: datetime) -> SkillMasteryState:
    decayed = apply_decay(acc.raw_xp, acc.last_activity_at, now)
    return SkillMasteryState(
        skill=acc.skill,
        subject=acc.subject,
        raw_xp=acc.raw_xp,
        decayed_xp=decayed,
        last_activity_at=acc.last_activity_at,
        tier=tier_for(decayed),
        attempts=acc.attempts,
        correct=acc.correct,
        days_since_activity=days_inactive(acc.last_activity_at, now),
        at_risk=decayed < acc.raw_xp,
    )


def build_mastery(
    accumulators: Mapping[str, SkillAccumulator] | Iterable[SkillAccumulator],
    now: datetime,
) -> list[SkillMasteryState]:
    """Mastery states at ``now``, closest to their next milestone first.

    God-tier skills have no next milestone and sort last. Ties go to the
    higher XP, then to the skill name.
    """
    accs = accumulators.values() if isinstance(accumulators, Mapping) else accumulators
    states = [mastery_state(acc, now) for acc in accs]
    states.sort(
        key=lambda s: (
            s.tier == Tier.GOD,
            s.xp_to_next_tier,
            -s.decayed_xp,
            skill_key(s.skill),
        )
    )
    return states


def tier_of(accumulators: Mapping[str, SkillAccumulator], skill: str, now: datetime) -> Tier:
    """Current tier for a skill name, novice if the skill has no events."""
    acc = accumulators.get(skill_key(skill))
    if acc is None:
        return Tier.NOVICE
    return tier_for(apply_decay(acc.raw_xp, acc.last_activity_at, now))
