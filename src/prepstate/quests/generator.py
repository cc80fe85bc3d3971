"""Quest generation pass.

Generation is replace-all. The prior quest set is split into quests that
survive the pass (completed within the retention window, and completable
quests still waiting to be claimed) and quests that are retired. New quests
fill only the active slots the survivors leave free.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, time, timedelta, tzinfo

import structlog

from prepstate.config import Settings
from prepstate.events.schemas import Difficulty, Subject
from prepstate.events.skills import skill_key
from prepstate.mastery.aggregator import SkillAccumulator
from prepstate.quests.models import Quest, QuestType
from prepstate.streaks.calculator import reference_zone

logger = structlog.get_logger()


@dataclass(frozen=True)
class QuestPolicy:
    max_active: int = 12
    daily_count: int = 5
    max_weak_skills: int = 7
    min_attempts: int = 3
    accuracy_threshold: float = 0.75
    urgent_threshold: float = 0.5
    retention: timedelta = timedelta(days=7)
    tz: tzinfo | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> QuestPolicy:
        return cls(
            max_active=settings.max_active_quests,
            daily_count=settings.daily_quest_count,
            max_weak_skills=settings.max_weak_skills,
            min_attempts=settings.weak_skill_min_attempts,
            accuracy_threshold=settings.weak_skill_accuracy_threshold,
            urgent_threshold=settings.urgent_accuracy_threshold,
            retention=timedelta(days=settings.completed_retention_days),
            tz=reference_zone(settings.reference_timezone),
        )


@dataclass(frozen=True)
class WeakSkill:
    skill: str
    subject: Subject
    attempts: int
    correct: int

    @property
    def accuracy(self) -> float:
        return self.correct / self.attempts if self.attempts else 0.0


@dataclass(frozen=True)
class QuestTemplate:
    title: str
    description: str
    target_skill: str
    target_count: int
    difficulty: Difficulty
    reward_points: int
    accuracy: float | None = None


@dataclass(frozen=True)
class GenerationResult:
    quests: list[Quest]
    created: list[Quest]
    retired: list[Quest]
    clamped: int = 0


# Foundational quests for users with no weak skills yet.
SEED_QUESTS: tuple[QuestTemplate, ...] = (
    QuestTemplate(
        "Explore the Marathon feature",
        "Answer your first Marathon question correctly",
        "Marathon", 1, Difficulty.EASY, 10,
    ),
    QuestTemplate(
        "Solve 3 questions in Marathon",
        "Answer 3 questions correctly in Marathon mode",
        "Marathon", 3, Difficulty.EASY, 15,
    ),
    QuestTemplate(
        "Solve 10 questions in Quiz mode",
        "Answer 10 questions correctly in Quiz mode",
        "Quiz", 10, Difficulty.MEDIUM, 20,
    ),
    QuestTemplate(
        "Solve 5 Math questions",
        "Answer 5 Math questions correctly",
        "Math", 5, Difficulty.MEDIUM, 20,
    ),
    QuestTemplate(
        "Solve 3 Reading and Writing questions",
        "Answer 3 Reading and Writing questions correctly",
        "Reading and Writing", 3, Difficulty.EASY, 12,
    ),
    QuestTemplate(
        "Complete 1 Mock Test",
        "Answer a question correctly in a full Mock Test",
        "Mock Test", 1, Difficulty.HARD, 50,
    ),
    QuestTemplate(
        "Solve 20 questions in Marathon",
        "Answer 20 questions correctly in Marathon mode",
        "Marathon", 20, Difficulty.HARD, 40,
    ),
    QuestTemplate(
        "Solve 25 General Practice questions",
        "Answer 25 questions correctly in any subject",
        "General Practice", 25, Difficulty.MEDIUM, 45,
    ),
)

SEED_WEEKLY_DAYS = 7


def rank_weak_skills(
    accumulators: Mapping[str, SkillAccumulator] | Iterable[SkillAccumulator],
    policy: QuestPolicy,
) -> list[WeakSkill]:
    """Skills with enough attempts and low accuracy, weakest first."""
    accs = accumulators.values() if isinstance(accumulators, Mapping) else accumulators
    weak = [
        WeakSkill(acc.skill, acc.subject, acc.attempts, acc.correct)
        for acc in accs
        if acc.attempts >= policy.min_attempts and acc.accuracy < policy.accuracy_threshold
    ]
    weak.sort(key=lambda w: (w.accuracy, skill_key(w.skill)))
    return weak[: policy.max_weak_skills]


def weak_skill_template(weak: WeakSkill, quest_type: QuestType, policy: QuestPolicy) -> QuestTemplate:
    urgent = weak.accuracy < policy.urgent_threshold
    if quest_type == QuestType.DAILY:
        target, points = (5, 25) if urgent else (3, 15)
    else:
        target, points = (10, 25) if urgent else (8, 18)
    return QuestTemplate(
        title=f"Solve {target} {weak.skill} questions",
        description=f"Improve your {weak.skill} skills by answering {target} questions correctly",
        target_skill=weak.skill,
        target_count=target,
        difficulty=Difficulty.HARD if urgent else Difficulty.MEDIUM,
        reward_points=points,
        accuracy=weak.accuracy,
    )


def end_of_day(now: datetime, tz: tzinfo | None) -> datetime:
    """23:59:59 of the reference day containing ``now``."""
    zone = tz or now.tzinfo
    local = now.astimezone(zone)
    return datetime.combine(local.date(), time(23, 59, 59), tzinfo=zone)


def weekly_expiry_days(accuracy: float | None, policy: QuestPolicy) -> int:
    """3 days for urgent skills, 7 for weak ones, 14 for the rest."""
    if accuracy is None:
        return SEED_WEEKLY_DAYS
    if accuracy < policy.urgent_threshold:
        return 3
    if accuracy < (policy.urgent_threshold + policy.accuracy_threshold) / 2:
        return 7
    return 14


def survives_generation(quest: Quest, now: datetime, policy: QuestPolicy) -> bool:
    if quest.completed:
        finished = quest.completed_at or quest.expires_at
        return now - finished <= policy.retention
    return quest.is_completable and not quest.is_expired(now)


def build_quests(
    accumulators: Mapping[str, SkillAccumulator],
    now: datetime,
    policy: QuestPolicy,
    id_factory: Callable[[], str],
) -> list[Quest]:
    """Uncapped candidate batch: the first ``daily_count`` are daily."""
    weak = rank_weak_skills(accumulators, policy)
    candidates: list[tuple[QuestType, QuestTemplate]] = []
    if weak:
        for i, w in enumerate(weak):
            quest_type = QuestType.DAILY if i < policy.daily_count else QuestType.WEEKLY
            candidates.append((quest_type, weak_skill_template(w, quest_type, policy)))
    else:
        for i, template in enumerate(SEED_QUESTS):
            quest_type = QuestType.DAILY if i < policy.daily_count else QuestType.WEEKLY
            candidates.append((quest_type, template))

    daily_expiry = end_of_day(now, policy.tz)
    quests = []
    for quest_type, t in candidates:
        if quest_type == QuestType.DAILY:
            expires_at = daily_expiry
        else:
            expires_at = now + timedelta(days=weekly_expiry_days(t.accuracy, policy))
        quests.append(
            Quest(
                id=id_factory(),
                title=t.title,
                description=t.description,
                target_skill=t.target_skill,
                target_count=t.target_count,
                difficulty_tier=t.difficulty,
                type=quest_type,
                reward_points=t.reward_points,
                expires_at=expires_at,
                created_at=now,
            )
        )
    return quests


def generate_quests(
    existing: Iterable[Quest],
    accumulators: Mapping[str, SkillAccumulator],
    now: datetime,
    policy: QuestPolicy,
    id_factory: Callable[[], str] | None = None,
) -> GenerationResult:
    """Replace-all generation pass.

    The active count of surviving quests is taken before anything is
    inserted, so repeated passes never push the active set past
    ``policy.max_active``.
    """
    make_id = id_factory or (lambda: str(uuid.uuid4()))
    kept: list[Quest] = []
    retired: list[Quest] = []
    for quest in existing:
        (kept if survives_generation(quest, now, policy) else retired).append(quest)

    active_kept = sum(1 for q in kept if q.is_active(now))
    slots = max(0, policy.max_active - active_kept)

    candidates = build_quests(accumulators, now, policy, make_id)
    created = candidates[:slots]
    clamped = len(candidates) - len(created)
    if clamped:
        logger.info(
            "quest_generation_clamped",
            candidates=len(candidates),
            slots=slots,
            active_kept=active_kept,
        )

    return GenerationResult(
        quests=kept + created,
        created=created,
        retired=retired,
        clamped=clamped,
    )


def needs_generation(quests: Iterable[Quest], now: datetime) -> bool:
    """True when no quest is still open to progress or claim."""
    return not any(q.is_active(now) for q in quests)
