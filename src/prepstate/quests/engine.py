"""Quest completion and reward issuance.

A claim is two durable writes: the completion flag and the point award
(idempotency key = quest id). Both are checked first, then only the
missing half is written, and a failed half is retried alone until the
store agrees on both or the claim times out.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING

from prepstate.errors import ClaimNotConfirmed, DurableStoreUnavailable, QuestNotClaimable
from prepstate.quests.models import Quest

if TYPE_CHECKING:
    from prepstate.store.base import DurableStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimResult:
    quest: Quest
    # True only for the call that actually credited the points
    awarded: bool
    already_completed: bool = False


def check_claimable(quest: Quest, now: datetime) -> None:
    """Raise QuestNotClaimable unless ``quest`` can be claimed at ``now``.

    Already-completed quests pass; claiming them again is a no-op.
    """
    if quest.completed:
        return
    if quest.progress < quest.target_count:
        raise QuestNotClaimable(
            f"Quest {quest.id} at {quest.progress}/{quest.target_count}"
        )
    if quest.is_expired(now):
        raise QuestNotClaimable(f"Quest {quest.id} expired at {quest.expires_at.isoformat()}")


def mark_completed(quest: Quest, now: datetime) -> Quest:
    """Local completion. Returns the same quest if already completed."""
    if quest.completed:
        return quest
    return replace(quest, completed=True, completed_at=now)


async def _converge(
    store: DurableStore,
    user_id: str,
    quest: Quest,
    now: datetime,
    attempts: int,
    backoff: float,
    state: dict[str, bool],
) -> bool:
    awarded_now = False
    last_error: DurableStoreUnavailable | None = None

    for attempt in range(attempts):
        try:
            if not state["completed"]:
                await store.mark_quest_completed(quest.id, now)
                state["completed"] = True
            if not state["awarded"]:
                awarded_now = await store.award_points(user_id, quest.reward_points, quest.id)
                state["awarded"] = True
            return awarded_now
        except DurableStoreUnavailable as e:
            last_error = e
            logger.warning(
                "Claim %s attempt %d/%d failed (completed=%s, awarded=%s): %s",
                quest.id, attempt + 1, attempts, state["completed"], state["awarded"], e,
            )
            if attempt + 1 < attempts:
                await asyncio.sleep(backoff * (2 ** attempt))

    raise ClaimNotConfirmed(quest.id, state["completed"], state["awarded"]) from last_error


async def complete_quest(
    store: DurableStore,
    user_id: str,
    quest: Quest,
    now: datetime,
    *,
    attempts: int = 5,
    backoff: float = 0.05,
    timeout: float = 5.0,
) -> ClaimResult:
    """Durably complete ``quest`` and award its points exactly once.

    Idempotent: a quest whose flag and award are both already recorded
    returns ``awarded=False`` without writing anything.

    Raises:
        QuestNotClaimable: If the quest has not reached its target or expired.
        ClaimNotConfirmed: If both halves could not be confirmed in time.
            Whatever half did land stays landed; retrying converges.
    """
    check_claimable(quest, now)

    state = {"completed": False, "awarded": False}
    try:
        stored = await store.fetch_quest(quest.id)
        state["completed"] = bool(stored and stored.completed)
        state["awarded"] = await store.is_points_awarded(quest.id)
    except DurableStoreUnavailable as e:
        logger.warning("Claim %s: durable state unknown, writing both halves: %s", quest.id, e)

    if state["completed"] and state["awarded"]:
        return ClaimResult(quest=mark_completed(quest, now), awarded=False, already_completed=True)

    try:
        awarded = await asyncio.wait_for(
            _converge(store, user_id, quest, now, attempts, backoff, state),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        raise ClaimNotConfirmed(quest.id, state["completed"], state["awarded"]) from e

    if awarded:
        logger.info("Quest %s claimed: %d points to user %s", quest.id, quest.reward_points, user_id)
    return ClaimResult(quest=mark_completed(quest, now), awarded=awarded)
