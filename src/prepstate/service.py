"""Consumer-facing API over per-user actors.

Users are sharded by id: each user gets its own ``UserActor`` and no
state is shared between actors. Reads never raise for store outages; they
serve the best view available.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from prepstate.config import Settings, get_settings
from prepstate.events.normalizer import normalize
from prepstate.events.schemas import AttemptEvent, RawAttempt
from prepstate.mastery.aggregator import SkillMasteryState
from prepstate.quests.engine import ClaimResult
from prepstate.quests.generator import needs_generation
from prepstate.quests.models import Quest, QuestStats
from prepstate.reconcile.actor import Clock, Subscription, UserActor
from prepstate.reconcile.layer import PendingMutation
from prepstate.reconcile.snapshot import UserSnapshot
from prepstate.store.base import ChangeFeed, DurableStore
from prepstate.streaks.calculator import StreakState

logger = structlog.get_logger()


class PrepStateService:
    """Read and command API for mastery, streaks and quests."""

    def __init__(
        self,
        store: DurableStore,
        settings: Settings | None = None,
        feed: ChangeFeed | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.feed = feed
        self.clock = clock
        self._actors: dict[str, UserActor] = {}

    def actor(self, user_id: str) -> UserActor:
        """The user's actor, created and started on first use."""
        actor = self._actors.get(user_id)
        if actor is None:
            actor = UserActor(user_id, self.store, self.settings, feed=self.feed, clock=self.clock)
            self._actors[user_id] = actor
            logger.debug("actor_created", user_id=user_id, actors=len(self._actors))
        actor.start()
        return actor

    async def _ready(self, user_id: str) -> UserActor:
        actor = self.actor(user_id)
        if not actor.layer.has_landed:
            await actor.refresh()
        elif actor.is_stale():
            actor.request_refresh()
        return actor

    # --- Reads ---

    async def get_snapshot(self, user_id: str) -> UserSnapshot:
        actor = await self._ready(user_id)
        return actor.snapshot()

    async def get_mastery_snapshot(self, user_id: str) -> list[SkillMasteryState]:
        return list((await self.get_snapshot(user_id)).mastery)

    async def get_streak(self, user_id: str) -> StreakState:
        return (await self.get_snapshot(user_id)).streak

    async def get_active_quests(self, user_id: str) -> list[Quest]:
        """Open quests, generating a fresh set when none is open.

        Generation only runs once an authoritative refresh has landed, so
        an outage never replaces the stored quest set with one built from
        an empty view.
        """
        actor = await self._ready(user_id)
        if actor.layer.has_landed and needs_generation(actor.layer.view.quests, actor.clock()):
            await actor.generate_quests()
        return list(actor.snapshot().quests)

    async def get_quest_stats(self, user_id: str) -> QuestStats:
        return (await self.get_snapshot(user_id)).quest_stats

    # --- Commands ---

    def record_optimistic_attempt(
        self, user_id: str, attempt: AttemptEvent | RawAttempt | Mapping[str, Any]
    ) -> PendingMutation:
        """Apply an attempt to the user's view immediately.

        Raw records are normalized first; ``MalformedEvent`` propagates to
        the caller. The durable write happens in the background.
        """
        event = attempt if isinstance(attempt, AttemptEvent) else normalize(attempt)
        return self.actor(user_id).record_attempt(event)

    async def claim_quest(self, user_id: str, quest_id: str) -> ClaimResult:
        actor = await self._ready(user_id)
        return await actor.claim_quest(quest_id)

    async def refresh(self, user_id: str) -> bool:
        return await self.actor(user_id).refresh()

    async def generate_quests(self, user_id: str, force: bool = True) -> list[Quest]:
        actor = await self._ready(user_id)
        return await actor.generate_quests(force=force)

    def subscribe(self, user_id: str) -> Subscription:
        return self.actor(user_id).subscribe()

    async def close(self) -> None:
        for actor in list(self._actors.values()):
            await actor.stop()
        self._actors.clear()
        logger.info("prepstate_service_closed")
