"""Per-user actor owning one reconciliation layer.

Optimistic commands touch the layer directly from the caller's coroutine
and return without awaiting. Everything that does I/O (durable writes,
refresh landings, claims, generation) goes through the actor's mailbox
and is handled one message at a time, so all mutations of the user's
state are applied in submission order.

Durable writes go through an outbox. A write that fails with
``DurableStoreUnavailable`` stays at the head of the outbox and is retried
on the next flush; reads keep serving the current view meanwhile.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import structlog

from prepstate.config import Settings
from prepstate.errors import (
    ClaimNotConfirmed,
    DurableStoreUnavailable,
    QuestNotClaimable,
    QuestNotFound,
    StaleRefresh,
)
from prepstate.events.schemas import AttemptEvent
from prepstate.quests.engine import ClaimResult, check_claimable, complete_quest, mark_completed
from prepstate.quests.generator import QuestPolicy, generate_quests, needs_generation
from prepstate.quests.models import Quest
from prepstate.reconcile.layer import PendingMutation, ReconciliationLayer, RefreshToken
from prepstate.reconcile.snapshot import StalenessPolicy, UserSnapshot, build_snapshot
from prepstate.reconcile.state import DerivedState, catch_up_quests
from prepstate.store.base import ChangeFeed, DurableStore
from prepstate.streaks.calculator import reference_zone

logger = structlog.get_logger()

Clock = Callable[[], datetime]

SUBSCRIPTION_BUFFER = 16


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription:
    """Handle on one user's snapshot stream.

    Snapshots are pushed after every state change. A slow reader loses the
    oldest buffered snapshots, never the newest. Close the handle to stop.
    """

    def __init__(self, actor: UserActor, maxsize: int = SUBSCRIPTION_BUFFER) -> None:
        self._actor = actor
        self._queue: asyncio.Queue[UserSnapshot] = asyncio.Queue(maxsize)
        self.closed = False

    def push(self, snapshot: UserSnapshot) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(snapshot)

    async def get(self) -> UserSnapshot:
        return await self._queue.get()

    def get_nowait(self) -> UserSnapshot:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._actor.unsubscribe(self)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> UserSnapshot:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


@dataclass
class OutboxItem:
    label: str
    write: Callable[[], Awaitable[object]]
    seq: int | None = None
    attempts: int = 0


class _Kind(str, Enum):
    PERSIST = "persist"
    FLUSH = "flush"
    CLAIM = "claim"
    REFRESH = "refresh"
    LANDED = "landed"
    GENERATE = "generate"
    STOP = "stop"


@dataclass
class _Message:
    kind: _Kind
    payload: Any = None
    future: asyncio.Future | None = None


class UserActor:
    """Owns the snapshot, mailbox, outbox and subscriptions of one user."""

    def __init__(
        self,
        user_id: str,
        store: DurableStore,
        settings: Settings,
        feed: ChangeFeed | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.user_id = user_id
        self.store = store
        self.settings = settings
        self.feed = feed
        self.clock = clock or utcnow
        self.tz = reference_zone(settings.reference_timezone)
        self.policy = QuestPolicy.from_settings(settings)
        self.staleness = StalenessPolicy(timedelta(seconds=settings.snapshot_stale_after_seconds))
        self.layer = ReconciliationLayer()
        self.outbox: deque[OutboxItem] = deque()
        self.log = logger.bind(user_id=user_id)

        self._mailbox: asyncio.Queue[_Message] = asyncio.Queue()
        self._subscriptions: set[Subscription] = set()
        self._task: asyncio.Task | None = None
        self._listener: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._refresh_waiters: list[asyncio.Future] = []

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Spawn the mailbox loop (and the change listener). Needs a running loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=f"actor:{self.user_id}")
        if self.feed is not None:
            self._listener = asyncio.create_task(self._listen(), name=f"feed:{self.user_id}")
        self.log.debug("actor_started")

    async def stop(self) -> None:
        if not self.running:
            return
        self._post(_Kind.STOP)
        await self._task
        self._task = None
        for task in (self._listener, self._inflight):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._listener = None
        self._inflight = None
        for waiter in self._refresh_waiters:
            if not waiter.done():
                waiter.set_result(False)
        self._refresh_waiters.clear()
        for sub in list(self._subscriptions):
            sub.close()
        self.log.debug("actor_stopped", outbox=len(self.outbox))

    # --- Reads ---

    def snapshot(self, now: datetime | None = None) -> UserSnapshot:
        """Immutable view of the current state at ``now``."""
        now = now or self.clock()
        return build_snapshot(
            self.user_id,
            self.layer.view,
            now,
            self.tz,
            self.settings.min_daily_attempts,
            version=self.layer.version,
            pending_mutations=len(self.layer.pending),
            stale=self.is_stale(now),
        )

    def is_stale(self, now: datetime | None = None) -> bool:
        return self.layer.cache.is_stale(self.staleness, now or self.clock())

    def subscribe(self) -> Subscription:
        sub = Subscription(self)
        self._subscriptions.add(sub)
        sub.push(self.snapshot())
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        self._subscriptions.discard(sub)

    def _publish(self, now: datetime) -> None:
        if not self._subscriptions:
            return
        snap = self.snapshot(now)
        for sub in list(self._subscriptions):
            sub.push(snap)

    # --- Optimistic commands ---

    def record_attempt(self, event: AttemptEvent) -> PendingMutation:
        """Apply an attempt to the view now and queue its durable write."""
        now = self.clock()
        mutation, changed = self.layer.record_attempt(event, now)
        self._post(_Kind.PERSIST, payload=(mutation, changed))
        self._publish(now)
        return mutation

    async def claim_quest(self, quest_id: str) -> ClaimResult:
        """Complete a quest locally, then confirm it durably.

        Raises:
            QuestNotFound: No such quest in the view.
            QuestNotClaimable: Target not reached, or expired.
            ClaimNotConfirmed: Durable confirmation timed out. The local
                completion stays and the remaining half keeps retrying.
        """
        now = self.clock()
        quest = self.layer.view.quest(quest_id)
        if quest is None:
            raise QuestNotFound(quest_id)
        check_claimable(quest, now)

        seq = None
        if not quest.completed:
            seq = self.layer.record_claim(quest_id, now).seq
            self._publish(now)

        future = asyncio.get_running_loop().create_future()
        self._post(_Kind.CLAIM, payload=(quest, seq, now), future=future)
        return await future

    async def refresh(self) -> bool:
        """Request an authoritative refresh and wait for it to land.

        Returns False if the store was unavailable.
        """
        future = asyncio.get_running_loop().create_future()
        self._post(_Kind.REFRESH, future=future)
        return await future

    def request_refresh(self) -> None:
        self._post(_Kind.REFRESH)

    async def generate_quests(self, force: bool = False) -> list[Quest]:
        """Run a generation pass; without ``force`` only when no quest is open."""
        future = asyncio.get_running_loop().create_future()
        self._post(_Kind.GENERATE, payload=force, future=future)
        return await future

    async def flush(self) -> bool:
        """Retry queued writes now. True when the outbox drained."""
        future = asyncio.get_running_loop().create_future()
        self._post(_Kind.FLUSH, future=future)
        return await future

    # --- Mailbox ---

    def _post(self, kind: _Kind, payload: Any = None, future: asyncio.Future | None = None) -> None:
        self._mailbox.put_nowait(_Message(kind, payload, future))

    async def _run(self) -> None:
        retry_after = self.settings.outbox_retry_seconds
        while True:
            try:
                message = await asyncio.wait_for(self._mailbox.get(), timeout=retry_after)
            except asyncio.TimeoutError:
                if self.outbox:
                    await self._flush_outbox()
                continue

            if message.kind == _Kind.STOP:
                await self._flush_outbox()
                return

            try:
                await self._handle(message)
            except Exception as e:
                if message.future is not None and not message.future.done():
                    message.future.set_exception(e)
                else:
                    self.log.exception("actor_message_failed", kind=message.kind.value)

    async def _handle(self, message: _Message) -> None:
        if message.kind == _Kind.PERSIST:
            await self._persist_attempt(*message.payload)
        elif message.kind == _Kind.FLUSH:
            _resolve(message.future, await self._flush_outbox())
        elif message.kind == _Kind.CLAIM:
            await self._claim(message)
        elif message.kind == _Kind.REFRESH:
            self._begin_refresh(message.future)
        elif message.kind == _Kind.LANDED:
            await self._land(*message.payload)
        elif message.kind == _Kind.GENERATE:
            await self._generate(message)

    # --- Outbox ---

    def _enqueue(self, item: OutboxItem) -> None:
        if len(self.outbox) >= self.settings.outbox_max_size:
            dropped = self.outbox.popleft()
            self.log.error("outbox_overflow", dropped=dropped.label, size=len(self.outbox))
        self.outbox.append(item)

    async def _flush_outbox(self) -> bool:
        while self.outbox:
            item = self.outbox[0]
            try:
                await item.write()
            except (DurableStoreUnavailable, ClaimNotConfirmed) as e:
                item.attempts += 1
                self.log.warning(
                    "outbox_write_failed",
                    label=item.label,
                    attempts=item.attempts,
                    queued=len(self.outbox),
                    error=str(e),
                )
                return False
            except (QuestNotFound, QuestNotClaimable) as e:
                self.outbox.popleft()
                self.log.error("outbox_write_rejected", label=item.label, error=str(e))
                if item.seq is not None:
                    self.layer.discard(item.seq)
                    self._publish(self.clock())
                continue
            self.outbox.popleft()
            if item.seq is not None:
                self.layer.confirm(item.seq)
        return True

    async def _persist_attempt(self, mutation: PendingMutation, changed: list[Quest]) -> None:
        event = mutation.event

        async def write() -> None:
            await self.store.append_events(self.user_id, [event])
            await self._write_progress(changed)

        self._enqueue(OutboxItem(f"attempt:{event.event_key}", write, mutation.seq))
        await self._flush_outbox()

    async def _write_progress(self, quests: list[Quest]) -> None:
        for quest in quests:
            try:
                await self.store.update_quest_progress(quest.id, quest.progress, quest.counted_event_keys)
            except QuestNotFound:
                self.log.debug("progress_for_retired_quest", quest_id=quest.id)

    # --- Claims ---

    async def _claim(self, message: _Message) -> None:
        # Claimability is judged as of the moment the claim was made
        quest, seq, now = message.payload
        await self._flush_outbox()

        def attempt(q: Quest) -> Awaitable[ClaimResult]:
            return complete_quest(
                self.store,
                self.user_id,
                q,
                now,
                attempts=self.settings.claim_retry_attempts,
                backoff=self.settings.claim_retry_backoff_seconds,
                timeout=self.settings.claim_timeout_seconds,
            )

        try:
            result = await attempt(quest)
        except ClaimNotConfirmed as e:
            self.log.warning(
                "claim_not_confirmed",
                quest_id=quest.id,
                completed=e.completed,
                awarded=e.awarded,
            )
            done = mark_completed(quest, now)
            self._enqueue(OutboxItem(f"claim:{quest.id}", lambda: attempt(done), seq))
            raise
        except (QuestNotFound, QuestNotClaimable) as e:
            # The store will never accept this claim; take back the local completion
            if seq is not None:
                self.layer.discard(seq)
                self._publish(self.clock())
            self.log.warning("claim_rejected", quest_id=quest.id, error=str(e))
            raise

        if seq is not None:
            self.layer.confirm(seq)
        if result.awarded:
            self.log.info("quest_claimed", quest_id=quest.id, points=quest.reward_points)
        _resolve(message.future, result)

    # --- Refresh ---

    def _begin_refresh(self, waiter: asyncio.Future | None) -> None:
        token = self.layer.begin_refresh(self.clock())
        if waiter is not None:
            self._refresh_waiters.append(waiter)
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
            self.log.debug("refresh_superseded", version=token.version)
        self._inflight = asyncio.create_task(self._fetch(token))

    async def _fetch(self, token: RefreshToken) -> None:
        try:
            base = await self.load_base()
        except DurableStoreUnavailable as e:
            self._post(_Kind.LANDED, payload=(token, None, [], e))
            return
        base, moved = catch_up_quests(base)
        self._post(_Kind.LANDED, payload=(token, base, moved, None))

    async def load_base(self) -> DerivedState:
        """Fetch the authoritative state for this user."""
        events = await self.store.fetch_events_since(self.user_id, None)
        quests = await self.store.fetch_active_quests(self.user_id)
        points = await self.store.fetch_points_total(self.user_id)
        record = await self.store.fetch_streak_record(self.user_id)
        return DerivedState.from_durable(events, quests, points, record.longest_streak)

    def _wake_refresh_waiters(self, landed: bool) -> None:
        waiters, self._refresh_waiters = self._refresh_waiters, []
        for waiter in waiters:
            _resolve(waiter, landed)

    async def _land(
        self,
        token: RefreshToken,
        base: DerivedState | None,
        moved: list[Quest],
        error: DurableStoreUnavailable | None,
    ) -> None:
        if error is not None:
            if token.version == self.layer.requested_version:
                self.log.warning("refresh_failed", version=token.version, error=str(error))
                self._wake_refresh_waiters(False)
            return

        now = self.clock()
        try:
            self.layer.land_refresh(token, base, now)
        except StaleRefresh as e:
            self.log.debug("stale_refresh_discarded", version=e.version, current=e.current_version)
            return

        self.log.debug(
            "refresh_landed",
            version=token.version,
            events=len(base.events),
            replayed=len(self.layer.pending),
            caught_up=len(moved),
        )
        self._wake_refresh_waiters(True)
        self._publish(now)

        if moved:
            self._enqueue(OutboxItem("progress:catch-up", lambda: self._write_progress(moved)))

        longest = self.snapshot(now).streak.longest_streak
        if longest > base.longest_record:
            self._enqueue(
                OutboxItem(
                    f"streak:{longest}",
                    lambda: self.store.save_streak_record(self.user_id, longest),
                )
            )
        await self._flush_outbox()

    # --- Generation ---

    async def _generate(self, message: _Message) -> None:
        force = bool(message.payload)
        now = self.clock()
        view = self.layer.view
        if not force and not needs_generation(view.quests, now):
            _resolve(message.future, [])
            return

        result = generate_quests(view.quests, view.skills, now, self.policy)
        mutation = self.layer.record_quest_set(result.quests, now)
        quests = mutation.quests
        self.log.info(
            "quests_generated",
            created=len(result.created),
            retired=len(result.retired),
            kept=len(quests) - len(result.created),
        )
        self._publish(now)
        self._enqueue(
            OutboxItem(
                "quests:generate",
                lambda: self.store.upsert_quests(self.user_id, quests),
                mutation.seq,
            )
        )
        await self._flush_outbox()
        _resolve(message.future, list(result.created))

    # --- Change feed ---

    async def _listen(self) -> None:
        try:
            async for note in self.feed.subscribe_changes(self.user_id):
                self.log.debug("change_notification", table=note.table)
                self.request_refresh()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception("change_listener_failed")


def _resolve(future: asyncio.Future | None, value: object) -> None:
    if future is not None and not future.done():
        future.set_result(value)
