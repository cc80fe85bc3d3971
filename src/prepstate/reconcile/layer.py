"""Optimistic view over an authoritative base: refresh-then-replay.

The layer keeps two states. ``base`` is the last authoritative refresh.
``view`` is ``base`` with every pending optimistic mutation applied on
top, in submission order. Consumers only ever read ``view``.

When a refresh lands, its result replaces ``base`` wholesale. Mutations
that were durably confirmed before that refresh was requested are already
in the fetched data and are dropped; every other pending mutation is
replayed on the new base. Replay is safe for mutations that did reach the
store: attempts are keyed, quest progress records counted keys, and local
completion of an already-completed quest is a no-op.

Nothing here awaits. The owning actor does the I/O.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from prepstate.errors import StaleRefresh
from prepstate.events.schemas import AttemptEvent
from prepstate.quests.models import Quest
from prepstate.reconcile.snapshot import CacheEntry
from prepstate.reconcile.state import DerivedState, apply_attempt, apply_claim, apply_quest_set


class MutationKind(str, Enum):
    ATTEMPT = "attempt"
    CLAIM = "claim"
    QUEST_SET = "quest_set"


@dataclass(frozen=True)
class PendingMutation:
    seq: int
    kind: MutationKind
    applied_at: datetime
    event: AttemptEvent | None = None
    quest_id: str | None = None
    quests: tuple[Quest, ...] = ()


@dataclass(frozen=True)
class RefreshToken:
    """Issued when a refresh is requested; presented when its result lands."""

    version: int
    seq: int
    requested_at: datetime
    confirmed: frozenset[int] = field(default_factory=frozenset)


def replay(state: DerivedState, mutation: PendingMutation) -> DerivedState:
    if mutation.kind == MutationKind.ATTEMPT and mutation.event is not None:
        state, _ = apply_attempt(state, mutation.event, mutation.applied_at)
        return state
    if mutation.kind == MutationKind.CLAIM and mutation.quest_id is not None:
        return apply_claim(state, mutation.quest_id, mutation.applied_at)
    if mutation.kind == MutationKind.QUEST_SET:
        return apply_quest_set(state, mutation.quests)
    return state


class ReconciliationLayer:
    """Single-writer state holder for one user."""

    def __init__(self, base: DerivedState | None = None) -> None:
        self.cache = CacheEntry(state=base or DerivedState())
        self.view: DerivedState = self.cache.state
        self.pending: list[PendingMutation] = []
        self._confirmed: set[int] = set()
        self._seq = 0
        self._requested_version = 0

    @property
    def base(self) -> DerivedState:
        return self.cache.state

    @property
    def version(self) -> int:
        """Version of the base currently in the view."""
        return self.cache.version

    @property
    def requested_version(self) -> int:
        """Version of the newest refresh requested so far."""
        return self._requested_version

    @property
    def has_landed(self) -> bool:
        return self.cache.fetched_at is not None

    def _next(self, kind: MutationKind, now: datetime, **fields) -> PendingMutation:
        self._seq += 1
        mutation = PendingMutation(seq=self._seq, kind=kind, applied_at=now, **fields)
        self.pending.append(mutation)
        return mutation

    # --- Optimistic path ---

    def record_attempt(self, event: AttemptEvent, now: datetime) -> tuple[PendingMutation, list[Quest]]:
        """Apply an attempt to the view immediately.

        Returns the pending mutation and the quests whose progress moved.
        """
        mutation = self._next(MutationKind.ATTEMPT, now, event=event)
        self.view, changed = apply_attempt(self.view, event, now)
        return mutation, changed

    def record_claim(self, quest_id: str, now: datetime) -> PendingMutation:
        mutation = self._next(MutationKind.CLAIM, now, quest_id=quest_id)
        self.view = apply_claim(self.view, quest_id, now)
        return mutation

    def record_quest_set(self, quests: Iterable[Quest], now: datetime) -> PendingMutation:
        mutation = self._next(MutationKind.QUEST_SET, now, quests=tuple(quests))
        self.view = apply_quest_set(self.view, mutation.quests)
        return mutation

    def confirm(self, seq: int) -> None:
        """The durable write for mutation ``seq`` succeeded."""
        self._confirmed.add(seq)

    def discard(self, seq: int) -> DerivedState:
        """Drop mutation ``seq`` the store rejected and rebuild the view without it."""
        self.pending = [m for m in self.pending if m.seq != seq]
        self._confirmed.discard(seq)
        return self._rebuild()

    def _rebuild(self) -> DerivedState:
        view = self.base
        for mutation in self.pending:
            view = replay(view, mutation)
        self.view = view
        return view

    # --- Authoritative path ---

    def begin_refresh(self, now: datetime) -> RefreshToken:
        """Start a refresh. Any earlier outstanding token becomes stale."""
        self._requested_version += 1
        return RefreshToken(
            version=self._requested_version,
            seq=self._seq,
            requested_at=now,
            confirmed=frozenset(self._confirmed),
        )

    def land_refresh(self, token: RefreshToken, base: DerivedState, fetched_at: datetime) -> DerivedState:
        """Replace the base with a fetched state and replay pending mutations.

        Raises:
            StaleRefresh: If a newer refresh was requested after ``token``.
        """
        if token.version != self._requested_version or token.version <= self.cache.version:
            raise StaleRefresh(token.version, self._requested_version)

        self.cache = CacheEntry(state=base, fetched_at=fetched_at, version=token.version)
        self.pending = [m for m in self.pending if m.seq not in token.confirmed]
        self._confirmed -= token.confirmed
        return self._rebuild()
