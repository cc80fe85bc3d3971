"""Tests for optimistic state, refresh-then-replay and snapshots."""

from datetime import timedelta, timezone

import pytest

from prepstate.errors import StaleRefresh
from prepstate.events.schemas import Difficulty
from prepstate.quests.models import QuestStats
from prepstate.reconcile.layer import MutationKind, ReconciliationLayer
from prepstate.reconcile.snapshot import CacheEntry, StalenessPolicy, build_snapshot, quest_stats
from prepstate.reconcile.state import (
    DerivedState,
    apply_attempt,
    apply_claim,
    apply_quest_set,
    catch_up_quests,
)


class TestDerivedState:
    def test_attempt_updates_mastery_and_quests(self, clock, event_factory, quest_factory):
        state = DerivedState(quests=(quest_factory(),))
        state, changed = apply_attempt(state, event_factory(), clock.now)
        assert state.skills["algebra"].raw_xp == 25
        assert [q.progress for q in changed] == [1]
        assert state.quests[0].progress == 1

    def test_attempt_replayed_is_noop(self, clock, event_factory, quest_factory):
        event = event_factory()
        state, _ = apply_attempt(DerivedState(quests=(quest_factory(),)), event, clock.now)
        again, changed = apply_attempt(state, event, clock.now)
        assert again is state
        assert changed == []

    def test_floor_uses_tier_before_the_attempt(self, clock, event_factory, quest_factory):
        # 975 XP is novice: a hard quest is held to medium until the skill reaches pro
        history = [event_factory(difficulty=Difficulty.HARD) for _ in range(19)]
        history += [event_factory(difficulty=Difficulty.MEDIUM)]
        quest = quest_factory(difficulty=Difficulty.HARD, target_count=5)
        state = DerivedState.from_durable(history, [quest])
        assert state.skills["algebra"].raw_xp == 975

        state, changed = apply_attempt(state, event_factory(difficulty=Difficulty.MEDIUM), clock.now)
        assert len(changed) == 1
        assert state.skills["algebra"].raw_xp == 1000

        state, changed = apply_attempt(state, event_factory(difficulty=Difficulty.MEDIUM), clock.now)
        assert changed == []

    def test_known_event_still_counts_for_quests_that_missed_it(self, clock, event_factory, quest_factory):
        event = event_factory(key="seen")
        state = DerivedState.from_durable([event], [quest_factory()])

        state, changed = apply_attempt(state, event, clock.now)
        assert [q.progress for q in changed] == [1]
        assert state.skills["algebra"].attempts == 1

    def test_claim_credits_points_once(self, clock, quest_factory):
        state = DerivedState(quests=(quest_factory(progress=3, reward_points=20),))
        state = apply_claim(state, "q-1", clock.now)
        assert state.points == 20
        assert state.quest("q-1").completed
        assert apply_claim(state, "q-1", clock.now) is state

    def test_quest_set_keeps_known_progress(self, quest_factory):
        state = DerivedState(quests=(quest_factory(progress=2),))
        state = apply_quest_set(state, [quest_factory(progress=0), quest_factory(quest_id="q-2")])
        assert [(q.id, q.progress) for q in state.quests] == [("q-1", 2), ("q-2", 0)]


class TestReconciliationLayer:
    def test_optimistic_attempt_visible_immediately(self, clock, event_factory):
        layer = ReconciliationLayer()
        mutation, _ = layer.record_attempt(event_factory(), clock.now)
        assert mutation.kind == MutationKind.ATTEMPT
        assert layer.view.skills["algebra"].attempts == 1
        assert layer.base.skills == {}
        assert layer.pending == [mutation]

    def test_mutation_after_request_survives_landing(self, clock, event_factory):
        layer = ReconciliationLayer()
        token = layer.begin_refresh(clock.now)
        late = event_factory(key="late")
        layer.record_attempt(late, clock.now)

        # the fetched data predates the attempt
        layer.land_refresh(token, DerivedState.from_durable([], []), clock.now)
        assert "late" in layer.view.events
        assert layer.view.skills["algebra"].attempts == 1

    def test_confirmed_before_request_is_dropped(self, clock, event_factory):
        layer = ReconciliationLayer()
        event = event_factory(key="done")
        mutation, _ = layer.record_attempt(event, clock.now)
        layer.confirm(mutation.seq)
        token = layer.begin_refresh(clock.now)

        layer.land_refresh(token, DerivedState.from_durable([event], []), clock.now)
        assert layer.pending == []
        assert layer.view.skills["algebra"].attempts == 1

    def test_confirmed_after_request_is_replayed_without_double_count(self, clock, event_factory):
        layer = ReconciliationLayer()
        token = layer.begin_refresh(clock.now)
        event = event_factory(key="raced")
        mutation, _ = layer.record_attempt(event, clock.now)
        layer.confirm(mutation.seq)

        # the fetch happened to see the write anyway
        layer.land_refresh(token, DerivedState.from_durable([event], []), clock.now)
        assert layer.pending == [mutation]
        assert layer.view.skills["algebra"].attempts == 1

    def test_replay_keeps_progress_the_fetched_quest_row_missed(self, clock, event_factory, quest_factory):
        quest = quest_factory()
        layer = ReconciliationLayer(DerivedState(quests=(quest,)))
        token = layer.begin_refresh(clock.now)
        event = event_factory(key="e1")
        mutation, _ = layer.record_attempt(event, clock.now)
        assert layer.view.quest("q-1").progress == 1
        layer.confirm(mutation.seq)

        # the event row was read, the quest row predates its progress write
        layer.land_refresh(token, DerivedState.from_durable([event], [quest]), clock.now)
        assert layer.view.quest("q-1").progress == 1
        assert layer.view.skills["algebra"].attempts == 1

    def test_discard_takes_back_a_rejected_claim(self, clock, quest_factory):
        quest = quest_factory(progress=3, reward_points=30)
        layer = ReconciliationLayer(DerivedState(quests=(quest,)))
        mutation = layer.record_claim(quest.id, clock.now)
        assert layer.view.points == 30

        layer.discard(mutation.seq)
        assert layer.pending == []
        assert layer.view.points == 0
        assert not layer.view.quest(quest.id).completed

    def test_stale_refresh_discarded(self, clock, event_factory):
        layer = ReconciliationLayer()
        old = layer.begin_refresh(clock.now)
        new = layer.begin_refresh(clock.now)
        with pytest.raises(StaleRefresh):
            layer.land_refresh(old, DerivedState.from_durable([event_factory()], []), clock.now)
        assert layer.version == 0
        assert not layer.has_landed

        layer.land_refresh(new, DerivedState(), clock.now)
        assert layer.version == new.version
        assert layer.has_landed

    def test_same_token_cannot_land_twice(self, clock):
        layer = ReconciliationLayer()
        token = layer.begin_refresh(clock.now)
        layer.land_refresh(token, DerivedState(), clock.now)
        with pytest.raises(StaleRefresh):
            layer.land_refresh(token, DerivedState(), clock.now)

    def test_local_claim_survives_refresh(self, clock, quest_factory):
        quest = quest_factory(progress=3, reward_points=30)
        layer = ReconciliationLayer(DerivedState(quests=(quest,)))
        token = layer.begin_refresh(clock.now)
        layer.record_claim(quest.id, clock.now)

        layer.land_refresh(token, DerivedState(quests=(quest,), points=0), clock.now)
        assert layer.view.points == 30
        assert layer.view.quest(quest.id).completed

    def test_replay_preserves_submission_order(self, clock, event_factory, quest_factory):
        layer = ReconciliationLayer()
        token = layer.begin_refresh(clock.now)
        layer.record_quest_set([quest_factory(target_count=1)], clock.now)
        layer.record_attempt(event_factory(), clock.now)
        layer.record_claim("q-1", clock.now)

        layer.land_refresh(token, DerivedState(), clock.now)
        quest = layer.view.quest("q-1")
        assert quest.progress == 1
        assert quest.completed
        assert layer.view.points == 15


class TestCatchUp:
    def test_stored_attempts_counted_once(self, event_factory, quest_factory):
        state = DerivedState.from_durable([event_factory() for _ in range(2)], [quest_factory()])
        state, moved = catch_up_quests(state)
        assert [(q.id, q.progress) for q in moved] == [("q-1", 2)]
        assert len(state.quest("q-1").counted_event_keys) == 2

        again, moved = catch_up_quests(state)
        assert again is state
        assert moved == []

    def test_only_attempts_inside_the_quest_window(self, clock, event_factory, quest_factory):
        quest = quest_factory(expires_at=clock.now + timedelta(hours=1))
        events = [
            event_factory(occurred_at=clock.now - timedelta(hours=2)),
            event_factory(),
            event_factory(occurred_at=clock.now + timedelta(hours=2)),
        ]
        _, moved = catch_up_quests(DerivedState.from_durable(events, [quest]))
        assert [q.progress for q in moved] == [1]

    def test_stops_at_target(self, event_factory, quest_factory):
        state = DerivedState.from_durable([event_factory() for _ in range(5)], [quest_factory(target_count=2)])
        state, _ = catch_up_quests(state)
        assert state.quest("q-1").progress == 2

    def test_floor_uses_tier_before_each_event(self, clock, event_factory, quest_factory):
        # 39 medium attempts reach 975 XP; the 40th lifts the skill to pro
        events = [event_factory(occurred_at=clock.now - timedelta(minutes=50 - i)) for i in range(41)]
        quest = quest_factory(difficulty=Difficulty.HARD, target_count=50)
        state, _ = catch_up_quests(DerivedState.from_durable(events, [quest]))
        assert state.quest("q-1").progress == 40

    def test_completed_quests_untouched(self, event_factory, quest_factory):
        state = DerivedState.from_durable([event_factory()], [quest_factory(completed=True)])
        assert catch_up_quests(state) == (state, [])


class TestSnapshot:
    def test_staleness_policy(self, clock):
        policy = StalenessPolicy(stale_after=timedelta(seconds=60))
        assert policy.is_stale(None, clock.now)
        assert not policy.is_stale(clock.now - timedelta(seconds=60), clock.now)
        assert policy.is_stale(clock.now - timedelta(seconds=61), clock.now)
        assert CacheEntry(state=DerivedState()).is_stale(policy, clock.now)

    def test_quest_stats(self, clock, quest_factory):
        quests = (
            quest_factory(quest_id="a", completed=True, completed_at=clock.now, reward_points=10),
            quest_factory(quest_id="b"),
        )
        assert quest_stats(quests) == QuestStats(completed=1, total=2, points_earned=10)

    def test_build_snapshot(self, clock, event_factory, quest_factory):
        events = [event_factory() for _ in range(5)]
        quests = [
            quest_factory(quest_id="late", expires_at=clock.now + timedelta(days=3)),
            quest_factory(quest_id="soon", expires_at=clock.now + timedelta(hours=2)),
            quest_factory(quest_id="done", completed=True, completed_at=clock.now),
        ]
        state = DerivedState.from_durable(events, quests, points=40)
        snap = build_snapshot("u1", state, clock.now, timezone.utc, 5, version=3, pending_mutations=2)
        assert [q.id for q in snap.quests] == ["soon", "late"]
        assert snap.quest_stats.completed == 1
        assert snap.streak.current_streak == 1
        assert snap.streak.questions_today == 5
        assert snap.mastery[0].raw_xp == 125
        assert (snap.version, snap.points, snap.pending_mutations, snap.stale) == (3, 40, 2, False)
