"""Tests for the mastery fold, decay and tier computation."""

import random
from datetime import timedelta

import pytest

from prepstate.events.schemas import Difficulty
from prepstate.mastery.aggregator import (
    SkillAccumulator,
    apply_decay,
    build_mastery,
    days_inactive,
    fold_events,
    mastery_state,
    tier_of,
    xp_for_event,
)
from prepstate.mastery.tiers import Tier, compute_tier, tier_for


class TestXpForEvent:
    def test_xp_by_difficulty(self, event_factory):
        assert xp_for_event(event_factory(difficulty=Difficulty.EASY)) == 10
        assert xp_for_event(event_factory(difficulty=Difficulty.MEDIUM)) == 25
        assert xp_for_event(event_factory(difficulty=Difficulty.HARD)) == 50

    def test_incorrect_penalty_regardless_of_difficulty(self, event_factory):
        for difficulty in Difficulty:
            assert xp_for_event(event_factory(correct=False, difficulty=difficulty)) == -15


class TestComputeTier:
    def test_boundaries(self):
        assert tier_for(999) == Tier.NOVICE
        assert tier_for(1000) == Tier.PRO
        assert tier_for(1999) == Tier.PRO
        assert tier_for(2000) == Tier.GOD
        assert tier_for(-40) == Tier.NOVICE

    def test_progress_fields(self):
        info = compute_tier(1200)
        assert info["tier"] == Tier.PRO
        assert info["xp_into_tier"] == 200
        assert info["xp_to_next"] == 800
        assert info["next_tier"] == Tier.GOD

    def test_god_is_a_plateau(self):
        info = compute_tier(5000)
        assert info["tier"] == Tier.GOD
        assert info["xp_to_next"] == 0

    def test_negative_xp_shows_zero_progress(self):
        info = compute_tier(-30)
        assert info["tier"] == Tier.NOVICE
        assert info["xp_into_tier"] == 0
        assert info["xp_to_next"] == 1000


class TestFold:
    def test_order_independence(self, clock, event_factory):
        events = [
            event_factory(difficulty=d, correct=c, occurred_at=clock.now - timedelta(hours=i))
            for i, (d, c) in enumerate(
                [(Difficulty.EASY, True), (Difficulty.HARD, False), (Difficulty.HARD, True), (Difficulty.MEDIUM, True)]
                * 5
            )
        ]
        expected = fold_events(events)["algebra"]
        rng = random.Random(7)
        for _ in range(10):
            shuffled = events[:]
            rng.shuffle(shuffled)
            acc = fold_events(shuffled)["algebra"]
            assert acc.raw_xp == expected.raw_xp
            assert acc.attempts == expected.attempts
            assert acc.last_activity_at == expected.last_activity_at

    def test_duplicate_event_key_counted_once(self, event_factory):
        event = event_factory(key="dup-1")
        accs = fold_events([event, event, event])
        assert accs["algebra"].raw_xp == 25
        assert accs["algebra"].attempts == 1

    def test_seen_keys_skipped(self, event_factory):
        old, new = event_factory(key="old"), event_factory(key="new")
        base = fold_events([old])
        accs = fold_events([old, new], base=base, seen={"old"})
        assert accs["algebra"].attempts == 2

    def test_long_history_folds_in_one_pass(self, clock, event_factory):
        events = [event_factory(occurred_at=clock.now - timedelta(minutes=i)) for i in range(20_000)]
        acc = fold_events(events)["algebra"]
        assert acc.attempts == 20_000
        assert acc.raw_xp == 500_000
        assert acc.last_activity_at == clock.now

    def test_base_is_not_modified(self, event_factory):
        base = fold_events([event_factory()])
        fold_events([event_factory()], base=base)
        assert base["algebra"].attempts == 1

    def test_skills_group_by_normalized_name(self, event_factory):
        accs = fold_events([event_factory(skill="Words in Context"), event_factory(skill="words_in_context")])
        assert list(accs) == ["words in context"]
        assert accs["words in context"].attempts == 2

    def test_label_follows_most_recent_event(self, event_factory):
        first = event_factory(skill="algebra")
        later = event_factory(skill="ALGEBRA", occurred_at=first.occurred_at + timedelta(minutes=5))
        assert fold_events([later, first])["algebra"].skill == "ALGEBRA"

    def test_accuracy(self, event_factory):
        acc = fold_events([event_factory(), event_factory(correct=False)])["algebra"]
        assert acc.accuracy == 0.5
        assert SkillAccumulator(key="x", skill="x", subject=acc.subject).accuracy == 0.0


class TestDecay:
    def test_days_inactive_floors(self, clock):
        assert days_inactive(clock.now - timedelta(days=3, hours=23), clock.now) == 3
        assert days_inactive(None, clock.now) is None
        assert days_inactive(clock.now + timedelta(hours=2), clock.now) == 0

    def test_no_decay_within_grace(self, clock):
        for days in range(15):
            assert apply_decay(1500, clock.now - timedelta(days=days), clock.now) == 1500

    def test_monotonic_past_grace(self, clock):
        previous = 1500
        for days in range(15, 400):
            value = apply_decay(1500, clock.now - timedelta(days=days), clock.now)
            assert value <= previous
            assert value >= 0
            previous = value
        assert previous == 0

    @pytest.mark.parametrize("raw_xp", [2000, 2455, 10_000])
    def test_god_tier_never_decays(self, clock, raw_xp):
        for days in (0, 15, 30, 365, 3650):
            assert apply_decay(raw_xp, clock.now - timedelta(days=days), clock.now) == raw_xp

    @pytest.mark.parametrize("raw_xp", [-45, 0, 500, 999])
    def test_below_pro_never_decays(self, clock, raw_xp):
        assert apply_decay(raw_xp, clock.now - timedelta(days=120), clock.now) == raw_xp

    def test_pro_skill_after_twenty_idle_days(self, clock):
        assert apply_decay(1200, clock.now - timedelta(days=20), clock.now) == 1170
        assert tier_for(1170) == Tier.PRO

    def test_decay_can_drop_tier(self, clock):
        value = apply_decay(1010, clock.now - timedelta(days=17), clock.now)
        assert value == 995
        assert tier_for(value) == Tier.NOVICE


class TestMasteryState:
    def test_algebra_journey(self, clock, event_factory):
        events = [event_factory(difficulty=Difficulty.EASY) for _ in range(3)]
        state = mastery_state(fold_events(events)["algebra"], clock.now)
        assert state.raw_xp == 30
        assert state.tier == Tier.NOVICE

        events += [event_factory(difficulty=Difficulty.MEDIUM) for _ in range(97)]
        accs = fold_events(events)
        state = mastery_state(accs["algebra"], clock.now)
        assert state.raw_xp == 2455
        assert state.tier == Tier.GOD

        later = mastery_state(accs["algebra"], clock.now + timedelta(days=30))
        assert later.decayed_xp == 2455
        assert later.tier == Tier.GOD
        assert later.at_risk is False

    def test_at_risk_when_decaying(self, clock, event_factory):
        last = clock.now - timedelta(days=20)
        events = [event_factory(difficulty=Difficulty.HARD, occurred_at=last) for _ in range(24)]
        state = mastery_state(fold_events(events)["algebra"], clock.now)
        assert state.raw_xp == 1200
        assert state.decayed_xp == 1170
        assert state.tier == Tier.PRO
        assert state.days_since_activity == 20
        assert state.at_risk is True

    def test_display_xp_clamps_negative(self, clock, event_factory):
        state = mastery_state(fold_events([event_factory(correct=False)])["algebra"], clock.now)
        assert state.raw_xp == -15
        assert state.display_xp == 0
        assert state.tier == Tier.NOVICE


class TestBuildMastery:
    def test_closest_to_milestone_first_god_last(self, clock, event_factory):
        events = (
            [event_factory(skill="Circles", difficulty=Difficulty.HARD) for _ in range(19)]  # 950
            + [event_factory(skill="Transitions", difficulty=Difficulty.HARD) for _ in range(40)]  # 2000
            + [event_factory(skill="Boundaries", difficulty=Difficulty.EASY) for _ in range(2)]  # 20
            + [event_factory(skill="Percentages", difficulty=Difficulty.HARD) for _ in range(39)]  # 1950
        )
        states = build_mastery(fold_events(events), clock.now)
        assert [s.skill for s in states] == ["Percentages", "Circles", "Boundaries", "Transitions"]

    def test_accepts_iterable(self, clock, event_factory):
        accs = fold_events([event_factory()])
        assert len(build_mastery(list(accs.values()), clock.now)) == 1

    def test_tier_of_unknown_skill_is_novice(self, clock, event_factory):
        accs = fold_events([event_factory(difficulty=Difficulty.HARD) for _ in range(20)])
        assert tier_of(accs, "ALGEBRA", clock.now) == Tier.PRO
        assert tier_of(accs, "Circles", clock.now) == Tier.NOVICE
