"""Tests for engine settings."""

from prepstate.config import Settings
from prepstate.quests.generator import QuestPolicy


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.min_daily_attempts == 5
        assert settings.max_active_quests == 12
        assert settings.reference_timezone == "UTC"
        assert settings.snapshot_stale_after_seconds == 120
        assert (settings.db_pool_size, settings.db_max_overflow) == (10, 5)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PREPSTATE_REFERENCE_TIMEZONE", "America/New_York")
        monkeypatch.setenv("PREPSTATE_MAX_ACTIVE_QUESTS", "6")
        monkeypatch.setenv("PREPSTATE_CLAIM_TIMEOUT_SECONDS", "2.5")
        settings = Settings(_env_file=None)
        assert settings.reference_timezone == "America/New_York"
        assert settings.max_active_quests == 6
        assert settings.claim_timeout_seconds == 2.5

    def test_quest_policy_from_settings(self):
        policy = QuestPolicy.from_settings(Settings(_env_file=None, max_active_quests=9, completed_retention_days=3))
        assert policy.max_active == 9
        assert policy.retention.days == 3
        assert str(policy.tz) == "UTC"
