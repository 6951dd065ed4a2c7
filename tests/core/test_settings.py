"""Tests for UpkeepSettings."""

import pytest
from pydantic import ValidationError

from upkeep.core.settings import UpkeepSettings, get_settings


class TestUpkeepSettings:
    def test_defaults(self, monkeypatch):
        for name in ("UPKEEP_AHEAD_DAYS", "UPKEEP_DEFAULT_ASSIGNEE", "UPKEEP_LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)
        settings = UpkeepSettings(_env_file=None)
        assert settings.ahead_days == 7
        assert settings.default_assignee is None
        assert settings.default_timezone == "UTC"
        assert settings.tick_interval_seconds == 300.0
        assert settings.persistence_max_retries == 2
        assert settings.log_level == "INFO"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("UPKEEP_AHEAD_DAYS", "14")
        monkeypatch.setenv("UPKEEP_DEFAULT_ASSIGNEE", "u-lead")
        settings = UpkeepSettings(_env_file=None)
        assert settings.ahead_days == 14
        assert settings.default_assignee == "u-lead"

    def test_log_level_normalized(self):
        assert UpkeepSettings(log_level="debug", _env_file=None).log_level == "DEBUG"

    def test_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            UpkeepSettings(ahead_days=-1, _env_file=None)
        with pytest.raises(ValidationError):
            UpkeepSettings(log_level="LOUD", _env_file=None)
        with pytest.raises(ValidationError):
            UpkeepSettings(tick_interval_seconds=0, _env_file=None)

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
