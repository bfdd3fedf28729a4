"""Tests for environment-driven settings."""

import pytest

from clientportal.config import ConfigurationError, Settings


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.session_ttl_seconds == 8 * 3600
        assert settings.lockout_threshold == 5
        assert settings.lockout_minutes == 30
        assert settings.metrics_cache_ttl_seconds == 300
        assert settings.session_cookie_name == "portal_session"

    def test_from_env_reads_overrides(self, monkeypatch):
        monkeypatch.setenv("LOCKOUT_THRESHOLD", "3")
        monkeypatch.setenv("SESSION_TTL_HOURS", "1.5")
        monkeypatch.setenv("ADMIN_IDENTITIES", "Boss@Firm.com, ops@firm.com,,")
        settings = Settings.from_env()
        assert settings.lockout_threshold == 3
        assert settings.session_ttl_seconds == 5400
        assert settings.admin_identities == ["boss@firm.com", "ops@firm.com"]

    @pytest.mark.parametrize(
        "name,value",
        [
            ("LOCKOUT_THRESHOLD", "0"),
            ("SESSION_TTL_HOURS", "-1"),
            ("LOGIN_RATE_LIMIT", "-5"),
            ("SESSION_COOKIE_NAME", "tracker"),
            ("STORE_TIMEOUT_SECONDS", "0"),
        ],
    )
    def test_invalid_values_refuse_to_start(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigurationError):
            Settings.from_env()

    def test_zero_rate_limit_disables_limiting(self):
        assert Settings(login_rate_limit=0).login_rate_limit == 0

    def test_database_required_without_memory_store(self):
        settings = Settings(use_memory_store=False, database_url="")
        with pytest.raises(ConfigurationError):
            settings.validate_startup()

    def test_redis_required_outside_test_mode(self):
        settings = Settings(use_memory_store=True, redis_url="", test_mode=False)
        with pytest.raises(ConfigurationError):
            settings.validate_startup()
        Settings(use_memory_store=True, redis_url="", allow_redis_fallback_dev=True).validate_startup()


class TestLoggingSettings:
    def test_log_level_is_normalized(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("LOG_JSON", "false")
        settings = Settings.from_env()
        assert settings.log_level == "DEBUG"
        assert settings.log_json is False

    def test_unknown_log_level_refuses_to_start(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "verbose")
        with pytest.raises(ConfigurationError):
            Settings.from_env()
