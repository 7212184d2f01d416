import pytest
from pydantic import ValidationError

from pastcare.config import (
    DEFAULT_AFRICAS_TALKING_COUNTRIES,
    Settings,
    get_settings,
    reset_settings_cache,
)


class TestSettings:
    def test_defaults(self):
        settings = Settings(jwt_secret="x" * 40)

        assert settings.max_active_sessions_per_user == 5
        assert settings.refresh_token_ttl_minutes == 60 * 24 * 30
        assert settings.token_retention_days == 7
        assert settings.login_max_failed_attempts == 5
        assert settings.login_lockout_minutes == 15
        assert settings.login_max_ip_attempts == 10
        assert settings.default_country_code == "+233"
        assert settings.africas_talking_countries == DEFAULT_AFRICAS_TALKING_COUNTRIES

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MAX_ACTIVE_SESSIONS_PER_USER", "2")
        monkeypatch.setenv("TWILIO_COUNTRIES", "+1, +44,,+61")
        monkeypatch.setenv("DEFAULT_COUNTRY_CODE", " +254 ")

        settings = Settings.from_env()

        assert settings.max_active_sessions_per_user == 2
        assert settings.twilio_countries == ("+1", "+44", "+61")
        assert settings.default_country_code == "+254"

    def test_session_cap_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, max_active_sessions_per_user=0)

    def test_bad_country_code(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="x" * 40, default_country_code="233")

    def test_generated_secret_is_persisted(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings(jwt_secret=None)
        second = Settings(jwt_secret=None)

        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret

    def test_settings_cache(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("LOGIN_LOCKOUT_MINUTES", "30")
        reset_settings_cache()
        assert get_settings().login_lockout_minutes == 30
        reset_settings_cache()
