import pytest
from pydantic import ValidationError

from latchkey.config import Settings, get_settings, reset_settings_cache


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults_match_token_windows(self, settings):
        assert settings.activation_token_ttl_minutes == 24 * 60
        assert settings.reset_token_ttl_minutes == 10
        assert settings.token_bytes == 32
        assert settings.session_cookie_name == "jwt"

    def test_from_env_reads_declared_names(self, monkeypatch):
        monkeypatch.setenv("RESET_TOKEN_TTL_MINUTES", "15")
        monkeypatch.setenv("SESSION_COOKIE_SAMESITE", "Strict")
        monkeypatch.setenv("SMTP_HOST", "smtp.example.test")

        settings = Settings.from_env()

        assert settings.reset_token_ttl_minutes == 15
        assert settings.session_cookie_samesite == "strict"
        assert settings.smtp_host == "smtp.example.test"

    def test_short_tokens_rejected(self):
        with pytest.raises(ValidationError):
            Settings(session_secret="x" * 40, token_bytes=16)

    def test_bad_samesite_rejected(self):
        with pytest.raises(ValidationError):
            Settings(session_secret="x" * 40, session_cookie_samesite="sometimes")

    def test_session_secret_generated_and_persisted(self, tmp_path, monkeypatch):
        monkeypatch.delenv("SESSION_SECRET", raising=False)
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

        first = Settings()
        second = Settings()

        assert len(first.session_secret) >= 32
        assert first.session_secret == second.session_secret
        assert (tmp_path / ".session_secret").read_text() == first.session_secret

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("SESSION_ISSUER", "elsewhere")
        reset_settings_cache()

        assert get_settings() is not first
        assert get_settings().session_issuer == "elsewhere"
