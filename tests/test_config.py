"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from cerberus_auth.config import CredentialStoreKind, Settings, get_settings, reset_settings_cache


class TestSettingsFromEnv:
    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("CERBERUS_API_BASE_URL", "https://ir.example.com/")
        monkeypatch.setenv("CREDENTIAL_STORE", "file")
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "60")
        monkeypatch.setenv("STORAGE_KEY_PREFIX", "cerberus_")

        settings = Settings.from_env()

        assert settings.api_base_url == "https://ir.example.com"
        assert settings.credential_store == CredentialStoreKind.FILE
        assert settings.access_token_ttl_minutes == 60
        assert settings.storage_key_prefix == "cerberus_"

    def test_get_settings_is_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("MIN_PASSWORD_LENGTH", "12")
        assert get_settings().min_password_length == first.min_password_length

        reset_settings_cache()
        assert get_settings().min_password_length == 12

    def test_dotenv_file_is_read(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("CERBERUS_API_PREFIX", raising=False)
        (tmp_path / ".env").write_text("CERBERUS_API_PREFIX=/api/v2\n")

        assert Settings.from_env().api_prefix == "/api/v2"


class TestRefreshInterval:
    def test_defaults_to_five_sixths_of_token_lifetime(self):
        settings = Settings(access_token_ttl_minutes=30)
        assert settings.effective_refresh_interval == 25 * 60

    def test_explicit_interval_wins(self):
        settings = Settings(access_token_ttl_minutes=30, refresh_interval_seconds=90)
        assert settings.effective_refresh_interval == 90

    def test_blank_interval_means_default(self):
        assert Settings(refresh_interval_seconds="").refresh_interval_seconds is None

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValidationError):
            Settings(refresh_interval_seconds=0)


class TestValidation:
    def test_base_url_must_be_http(self):
        with pytest.raises(ValidationError):
            Settings(api_base_url="ftp://identity")

    def test_unknown_store_rejected(self):
        with pytest.raises(ValidationError):
            Settings(credential_store="sqlite")

    def test_prefix_normalized(self):
        assert Settings(api_prefix="api/v1/").api_prefix == "/api/v1"

    def test_api_url_joins_prefix(self):
        assert Settings().api_url("/auth/me") == "/api/v1/auth/me"
