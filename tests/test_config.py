"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from sessionward.config import (
    NEVER_EXPIRE,
    Settings,
    TokenStyle,
    get_settings,
    reset_settings_cache,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run from an empty directory with no session variables set."""
    monkeypatch.chdir(tmp_path)
    for field in Settings.model_fields.values():
        env_name = (field.json_schema_extra or {}).get("env")
        if env_name:
            monkeypatch.delenv(env_name, raising=False)
    reset_settings_cache()
    yield monkeypatch
    reset_settings_cache()


class TestDefaults:
    def test_defaults(self, clean_env):
        settings = Settings.from_env()

        assert settings.timeout_seconds == 60 * 60 * 24 * 30
        assert settings.active_timeout_seconds == NEVER_EXPIRE
        assert settings.token_style == TokenStyle.UUID
        assert settings.token_name == "satoken"
        assert settings.is_concurrent is True
        assert settings.max_login_count == NEVER_EXPIRE
        assert settings.expired_retention_seconds == 600
        assert settings.default_device == "default-device"


class TestFromEnv:
    def test_environment_overrides(self, clean_env):
        clean_env.setenv("SESSION_TIMEOUT_SECONDS", "3600")
        clean_env.setenv("SESSION_TOKEN_STYLE", "random-64")
        clean_env.setenv("SESSION_IS_CONCURRENT", "false")
        clean_env.setenv("REDIS_SOCKET_TIMEOUT", "0.5")

        settings = Settings.from_env()

        assert settings.timeout_seconds == 3600
        assert settings.token_style == TokenStyle.RANDOM_64
        assert settings.is_concurrent is False
        assert settings.redis_socket_timeout == 0.5

    def test_dotenv_file_is_read(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("SESSION_KEY_PREFIX=from-dotenv\n")

        assert Settings.from_env().key_prefix == "from-dotenv"

    def test_environment_wins_over_dotenv(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("SESSION_KEY_PREFIX=from-dotenv\n")
        clean_env.setenv("SESSION_KEY_PREFIX", "from-env")

        assert Settings.from_env().key_prefix == "from-env"

    def test_get_settings_is_cached(self, clean_env):
        first = get_settings()
        clean_env.setenv("SESSION_TIMEOUT_SECONDS", "10")

        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().timeout_seconds == 10


class TestValidation:
    @pytest.mark.parametrize("field", ["timeout_seconds", "max_login_count"])
    @pytest.mark.parametrize("value", [0, -2])
    def test_limits_must_be_positive_or_never(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_negative_retention_rejected(self):
        with pytest.raises(ValidationError):
            Settings(expired_retention_seconds=-1)

    def test_blank_default_device_rejected(self):
        with pytest.raises(ValidationError):
            Settings(default_device="  ")

    def test_unknown_token_style_rejected(self):
        with pytest.raises(ValidationError):
            Settings(token_style="base64")

    def test_lock_wait_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(slot_lock_timeout_seconds=0)
