"""Tests for configuration module."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from tierconvert.config.settings import (
    AuthConfig,
    CapabilityConfig,
    TierConvertSettings,
    get_settings,
    reload_settings,
)


class TestTierConvertSettings:
    """Tests for TierConvertSettings."""

    def test_default_settings(self):
        """Test default settings values."""
        settings = TierConvertSettings()

        assert settings.log_level == "INFO"
        assert settings.log_dir == ".logs"
        assert settings.orchestrator.max_fallback_attempts == 3
        assert settings.orchestrator.tier_priority is None

    def test_capability_defaults(self):
        config = CapabilityConfig()

        assert config.weights.engine == 0.5
        assert config.weights.canvas == 0.3
        assert config.weights.network == 0.2
        assert config.engine_threshold == 0.6
        assert config.canvas_threshold == 0.3

    def test_pool_defaults(self):
        settings = TierConvertSettings()

        assert settings.pool.max_instances == 3
        assert settings.pool.reuse_instances is True
        assert settings.pool.idle_timeout == 300.0

    def test_remote_defaults(self):
        settings = TierConvertSettings()

        assert settings.remote.max_retries == 3
        assert settings.remote.health_check.failure_threshold == 3
        assert settings.remote.fallback.try_multiple_services is True

    def test_env_override(self, monkeypatch):
        """Nested values can be overridden with TIERCONVERT_ variables."""
        monkeypatch.setenv("TIERCONVERT_POOL__MAX_INSTANCES", "5")
        monkeypatch.setenv("TIERCONVERT_LOG_LEVEL", "DEBUG")

        settings = TierConvertSettings()

        assert settings.pool.max_instances == 5
        assert settings.log_level == "DEBUG"

    def test_yaml_file(self, temp_dir):
        """tierconvert.yaml in the working directory is loaded."""
        (temp_dir / "tierconvert.yaml").write_text(
            "orchestrator:\n"
            "  max_fallback_attempts: 1\n"
            "  tier_priority: [canvas, markup]\n"
            "remote:\n"
            "  services:\n"
            "    pdf:\n"
            "      - id: local-pdf\n"
            "        url: http://localhost:9000\n"
            "        priority: 0\n",
            encoding="utf-8",
        )

        settings = TierConvertSettings()

        assert settings.orchestrator.max_fallback_attempts == 1
        assert settings.orchestrator.tier_priority == ["canvas", "markup"]
        assert settings.remote.services["pdf"][0].id == "local-pdf"

    def test_invalid_tier_rejected(self):
        with pytest.raises(PydanticValidationError):
            TierConvertSettings(orchestrator={"tier_priority": ["engine", "fax"]})

    def test_invalid_pool_size_rejected(self):
        with pytest.raises(PydanticValidationError):
            TierConvertSettings(pool={"max_instances": 0})


class TestSettingsCache:
    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()

    def test_reload_settings(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("TIERCONVERT_LOG_DIR", "other-logs")

        reloaded = reload_settings()

        assert reloaded is not first
        assert reloaded.log_dir == "other-logs"


class TestAuthConfig:
    def test_literal_values_win(self, monkeypatch):
        monkeypatch.setenv("PDF_KEY", "from-env")
        auth = AuthConfig(api_key="literal", api_key_env="PDF_KEY")
        assert auth.resolve_api_key() == "literal"

    def test_values_from_environment(self, monkeypatch):
        monkeypatch.setenv("PDF_TOKEN", "secret-token")
        auth = AuthConfig(bearer_token_env="PDF_TOKEN")
        assert auth.resolve_bearer_token() == "secret-token"
        assert auth.resolve_api_key() is None
