"""
Tests for AssistantConfig and AssistantSettings.
"""
import pytest
from pydantic import ValidationError

from overlay_assistant.conf import AssistantConfig, AssistantSettings


class TestAssistantConfig:

    def test_defaults(self):
        config = AssistantConfig(installation_id="abc")
        assert config.pbkdf2_iterations == 100_000
        assert config.keepalive_interval == 20.0
        assert config.fast_max_tokens == 300
        assert config.full_max_tokens == 2000
        assert config.reasoning_min_tokens == 25_000
        assert config.startup_timeout == 10.0
        assert config.cancel_previous_queries is True

    def test_identifier_hidden_from_repr(self):
        assert "secret-install" not in repr(AssistantConfig(installation_id="secret-install"))

    @pytest.mark.parametrize("kwargs", [
        {"installation_id": ""},
        {"installation_id": "   "},
        {"installation_id": "abc", "pbkdf2_iterations": 1000},
        {"installation_id": "abc", "flush_delay": 3.0, "flush_max_window": 1.0},
        {"installation_id": "abc", "keepalive_interval": 0},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValidationError):
            AssistantConfig(**kwargs)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("OVERLAY_INSTALLATION_ID", "env-install")
        monkeypatch.setenv("OVERLAY_FLUSH_DELAY", "0.25")
        monkeypatch.setenv("OVERLAY_CANCEL_PREVIOUS_QUERIES", "false")
        config = AssistantConfig.from_env(full_max_tokens=1500)

        assert config.installation_id == "env-install"
        assert config.flush_delay == 0.25
        assert config.cancel_previous_queries is False
        assert config.full_max_tokens == 1500

    def test_from_env_missing_identifier(self, monkeypatch):
        monkeypatch.delenv("OVERLAY_INSTALLATION_ID", raising=False)
        with pytest.raises(ValidationError):
            AssistantConfig.from_env()


class TestAssistantSettings:

    def test_defaults(self):
        settings = AssistantSettings()
        assert settings.api_keys == {}
        assert settings.reasoning_effort == "medium"

    def test_reasoning_effort_validated(self):
        with pytest.raises(ValidationError):
            AssistantSettings(reasoning_effort="extreme")
        assert AssistantSettings(reasoning_effort=None).reasoning_effort is None

    def test_reasoning_floor_cannot_be_lowered(self):
        """Test the reasoning budget floor only moves upward."""
        with pytest.raises(ValidationError):
            AssistantConfig(installation_id="abc", reasoning_min_tokens=100)
        config = AssistantConfig(installation_id="abc", reasoning_min_tokens=30_000)
        assert config.reasoning_min_tokens == 30_000
