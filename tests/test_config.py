"""
Tests for configuration loading.
"""

import pytest

from voice_relay.config import Config


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("XAI_API_KEY", "test-key")
    for name in ("REALTIME_URL", "AUTH_MODE", "RELAY_PORT", "RELAY_PATH",
                 "SAMPLE_RATE", "BLOCK_SIZE", "PLAYBACK_MAX_FRAGMENTS"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestConfig:
    """Test cases for Config class."""

    def test_defaults(self, env):
        config = Config()

        assert config.upstream_url == "wss://api.x.ai/v1/realtime"
        assert config.auth_mode == "api_key"
        assert config.port == 3000
        assert config.path == "/ws"
        assert config.sample_rate == 24000
        assert config.block_size == 4096
        assert config.max_queued_fragments is None

    def test_overrides(self, env):
        env.setenv("AUTH_MODE", "EPHEMERAL")
        env.setenv("RELAY_PORT", "8080")
        env.setenv("PLAYBACK_MAX_FRAGMENTS", "32")

        config = Config()

        assert config.auth_mode == "ephemeral"
        assert config.port == 8080
        assert config.max_queued_fragments == 32

    @pytest.mark.parametrize("name, value", [
        ("AUTH_MODE", "password"),
        ("REALTIME_URL", "https://api.x.ai/v1/realtime"),
        ("RELAY_PATH", "ws"),
        ("BLOCK_SIZE", "0"),
        ("PLAYBACK_MAX_FRAGMENTS", "-1"),
    ])
    def test_invalid_values(self, env, name, value):
        env.setenv(name, value)

        with pytest.raises(ValueError):
            Config()
