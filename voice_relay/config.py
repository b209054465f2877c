"""
Configuration management for the voice relay.

Reads the relay and client settings from the environment (with `.env`
support) and validates them once at startup.
"""

import os
from typing import Optional
from dotenv import load_dotenv
from loguru import logger

# Load environment variables
load_dotenv()


AUTH_MODES = ["api_key", "ephemeral"]
RECOMMENDED_SAMPLE_RATES = [8000, 16000, 24000, 48000]


class Config:
    """
    Configuration class for the voice relay.

    Centralizes all configuration values and provides validation.
    """

    def __init__(self):
        """Initialize configuration with environment variables."""
        self.api_key: Optional[str] = os.getenv("XAI_API_KEY") or None
        self.upstream_url: str = os.getenv("REALTIME_URL", "wss://api.x.ai/v1/realtime")
        self.session_request_url: str = os.getenv(
            "SESSION_REQUEST_URL", "https://api.x.ai/v1/realtime/client_secrets"
        )
        self.auth_mode: str = os.getenv("AUTH_MODE", "api_key").lower()
        self.token_ttl_seconds: int = int(os.getenv("TOKEN_TTL_SECONDS", "300"))

        self.host: str = os.getenv("RELAY_HOST", "localhost")
        self.port: int = int(os.getenv("RELAY_PORT", "3000"))
        self.path: str = os.getenv("RELAY_PATH", "/ws")

        self.sample_rate: int = int(os.getenv("SAMPLE_RATE", "24000"))
        self.block_size: int = int(os.getenv("BLOCK_SIZE", "4096"))
        self.voice: str = os.getenv("VOICE", "Ara")
        self.instructions: str = os.getenv(
            "INSTRUCTIONS", "You are a helpful voice assistant. Keep answers short."
        )
        self.playback_max_fragments: int = int(os.getenv("PLAYBACK_MAX_FRAGMENTS", "0"))
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

        self._validate_config()

    def _validate_config(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If configuration values are invalid.
        """
        if self.auth_mode not in AUTH_MODES:
            raise ValueError(
                f"Invalid auth mode: {self.auth_mode}. "
                f"Must be one of: {AUTH_MODES}"
            )

        if not self.upstream_url.startswith(("ws://", "wss://")):
            raise ValueError(
                f"Upstream URL must use ws:// or wss://, got: {self.upstream_url}"
            )

        if not self.path.startswith("/"):
            raise ValueError(f"Relay path must start with '/', got: {self.path}")

        for name in ("port", "sample_rate", "block_size", "token_ttl_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got: {getattr(self, name)}")

        if self.playback_max_fragments < 0:
            raise ValueError(
                f"Playback queue bound must be >= 0, got: {self.playback_max_fragments}"
            )

        if self.sample_rate not in RECOMMENDED_SAMPLE_RATES:
            logger.warning(
                f"Sample rate {self.sample_rate} may not be supported upstream. "
                "Recommended: 24000 Hz"
            )

        if not self.api_key:
            logger.warning("XAI_API_KEY is not set; upstream sessions will be rejected")

        logger.info(f"Configuration loaded successfully:")
        logger.info(f"  - Upstream: {self.upstream_url} (auth: {self.auth_mode})")
        logger.info(f"  - Relay: ws://{self.host}:{self.port}{self.path}")
        logger.info(f"  - Sample rate: {self.sample_rate} Hz, block size: {self.block_size}")
        logger.info(f"  - API key configured: {'yes' if self.api_key else 'no'}")

    @property
    def max_queued_fragments(self) -> Optional[int]:
        """Playback queue bound, or None when unbounded."""
        return self.playback_max_fragments or None


# Global configuration instance
config = Config()
