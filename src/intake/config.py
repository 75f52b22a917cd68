"""
Configuration management for the intake voice agent.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_TRANSFER_NUMBER = "+16156175000"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    transfer_number: str = DEFAULT_TRANSFER_NUMBER
    recording_enabled: bool = False

    # Deepgram (STT + TTS)
    deepgram_api_key: str = ""
    deepgram_model: str = "nova-2"
    voice_model: str = "aura-asteria-en"
    stt_max_reconnect_attempts: int = 3
    stt_reconnect_delay_ms: int = 1000

    # OpenAI (completion)
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    # Agent settings
    company_name: str = "The Illinois Hammer"
    max_history_turns: int = 20

    # Session timing
    turn_quiet_period_ms: int = 1200
    transfer_fallback_seconds: float = 15.0
    transfer_settle_ms: int = 500
    transfer_registry_ttl_seconds: float = 10.0

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/connection"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def turn_quiet_period_s(self) -> float:
        return self.turn_quiet_period_ms / 1000

    @property
    def transfer_settle_s(self) -> float:
        return self.transfer_settle_ms / 1000

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("SERVER")
        if not self.twilio_account_sid:
            missing.append("TWILIO_ACCOUNT_SID")
        if not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_model:
            missing.append("OPENAI_MODEL")
        if not self.voice_model:
            missing.append("VOICE_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if not self.transfer_number.startswith("+"):
            raise ConfigError(
                f"Invalid TRANSFER_NUMBER '{self.transfer_number}'. Expected E.164 format (+15551234567)."
            )
        if self.transfer_fallback_seconds <= 0 or self.transfer_registry_ttl_seconds <= 0:
            raise ConfigError("Transfer timeouts must be positive.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            transfer_number=self.transfer_number,
            recording_enabled=self.recording_enabled,
            deepgram_model=self.deepgram_model,
            voice_model=self.voice_model,
            openai_model=self.openai_model,
            company_name=self.company_name,
            turn_quiet_period_ms=self.turn_quiet_period_ms,
            transfer_fallback_seconds=self.transfer_fallback_seconds,
            transfer_settle_ms=self.transfer_settle_ms,
            transfer_registry_ttl_seconds=self.transfer_registry_ttl_seconds,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=os.getenv("SERVER") or os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        transfer_number=os.getenv("TRANSFER_NUMBER", DEFAULT_TRANSFER_NUMBER).strip(),
        recording_enabled=_get_bool("RECORDING_ENABLED", False),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_model=os.getenv("DEEPGRAM_MODEL", "nova-2"),
        voice_model=os.getenv("VOICE_MODEL", "aura-asteria-en"),
        stt_max_reconnect_attempts=_get_int("STT_MAX_RECONNECT_ATTEMPTS", 3),
        stt_reconnect_delay_ms=_get_int("STT_RECONNECT_DELAY_MS", 1000),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),

        # Agent settings
        company_name=os.getenv("COMPANY_NAME", "The Illinois Hammer"),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 20),

        # Session timing
        turn_quiet_period_ms=_get_int("TURN_QUIET_PERIOD_MS", 1200),
        transfer_fallback_seconds=_get_float("TRANSFER_FALLBACK_SECONDS", 15.0),
        transfer_settle_ms=_get_int("TRANSFER_SETTLE_MS", 500),
        transfer_registry_ttl_seconds=_get_float("TRANSFER_REGISTRY_TTL_SECONDS", 10.0),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
