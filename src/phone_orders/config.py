"""
Configuration management for the phone ordering agent.

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


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # OpenAI Realtime (speech endpoint)
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-realtime-mini"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    openai_realtime_voice: str = "alloy"
    openai_realtime_vad_threshold: float = 0.7
    openai_realtime_prefix_padding_ms: int = 300
    openai_realtime_turn_silence_ms: int = 800
    openai_realtime_transcription_model: str = "whisper-1"
    openai_realtime_temperature: float = 0.7
    openai_realtime_max_output_tokens: int = 256
    openai_realtime_instructions: str = ""
    openai_realtime_instructions_file: str = ""
    openai_connect_timeout_seconds: float = 10.0

    # Store identity
    store_name: str = "Uncle Sal's Pizza"
    store_location: str = "Syracuse, NY"
    tax_rate: float = 0.08

    # Menu
    menu_path: str = ""
    menu_cache_seconds: float = 1800.0

    # Turn taking
    settle_window_ms: int = 5000
    greeting_grace_ms: int = 2000
    response_debounce_ms: int = 800
    confirmation_delay_ms: int = 150
    finalize_delay_ms: int = 2000

    # Response lifecycle guard
    duplicate_threshold: float = 0.75
    duplicate_window_s: float = 10.0
    recent_utterances: int = 10
    rate_limit_backoff_ms: int = 1500
    rate_limit_max_retries: int = 3
    recovery_delay_ms: int = 500
    reconnect_max_attempts: int = 3
    reconnect_base_ms: int = 1000
    reconnect_max_ms: int = 5000

    # Audio relay
    audio_queue_max_chunks: int = 100
    log_transcripts: bool = True

    # Session housekeeping
    session_stale_seconds: float = 600.0
    session_sweep_interval_seconds: float = 300.0

    # Order logging sinks
    sheets_webhook_url: str = ""
    pos_webhook_url: str = ""
    order_webhook_url: str = ""
    sink_timeout_seconds: float = 5.0

    @property
    def ws_url(self) -> str:
        """Get the WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/media-stream"

    @property
    def realtime_ws_url(self) -> str:
        return f"{self.openai_realtime_url}?model={self.openai_realtime_model}"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_realtime_model:
            missing.append("OPENAI_REALTIME_MODEL")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if not 0.0 <= self.openai_realtime_vad_threshold <= 1.0:
            raise ConfigError(
                f"Invalid OPENAI_REALTIME_VAD_THRESHOLD '{self.openai_realtime_vad_threshold}'. Expected 0..1."
            )
        if self.tax_rate < 0:
            raise ConfigError(f"Invalid TAX_RATE '{self.tax_rate}'. Must not be negative.")
        if self.settle_window_ms < self.greeting_grace_ms:
            raise ConfigError("SETTLE_WINDOW_MS must be at least GREETING_GRACE_MS.")

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            realtime_model=self.openai_realtime_model,
            voice=self.openai_realtime_voice,
            vad_threshold=self.openai_realtime_vad_threshold,
            turn_silence_ms=self.openai_realtime_turn_silence_ms,
            store_name=self.store_name,
            tax_rate=self.tax_rate,
            menu_path=self.menu_path or "built-in",
            settle_window_ms=self.settle_window_ms,
            response_debounce_ms=self.response_debounce_ms,
            duplicate_threshold=self.duplicate_threshold,
            reconnect_max_attempts=self.reconnect_max_attempts,
            sinks=[
                name
                for name, url in (
                    ("sheets", self.sheets_webhook_url),
                    ("pos", self.pos_webhook_url),
                    ("webhook", self.order_webhook_url),
                )
                if url
            ],
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
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # OpenAI Realtime
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-realtime-mini"),
        openai_realtime_url=os.getenv("OPENAI_REALTIME_URL", "wss://api.openai.com/v1/realtime"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_vad_threshold=_get_float("OPENAI_REALTIME_VAD_THRESHOLD", 0.7),
        openai_realtime_prefix_padding_ms=_get_int("OPENAI_REALTIME_PREFIX_PADDING_MS", 300),
        openai_realtime_turn_silence_ms=_get_int("OPENAI_REALTIME_TURN_SILENCE_MS", 800),
        openai_realtime_transcription_model=os.getenv("OPENAI_REALTIME_TRANSCRIPTION_MODEL", "whisper-1"),
        openai_realtime_temperature=_get_float("OPENAI_REALTIME_TEMPERATURE", 0.7),
        openai_realtime_max_output_tokens=_get_int("OPENAI_REALTIME_MAX_OUTPUT_TOKENS", 256),
        openai_realtime_instructions=os.getenv("OPENAI_REALTIME_INSTRUCTIONS", ""),
        openai_realtime_instructions_file=os.getenv("OPENAI_REALTIME_INSTRUCTIONS_FILE", ""),
        openai_connect_timeout_seconds=_get_float("OPENAI_CONNECT_TIMEOUT_SECONDS", 10.0),

        # Store
        store_name=os.getenv("STORE_NAME", "Uncle Sal's Pizza"),
        store_location=os.getenv("STORE_LOCATION", "Syracuse, NY"),
        tax_rate=_get_float("TAX_RATE", 0.08),

        # Menu
        menu_path=os.getenv("MENU_PATH", ""),
        menu_cache_seconds=_get_float("MENU_CACHE_SECONDS", 1800.0),

        # Turn taking
        settle_window_ms=_get_int("SETTLE_WINDOW_MS", 5000),
        greeting_grace_ms=_get_int("GREETING_GRACE_MS", 2000),
        response_debounce_ms=_get_int("RESPONSE_DEBOUNCE_MS", 800),
        confirmation_delay_ms=_get_int("CONFIRMATION_DELAY_MS", 150),
        finalize_delay_ms=_get_int("FINALIZE_DELAY_MS", 2000),

        # Guard
        duplicate_threshold=_get_float("DUPLICATE_THRESHOLD", 0.75),
        duplicate_window_s=_get_float("DUPLICATE_WINDOW_S", 10.0),
        recent_utterances=_get_int("RECENT_UTTERANCES", 10),
        rate_limit_backoff_ms=_get_int("RATE_LIMIT_BACKOFF_MS", 1500),
        rate_limit_max_retries=_get_int("RATE_LIMIT_MAX_RETRIES", 3),
        recovery_delay_ms=_get_int("RECOVERY_DELAY_MS", 500),
        reconnect_max_attempts=_get_int("RECONNECT_MAX_ATTEMPTS", 3),
        reconnect_base_ms=_get_int("RECONNECT_BASE_MS", 1000),
        reconnect_max_ms=_get_int("RECONNECT_MAX_MS", 5000),

        # Audio relay
        audio_queue_max_chunks=_get_int("AUDIO_QUEUE_MAX_CHUNKS", 100),
        log_transcripts=_get_bool("LOG_TRANSCRIPTS", True),

        # Sessions
        session_stale_seconds=_get_float("SESSION_STALE_SECONDS", 600.0),
        session_sweep_interval_seconds=_get_float("SESSION_SWEEP_INTERVAL_SECONDS", 300.0),

        # Sinks
        sheets_webhook_url=os.getenv("SHEETS_WEBHOOK_URL", ""),
        pos_webhook_url=os.getenv("POS_WEBHOOK_URL", ""),
        order_webhook_url=os.getenv("ORDER_WEBHOOK_URL", ""),
        sink_timeout_seconds=_get_float("SINK_TIMEOUT_SECONDS", 5.0),
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
