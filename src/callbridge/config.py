"""
Configuration management for the call bridge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a friendly and professional phone assistant. "
    "Keep answers short (one to three sentences) because they are spoken aloud, "
    "avoid lists and markdown, and ask a clarifying question when you are unsure "
    "what the caller means."
)
DEFAULT_GREETING_INSTRUCTION = (
    "The call has just connected. Greet the caller in one short sentence and "
    "ask how you can help."
)
# ElevenLabs stock voice ("Rachel").
DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"

LLM_PROVIDERS = ("groq", "openai")
TTS_PROVIDERS = ("elevenlabs", "openai")
OVERLAP_POLICIES = ("drop", "queue")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 3000
    log_level: str = "INFO"

    # LLM Provider (Groq/OpenAI)
    # - Default is Groq; set LLM_PROVIDER=openai + OPENAI_API_KEY/OPENAI_MODEL to use ChatGPT.
    llm_provider: str = "groq"  # "groq" | "openai"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 256
    llm_temperature: float = 0.7
    validate_llm_model: bool = True

    # Speech-to-text (OpenAI audio transcriptions)
    openai_stt_model: str = "whisper-1"
    stt_language: str = ""

    # Text-to-speech
    tts_provider: str = "elevenlabs"  # "elevenlabs" | "openai"
    elevenlabs_api_key: str = ""
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    elevenlabs_output_format: str = "mp3_22050_32"
    openai_tts_model: str = "tts-1"

    # Engine calls
    engine_timeout_seconds: float = 30.0

    # Session defaults (used when no campaign matches)
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    default_voice_id: str = DEFAULT_VOICE_ID
    campaigns_file: str = ""

    # Greeting
    greeting_enabled: bool = True
    greeting_instruction: str = DEFAULT_GREETING_INSTRUCTION

    # Inbound audio segmentation
    flush_threshold_frames: int = 150  # 150 x 20ms frames ~= 3s
    overlap_policy: str = "drop"  # "drop" | "queue"

    @property
    def llm_model(self) -> str:
        return self.openai_model if self.llm_provider == "openai" else self.groq_model

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        provider = (self.llm_provider or "groq").strip().lower()
        if provider not in LLM_PROVIDERS:
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )

        tts = (self.tts_provider or "elevenlabs").strip().lower()
        if tts not in TTS_PROVIDERS:
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'elevenlabs' or 'openai'."
            )

        if self.overlap_policy not in OVERLAP_POLICIES:
            raise ConfigError(
                f"Invalid OVERLAP_POLICY '{self.overlap_policy}'. Expected 'drop' or 'queue'."
            )

        if self.flush_threshold_frames <= 0:
            raise ConfigError("FLUSH_THRESHOLD_FRAMES must be a positive integer.")

        if provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if provider == "openai" and not self.openai_model:
            missing.append("OPENAI_MODEL")

        # Transcription always goes through the OpenAI audio API.
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if tts == "elevenlabs" and not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            llm_provider=self.llm_provider,
            llm_model=self.llm_model,
            stt_model=self.openai_stt_model,
            stt_language=self.stt_language or "auto",
            tts_provider=self.tts_provider,
            elevenlabs_model_id=self.elevenlabs_model_id,
            elevenlabs_output_format=self.elevenlabs_output_format,
            default_voice_id=self.default_voice_id,
            campaigns_file=self.campaigns_file or None,
            greeting_enabled=self.greeting_enabled,
            flush_threshold_frames=self.flush_threshold_frames,
            overlap_policy=self.overlap_policy,
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
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


def _get_text(key: str, default: str) -> str:
    """Get a non-empty string, treating blank values as unset."""
    value: Optional[str] = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 256),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),
        validate_llm_model=_get_bool("VALIDATE_LLM_MODEL", True),

        # STT
        openai_stt_model=os.getenv("OPENAI_STT_MODEL", "whisper-1"),
        stt_language=os.getenv("STT_LANGUAGE", "").strip(),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "elevenlabs").strip().lower(),
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2"),
        elevenlabs_output_format=os.getenv("ELEVENLABS_OUTPUT_FORMAT", "mp3_22050_32"),
        openai_tts_model=os.getenv("OPENAI_TTS_MODEL", "tts-1"),

        engine_timeout_seconds=_get_float("ENGINE_TIMEOUT_SECONDS", 30.0),

        # Session defaults
        default_system_prompt=_get_text("DEFAULT_SYSTEM_PROMPT", DEFAULT_SYSTEM_PROMPT),
        default_voice_id=_get_text("DEFAULT_VOICE_ID", DEFAULT_VOICE_ID),
        campaigns_file=os.getenv("CAMPAIGNS_FILE", "").strip(),

        # Greeting
        greeting_enabled=_get_bool("GREETING_ENABLED", True),
        greeting_instruction=_get_text("GREETING_INSTRUCTION", DEFAULT_GREETING_INSTRUCTION),

        # Segmentation
        flush_threshold_frames=_get_int("FLUSH_THRESHOLD_FRAMES", 150),
        overlap_policy=os.getenv("OVERLAP_POLICY", "drop").strip().lower(),
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
