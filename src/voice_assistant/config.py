"""
Configuration management for the wake-phrase voice assistant.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


DEFAULT_WAKE_PHRASES: Tuple[str, ...] = (
    "assistant",
    "hey assistant",
    "ok assistant",
    "hey, assistant",
    "okay assistant",
)
DEFAULT_STOP_PHRASES: Tuple[str, ...] = ("stop", "end session", "goodbye")

DEFAULT_SIGNALLING_URL = "https://eastus2.realtimeapi-preview.ai.azure.com/v1/realtimertc"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Backend broker (speech tokens + realtime session grants)
    backend_url: str = "http://localhost:3000"
    http_timeout_seconds: float = 10.0
    log_level: str = "INFO"

    # Realtime endpoint
    # - realtime_deployment / realtime_voice are sent when requesting a session grant
    # - realtime_signalling_url receives the complete SDP offer
    realtime_deployment: str = "gpt-4o-mini-realtime-preview"
    realtime_voice: str = "verse"
    realtime_signalling_url: str = DEFAULT_SIGNALLING_URL
    ice_gathering_timeout_seconds: float = 10.0

    # Trigger phrases
    wake_phrases: Tuple[str, ...] = DEFAULT_WAKE_PHRASES
    stop_phrases: Tuple[str, ...] = DEFAULT_STOP_PHRASES
    speech_language: str = "en-US"

    # Session lifecycle
    session_timeout_seconds: float = 60.0
    listener_retry_seconds: float = 5.0

    # Credential cache
    credential_safety_margin_seconds: float = 60.0
    credential_default_ttl_seconds: float = 540.0

    # Local audio (ffmpeg device names, as understood by aiortc's MediaPlayer/MediaRecorder)
    audio_capture_device: str = "default"
    audio_capture_format: str = "pulse"
    audio_playback_device: str = ""
    audio_playback_format: str = "pulse"

    # Broker server
    port: int = 3000
    azure_openai_sessions_url: str = ""
    azure_openai_api_key: str = ""
    azure_speech_key: str = ""
    azure_speech_region: str = "eastus"

    @property
    def sessions_endpoint(self) -> str:
        """Backend route that mints a realtime session grant."""
        return f"{self.backend_url.rstrip('/')}/api/sessions"

    @property
    def speech_token_endpoint(self) -> str:
        """Backend route that issues a speech recognition token."""
        return f"{self.backend_url.rstrip('/')}/api/get-speech-token"

    def validate(self) -> None:
        """Validate the client-side settings."""
        missing = []

        if not self.backend_url:
            missing.append("BACKEND_URL")
        if not self.realtime_signalling_url:
            missing.append("REALTIME_SIGNALLING_URL")
        if not self.realtime_deployment:
            missing.append("REALTIME_DEPLOYMENT")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

        if not self.wake_phrases:
            raise ConfigError("WAKE_PHRASES must contain at least one phrase")
        if not self.stop_phrases:
            raise ConfigError("STOP_PHRASES must contain at least one phrase")
        if self.session_timeout_seconds <= 0:
            raise ConfigError("SESSION_TIMEOUT_SECONDS must be positive")
        if self.credential_safety_margin_seconds < 0:
            raise ConfigError("CREDENTIAL_SAFETY_MARGIN_SECONDS must not be negative")
        if self.credential_default_ttl_seconds <= self.credential_safety_margin_seconds:
            raise ConfigError(
                "CREDENTIAL_DEFAULT_TTL_SECONDS must exceed CREDENTIAL_SAFETY_MARGIN_SECONDS"
            )

    def validate_server(self) -> None:
        """Validate the broker-server settings."""
        missing = []

        if not self.azure_openai_sessions_url:
            missing.append("AZURE_OPENAI_SESSIONS_URL")
        if not self.azure_openai_api_key:
            missing.append("AZURE_OPENAI_API_KEY")
        if not self.azure_speech_region:
            missing.append("AZURE_SPEECH_REGION")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            backend_url=self.backend_url,
            log_level=self.log_level,
            realtime_deployment=self.realtime_deployment,
            realtime_voice=self.realtime_voice,
            realtime_signalling_url=self.realtime_signalling_url,
            wake_phrases=list(self.wake_phrases),
            stop_phrases=list(self.stop_phrases),
            speech_language=self.speech_language,
            session_timeout_seconds=self.session_timeout_seconds,
            listener_retry_seconds=self.listener_retry_seconds,
            credential_safety_margin_seconds=self.credential_safety_margin_seconds,
            audio_capture_device=self.audio_capture_device,
            audio_playback_device=self.audio_playback_device or None,
            azure_openai_key_set=bool(self.azure_openai_api_key),
            azure_speech_key_set=bool(self.azure_speech_key),
        )


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


def _get_phrases(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    """Get a comma separated phrase list from environment variable."""
    raw = os.getenv(key)
    if raw is None:
        return default
    phrases = []
    for part in raw.split(","):
        phrase = part.strip().lower()
        if phrase and phrase not in phrases:
            phrases.append(phrase)
    return tuple(phrases)


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Backend
        backend_url=os.getenv("BACKEND_URL", "http://localhost:3000"),
        http_timeout_seconds=_get_float("HTTP_TIMEOUT_SECONDS", 10.0),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Realtime
        realtime_deployment=os.getenv("REALTIME_DEPLOYMENT", "gpt-4o-mini-realtime-preview"),
        realtime_voice=os.getenv("REALTIME_VOICE", "verse"),
        realtime_signalling_url=os.getenv("REALTIME_SIGNALLING_URL", DEFAULT_SIGNALLING_URL),
        ice_gathering_timeout_seconds=_get_float("ICE_GATHERING_TIMEOUT_SECONDS", 10.0),

        # Phrases
        wake_phrases=_get_phrases("WAKE_PHRASES", DEFAULT_WAKE_PHRASES),
        stop_phrases=_get_phrases("STOP_PHRASES", DEFAULT_STOP_PHRASES),
        speech_language=os.getenv("SPEECH_LANGUAGE", "en-US"),

        # Lifecycle
        session_timeout_seconds=_get_float("SESSION_TIMEOUT_SECONDS", 60.0),
        listener_retry_seconds=_get_float("LISTENER_RETRY_SECONDS", 5.0),

        # Credentials
        credential_safety_margin_seconds=_get_float("CREDENTIAL_SAFETY_MARGIN_SECONDS", 60.0),
        credential_default_ttl_seconds=_get_float("CREDENTIAL_DEFAULT_TTL_SECONDS", 540.0),

        # Audio
        audio_capture_device=os.getenv("AUDIO_CAPTURE_DEVICE", "default"),
        audio_capture_format=os.getenv("AUDIO_CAPTURE_FORMAT", "pulse"),
        audio_playback_device=os.getenv("AUDIO_PLAYBACK_DEVICE", ""),
        audio_playback_format=os.getenv("AUDIO_PLAYBACK_FORMAT", "pulse"),

        # Server
        port=_get_int("PORT", 3000),
        azure_openai_sessions_url=os.getenv("AZURE_OPENAI_SESSIONS_URL", ""),
        azure_openai_api_key=os.getenv("AZURE_OPENAI_API_KEY", ""),
        azure_speech_key=os.getenv("AZURE_SPEECH_KEY", ""),
        azure_speech_region=os.getenv("AZURE_SPEECH_REGION", "eastus"),
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
