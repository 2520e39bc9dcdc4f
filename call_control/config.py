"""
Application configuration.

Loads from environment variables (with .env_local / .env support for local
development) with sensible defaults.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


DEVELOPMENT = "development"
PRODUCTION = "production"


def _load_env_files() -> None:
    """Best-effort .env loading; never overrides variables already exported."""
    root = Path(__file__).parent.parent
    for name in (".env_local", ".env.local", ".env"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


def _parse_int_env(key: str, default: int) -> int:
    """
    Parse integer environment variable, stripping comments and whitespace.

    Handles cases like:
    - "30  # seconds" -> 30
    - "30" -> 30
    - None -> default
    """
    value = os.environ.get(key)
    if not value:
        return default

    if "#" in value:
        value = value.split("#")[0]

    value = value.strip()

    if not value:
        return default

    try:
        return int(value)
    except ValueError:
        return default


def _parse_float_env(key: str, default: float) -> float:
    value = os.environ.get(key)
    if not value:
        return default
    value = value.split("#")[0].strip()
    try:
        return float(value)
    except ValueError:
        return default


@dataclass
class AppConfig:
    """Application configuration."""

    app_env: str = PRODUCTION
    public_base_url: str = ""

    # Twilio (telephony gateway + outbound SMS)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # OpenAI-compatible model endpoints (transcription + generation chain)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    openai_transcription_model: str = "whisper-1"

    # Job queue
    job_max_attempts: int = 3
    retry_backoff_seconds: float = 0.0
    stage_timeout_seconds: float = 30.0

    # Call flow
    call_session_ttl_seconds: int = 900
    gather_timeout_seconds: int = 10
    recording_max_seconds: int = 30
    pin_rate_limit_attempts: int = 5
    pin_rate_limit_window_seconds: int = 900

    # Audio validation
    audio_min_bytes: int = 1000
    audio_max_bytes: int = 10 * 1024 * 1024

    # Storage
    uploads_dir: str = "./uploads"
    generated_dir: str = "./generated"
    download_base_url: str = "http://localhost:8000/downloads"
    user_directory_file: Optional[str] = None

    # Admin API
    admin_api_token: Optional[str] = None

    log_level: str = "INFO"

    @property
    def is_development(self) -> bool:
        """Trusted development mode: webhook signatures are not enforced."""
        return self.app_env == DEVELOPMENT

    @property
    def sms_enabled(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token and self.twilio_phone_number)

    def validate(self) -> None:
        """Raise ValueError when the configuration cannot serve production traffic."""
        if self.app_env not in (DEVELOPMENT, PRODUCTION):
            raise ValueError(f"APP_ENV must be '{DEVELOPMENT}' or '{PRODUCTION}'")
        if not self.is_development and not self.twilio_auth_token:
            raise ValueError("TWILIO_AUTH_TOKEN is required outside development mode")
        if self.job_max_attempts < 1:
            raise ValueError("JOB_MAX_ATTEMPTS must be at least 1")

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load configuration from environment variables."""
        _load_env_files()
        return cls(
            app_env=os.environ.get("APP_ENV", PRODUCTION).lower(),
            public_base_url=os.environ.get("PUBLIC_BASE_URL", "").rstrip("/"),
            twilio_account_sid=os.environ.get("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=os.environ.get("TWILIO_AUTH_TOKEN", ""),
            twilio_phone_number=os.environ.get("TWILIO_PHONE_NUMBER", ""),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            openai_base_url=os.environ.get("OPENAI_BASE_URL", "https://api.openai.com/v1").rstrip("/"),
            openai_model=os.environ.get("OPENAI_MODEL", "gpt-4o-mini"),
            openai_transcription_model=os.environ.get("OPENAI_TRANSCRIPTION_MODEL", "whisper-1"),
            job_max_attempts=_parse_int_env("JOB_MAX_ATTEMPTS", default=3),
            retry_backoff_seconds=_parse_float_env("RETRY_BACKOFF_SECONDS", default=0.0),
            stage_timeout_seconds=_parse_float_env("STAGE_TIMEOUT_SECONDS", default=30.0),
            call_session_ttl_seconds=_parse_int_env("CALL_SESSION_TTL_SECONDS", default=900),
            gather_timeout_seconds=_parse_int_env("GATHER_TIMEOUT_SECONDS", default=10),
            recording_max_seconds=_parse_int_env("RECORDING_MAX_SECONDS", default=30),
            pin_rate_limit_attempts=_parse_int_env("PIN_RATE_LIMIT_ATTEMPTS", default=5),
            pin_rate_limit_window_seconds=_parse_int_env("PIN_RATE_LIMIT_WINDOW_SECONDS", default=900),
            audio_min_bytes=_parse_int_env("AUDIO_MIN_BYTES", default=1000),
            audio_max_bytes=_parse_int_env("AUDIO_MAX_BYTES", default=10 * 1024 * 1024),
            uploads_dir=os.environ.get("UPLOADS_DIR", "./uploads"),
            generated_dir=os.environ.get("GENERATED_DIR", "./generated"),
            download_base_url=os.environ.get("DOWNLOAD_BASE_URL", "http://localhost:8000/downloads").rstrip("/"),
            user_directory_file=os.environ.get("USER_DIRECTORY_FILE") or None,
            admin_api_token=os.environ.get("ADMIN_API_TOKEN") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )


def get_config() -> AppConfig:
    """Get or create global config instance."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


# Global config instance (lazy loaded)
_config: Optional[AppConfig] = None
