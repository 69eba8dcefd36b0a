"""
Application configuration.

Settings are read from the environment (a .env file is loaded first when
present) and validated once. Collaborators receive the values they need
explicitly; nothing outside this module reads os.environ directly.
"""

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, model_validator

load_dotenv()

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

# Media downloaded from the provider may be larger than a direct upload.
DEFAULT_MEDIA_MAX_BYTES = 20 * 1024 * 1024
DEFAULT_UPLOAD_MAX_BYTES = 4 * 1024 * 1024

_REQUIRED = (
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_PHONE_NUMBER",
    "ANTHROPIC_API_KEY",
    "RATE_LIMIT_QUOTA",
)


class Settings(BaseModel):
    """Typed view of the service configuration."""

    model_config = {"frozen": True}

    twilio_account_sid: str
    twilio_auth_token: str
    twilio_phone_number: str
    anthropic_api_key: str
    anthropic_model: str = DEFAULT_MODEL
    extraction_max_tokens: int = 500

    redis_url: str = "redis://localhost:6379/0"
    rate_limit_quota: int
    rate_limit_window_seconds: int = 3600

    media_max_bytes: int = DEFAULT_MEDIA_MAX_BYTES
    upload_max_bytes: int = DEFAULT_UPLOAD_MAX_BYTES

    max_chunk_length: int = 1500
    chunk_pacing_seconds: float = 1.0

    pipeline_deadline_seconds: float = 8.0
    request_timeout_seconds: float = 10.0

    environment: str = "development"

    @model_validator(mode="after")
    def _check_limits(self) -> "Settings":
        if self.rate_limit_quota < 1:
            raise ValueError("RATE_LIMIT_QUOTA must be at least 1")
        if self.upload_max_bytes >= self.media_max_bytes:
            raise ValueError("UPLOAD_MAX_BYTES must be smaller than MEDIA_MAX_BYTES")
        if self.request_timeout_seconds < self.pipeline_deadline_seconds:
            raise ValueError(
                "REQUEST_TIMEOUT_SECONDS must not be shorter than PIPELINE_DEADLINE_SECONDS"
            )
        return self


def _optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def load_settings() -> Settings:
    """
    Build Settings from environment variables.

    Raises:
        ValueError: if any required variable is missing, or a value is invalid.
    """
    missing = [name for name in _REQUIRED if not _optional(name)]
    if missing:
        raise ValueError(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    overrides = {
        "anthropic_model": _optional("ANTHROPIC_MODEL"),
        "extraction_max_tokens": _optional("EXTRACTION_MAX_TOKENS"),
        "redis_url": _optional("REDIS_URL"),
        "rate_limit_window_seconds": _optional("RATE_LIMIT_WINDOW_SECONDS"),
        "media_max_bytes": _optional("MEDIA_MAX_BYTES"),
        "upload_max_bytes": _optional("UPLOAD_MAX_BYTES"),
        "max_chunk_length": _optional("MAX_CHUNK_LENGTH"),
        "chunk_pacing_seconds": _optional("CHUNK_PACING_SECONDS"),
        "pipeline_deadline_seconds": _optional("PIPELINE_DEADLINE_SECONDS"),
        "request_timeout_seconds": _optional("REQUEST_TIMEOUT_SECONDS"),
        "environment": _optional("ENVIRONMENT"),
    }

    return Settings(
        twilio_account_sid=os.environ["TWILIO_ACCOUNT_SID"].strip(),
        twilio_auth_token=os.environ["TWILIO_AUTH_TOKEN"].strip(),
        twilio_phone_number=os.environ["TWILIO_PHONE_NUMBER"].strip(),
        anthropic_api_key=os.environ["ANTHROPIC_API_KEY"].strip(),
        rate_limit_quota=os.environ["RATE_LIMIT_QUOTA"].strip(),
        **{key: value for key, value in overrides.items() if value is not None},
    )
