"""
Canned user-facing replies.

Every soft pipeline error maps to exactly one of these texts. Keeping them in
one place lets the controller and the tests agree on wording.
"""

from datetime import datetime, timezone

from app.errors import (
    AdmissionDenied,
    ExtractionProviderError,
    ExtractionTimeout,
    InvalidMediaType,
    MediaFetchFailed,
    MediaTooLarge,
    NoMedia,
    PipelineError,
)

NO_MEDIA = "Hello! Please send an image to digitize its content."
INVALID_IMAGE = "Please send a valid image file (JPEG, PNG, GIF, or WEBP)."
IMAGE_TOO_LARGE = "That image is too large to process. Please send a smaller image."
PROCESSING_ERROR = "Sorry, there was an error processing your image. Please try again."
TOOK_TOO_LONG = "Sorry, processing your image took too long. Please try again."
EXTRACTION_UNAVAILABLE = (
    "Sorry, the text reader is unavailable right now. Please try again in a few minutes."
)
NO_TEXT_EXTRACTED = "No text could be extracted from the image."


def format_reset_time(reset_at: datetime) -> str:
    """Render a reset timestamp as HH:MM UTC."""
    if reset_at.tzinfo is None:
        reset_at = reset_at.replace(tzinfo=timezone.utc)
    return reset_at.astimezone(timezone.utc).strftime("%H:%M UTC")


def rate_limited(reset_at: datetime) -> str:
    return (
        "You've reached the limit of requests. "
        f"Please try again after {format_reset_time(reset_at)}."
    )


# Most specific first: InvalidMediaType and MediaTooLarge subclass MediaFetchFailed
_REPLIES_BY_ERROR = (
    (NoMedia, "no_media", NO_MEDIA),
    (InvalidMediaType, "invalid_media", INVALID_IMAGE),
    (MediaTooLarge, "media_too_large", IMAGE_TOO_LARGE),
    (MediaFetchFailed, "media_fetch_failed", PROCESSING_ERROR),
    (ExtractionTimeout, "timeout", TOOK_TOO_LONG),
    (ExtractionProviderError, "provider_unavailable", EXTRACTION_UNAVAILABLE),
)


def reply_for_error(error: PipelineError) -> tuple[str, str]:
    """Return (reply_kind, reply_text) for a soft error."""
    if isinstance(error, AdmissionDenied):
        return "rate_limited", rate_limited(error.decision.reset_at)
    for error_type, kind, reply in _REPLIES_BY_ERROR:
        if isinstance(error, error_type):
            return kind, reply
    return "processing_error", PROCESSING_ERROR
