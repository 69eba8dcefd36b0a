"""
Error taxonomy for the webhook pipeline.

Soft errors are turned into a user-facing reply at the point where they are
caught and never reach the webhook's HTTP response. Hard errors propagate to
the route and produce a non-200 response.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for every modelled pipeline failure."""

    soft: bool = True


class AdmissionDenied(PipelineError):
    def __init__(self, decision):
        super().__init__(f"Sender over quota until {decision.reset_at.isoformat()}")
        self.decision = decision


class NoMedia(PipelineError):
    pass


class MediaFetchFailed(PipelineError):
    """Either round trip of the media fetch failed."""


class InvalidMediaType(MediaFetchFailed):
    def __init__(self, content_type: Optional[str]):
        super().__init__(f"Unsupported media content type: {content_type!r}")
        self.content_type = content_type


class MediaTooLarge(MediaFetchFailed):
    def __init__(self, size_bytes: int, max_bytes: int):
        super().__init__(f"Media is {size_bytes} bytes, ceiling is {max_bytes}")
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes


class ExtractionTimeout(PipelineError):
    pass


class ExtractionProviderError(PipelineError):
    """The inference provider could not be reached."""


class ReplySendError(Exception):
    """A single reply-send call was rejected or could not be made."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class DeliveryFailed(PipelineError):
    soft = False

    def __init__(self, index: int, total: int, cause: ReplySendError, deliveries=None):
        super().__init__(f"Delivery failed at chunk {index}/{total}: {cause}")
        self.index = index
        self.total = total
        self.cause = cause
        self.deliveries = deliveries or []


class InfrastructureFault(PipelineError):
    soft = False
