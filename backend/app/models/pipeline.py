"""
Pydantic models for the webhook pipeline.

Models:
  RateDecision      - admission result for one sender on one request
  FetchedMedia      - image bytes plus verified content type
  ExtractionResult  - text returned by the vision model, or why there is none
  MessageChunk      - one bounded-length piece of a reply
  ReplyPlan         - the reply decided for one request, before it is sent
  DeliveryOutcome   - per-chunk send result
  WebhookOutcome    - summary of how one request was handled
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field


class PipelineState(str, Enum):
    RECEIVED = "received"
    ADMITTED = "admitted"
    MEDIA_RESOLVED = "media_resolved"
    EXTRACTED = "extracted"
    FORMATTED = "formatted"
    DELIVERED = "delivered"
    ERRORED = "errored"


class RateDecision(BaseModel):
    """Admission decision. Never persisted here; the counter store owns state."""
    allowed: bool
    reset_at: datetime
    limit: int
    remaining: int = 0


class FetchedMedia(BaseModel):
    """Image downloaded for a single request, discarded after extraction."""
    content: bytes = Field(repr=False)
    content_type: str

    @computed_field
    @property
    def size_bytes(self) -> int:
        return len(self.content)


class ExtractionFailure(str, Enum):
    EMPTY = "empty"
    PROVIDER_ERROR = "provider_error"


class ExtractionResult(BaseModel):
    """
    Output of one extraction call.

    Exactly one of text / failure_reason is set.
    """
    text: Optional[str] = None
    failure_reason: Optional[ExtractionFailure] = None
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def succeeded(self) -> bool:
        return self.failure_reason is None and bool(self.text)


class MessageChunk(BaseModel):
    """One piece of a reply. index is 1-based; total is the sequence length."""
    index: int
    total: int
    text: str


class ReplyPlan(BaseModel):
    """
    What to send and how the request ended up there.

    state is the terminal state once the chunks are delivered.
    """
    state: PipelineState
    reply_kind: str
    chunks: list[MessageChunk]
    error_state: Optional[PipelineState] = None


class DeliveryOutcome(BaseModel):
    index: int
    success: bool
    receipt_id: Optional[str] = None
    error: Optional[str] = None


class WebhookOutcome(BaseModel):
    """How the controller finished one request (for logs and tests)."""
    state: PipelineState
    reply_kind: str
    error_state: Optional[PipelineState] = None   # last state reached before Errored
    deliveries: list[DeliveryOutcome] = []
