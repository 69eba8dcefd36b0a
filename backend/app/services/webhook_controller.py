"""
Webhook controller: runs one inbound message through the pipeline.

States:
  received -> admitted -> media_resolved -> extracted -> formatted -> delivered
with errored reachable from any step after admission.

Handling is split in two phases. prepare() decides the reply: admission, then
a race between the fetch/extract/format stages and the pipeline deadline.
send() delivers the decided reply. Callers may bound prepare() with a hard
timeout but must let send() run to completion, so a reply sequence is only
ever cut short by a failed send.

A pipeline that loses the deadline race keeps running (provider calls are not
aborted mid-flight) but its result is discarded, and because delivery happens
only after the race is decided, a late result can never reach the sender.

Every soft error becomes a reply to the sender. Hard errors (delivery failure,
unexpected faults) propagate to the route.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from app.errors import (
    AdmissionDenied,
    DeliveryFailed,
    ExtractionTimeout,
    InfrastructureFault,
    NoMedia,
    PipelineError,
)
from app.models.inbound_message import InboundMessage
from app.models.pipeline import (
    ExtractionFailure,
    MessageChunk,
    PipelineState,
    ReplyPlan,
    WebhookOutcome,
)
from app.services import replies
from app.services.dispatcher import ReplyDispatcher, mask_sender
from app.services.extractor import TextExtractor
from app.services.formatter import DEFAULT_MAX_CHUNK_LENGTH, format_for_channel
from app.services.media_fetcher import MediaFetcher
from app.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_DEADLINE_SECONDS = 8.0


@dataclass
class _Progress:
    """Furthest state the raced pipeline reached. One per request."""
    state: PipelineState = PipelineState.ADMITTED


def _discard_late_result(task: asyncio.Task) -> None:
    """Consume the outcome of a pipeline that lost the deadline race."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.info(f"Discarded late pipeline failure: {exc!r}")
    else:
        logger.info("Discarded late pipeline result")


class WebhookController:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        media_fetcher: MediaFetcher,
        extractor: TextExtractor,
        dispatcher: ReplyDispatcher,
        max_chunk_length: int = DEFAULT_MAX_CHUNK_LENGTH,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rate_limiter = rate_limiter
        self._media_fetcher = media_fetcher
        self._extractor = extractor
        self._dispatcher = dispatcher
        self._max_chunk_length = max_chunk_length
        self._deadline_seconds = deadline_seconds
        self._clock = clock

    def now(self) -> float:
        """Current time on the clock deadlines are measured with."""
        return self._clock()

    def _remaining(self, started: float) -> float:
        return self._deadline_seconds - (self._clock() - started)

    async def handle(
        self,
        message: InboundMessage,
        started: Optional[float] = None,
    ) -> WebhookOutcome:
        """Prepare the reply for one inbound message and send it."""
        plan = await self.prepare(message, started=started)
        return await self.send(message, plan)

    async def prepare(
        self,
        message: InboundMessage,
        started: Optional[float] = None,
    ) -> ReplyPlan:
        """
        Decide the reply for one inbound message without sending it.

        started is the request entry time on this controller's clock; the
        pipeline deadline is measured from it.

        Raises:
            InfrastructureFault: an unexpected error outside the modelled
                pipeline (a best-effort reply is attempted first).
        """
        if started is None:
            started = self._clock()

        sender = mask_sender(message.sender_id)
        logger.info(f"Received message from {sender}, media={message.has_media}")

        # Checked before admission so plain text does not use up quota
        if not message.has_media:
            return self._plan_informational(NoMedia("Message has no media attachment"))

        decision = await self._rate_limiter.check_admission(message.sender_id)
        if not decision.allowed:
            return self._plan_informational(AdmissionDenied(decision))

        progress = _Progress()
        task = asyncio.create_task(self._run_pipeline(message, progress, started))
        try:
            done, _ = await asyncio.wait(
                {task}, timeout=max(self._remaining(started), 0)
            )
        except asyncio.CancelledError:
            task.add_done_callback(_discard_late_result)
            raise

        if task not in done:
            task.add_done_callback(_discard_late_result)
            logger.warning(
                f"Deadline of {self._deadline_seconds}s exceeded for {sender} "
                f"in state {progress.state.value}"
            )
            return self._plan_error(
                ExtractionTimeout("Request deadline exceeded"), progress.state
            )

        try:
            chunks, reply_kind = task.result()
        except PipelineError as exc:
            if not exc.soft:
                raise
            logger.warning(f"Pipeline failed for {sender} in state {progress.state.value}: {exc}")
            return self._plan_error(exc, progress.state)
        except Exception as exc:
            logger.error(f"Unexpected pipeline error for {sender}: {exc}", exc_info=True)
            await self._best_effort_reply(message, replies.PROCESSING_ERROR)
            raise InfrastructureFault(f"Unexpected pipeline error: {exc}") from exc

        return ReplyPlan(
            state=PipelineState.DELIVERED,
            reply_kind=reply_kind,
            chunks=chunks,
        )

    async def send(self, message: InboundMessage, plan: ReplyPlan) -> WebhookOutcome:
        """
        Deliver a prepared reply.

        Raises:
            DeliveryFailed: the reply channel rejected a send.
        """
        deliveries = await self._dispatcher.deliver(message.sender_id, plan.chunks)
        return WebhookOutcome(
            state=plan.state,
            reply_kind=plan.reply_kind,
            error_state=plan.error_state,
            deliveries=deliveries,
        )

    async def _run_pipeline(
        self,
        message: InboundMessage,
        progress: _Progress,
        started: float,
    ) -> tuple[list[MessageChunk], str]:
        """Fetch, extract and format. Delivery is left to the caller."""
        media = await self._media_fetcher.fetch_media(message.media)
        progress.state = PipelineState.MEDIA_RESOLVED

        result = await self._extractor.extract_text(
            media.content,
            media.content_type,
            timeout=self._remaining(started),
        )
        progress.state = PipelineState.EXTRACTED

        if result.succeeded:
            text, reply_kind = result.text, "extracted_text"
        else:
            if result.failure_reason == ExtractionFailure.PROVIDER_ERROR:
                logger.warning("Extraction provider error; replying with no-text sentinel")
            text, reply_kind = replies.NO_TEXT_EXTRACTED, "no_text"

        chunks = format_for_channel(text, self._max_chunk_length)
        progress.state = PipelineState.FORMATTED
        logger.info(f"Formatted reply into {len(chunks)} chunk(s)")
        return chunks, reply_kind

    def _plan_informational(self, reason: PipelineError) -> ReplyPlan:
        """No-media and over-quota replies end in Delivered, not Errored."""
        reply_kind, text = replies.reply_for_error(reason)
        return ReplyPlan(
            state=PipelineState.DELIVERED,
            reply_kind=reply_kind,
            chunks=format_for_channel(text, self._max_chunk_length),
        )

    def _plan_error(self, error: PipelineError, reached: PipelineState) -> ReplyPlan:
        reply_kind, text = replies.reply_for_error(error)
        return ReplyPlan(
            state=PipelineState.ERRORED,
            reply_kind=reply_kind,
            error_state=reached,
            chunks=format_for_channel(text, self._max_chunk_length),
        )

    async def _best_effort_reply(self, message: InboundMessage, text: str) -> None:
        try:
            await self._dispatcher.deliver(
                message.sender_id, format_for_channel(text, self._max_chunk_length)
            )
        except DeliveryFailed as exc:
            logger.error(f"Best-effort reply failed: {exc}")
