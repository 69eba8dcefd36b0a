"""
Reply dispatch back to the sender over WhatsApp.

Chunks go out strictly in order, one at a time, with a pause between
consecutive sends so the provider does not reorder or throttle them. The first
failed send stops the sequence; chunks already sent stay sent (at most once
per chunk, no retry, no retraction).
"""

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from app.errors import DeliveryFailed, ReplySendError
from app.models.pipeline import DeliveryOutcome, MessageChunk
from app.services.media_fetcher import TWILIO_API_BASE

logger = logging.getLogger(__name__)

DEFAULT_PACING_SECONDS = 1.0
WHATSAPP_PREFIX = "whatsapp:"


def mask_sender(sender_id: str) -> str:
    """Keep only the last four characters of an address for logging."""
    address = sender_id.removeprefix(WHATSAPP_PREFIX)
    if len(address) <= 4:
        return "****"
    return f"***{address[-4:]}"


class ReplySender:
    """Sends one message body; returns the provider receipt id."""

    async def send(self, to: str, body: str) -> str:
        raise NotImplementedError


class TwilioReplySender(ReplySender):
    """Twilio Messages API over httpx."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_base: str = TWILIO_API_BASE,
    ):
        self._http = http_client
        self._auth = httpx.BasicAuth(account_sid, auth_token)
        self._endpoint = (
            f"{api_base.rstrip('/')}/2010-04-01/Accounts/{account_sid}/Messages.json"
        )
        if not from_number.startswith(WHATSAPP_PREFIX):
            from_number = f"{WHATSAPP_PREFIX}{from_number}"
        self._from = from_number

    async def send(self, to: str, body: str) -> str:
        try:
            response = await self._http.post(
                self._endpoint,
                data={"From": self._from, "To": to, "Body": body},
                auth=self._auth,
            )
        except httpx.HTTPError as exc:
            raise ReplySendError(f"HTTP request failed: {exc}") from exc

        if response.status_code not in (200, 201):
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            raise ReplySendError(
                f"Messages API returned {response.status_code}",
                status_code=response.status_code,
                payload=payload,
            )

        try:
            return response.json().get("sid", "")
        except ValueError as exc:
            raise ReplySendError(
                f"Messages API returned a non-JSON {response.status_code} body",
                status_code=response.status_code,
                payload=response.text,
            ) from exc


class ReplyDispatcher:
    """Delivers a chunk sequence in index order with pacing."""

    def __init__(
        self,
        sender: ReplySender,
        pacing_seconds: float = DEFAULT_PACING_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._sender = sender
        self._pacing_seconds = pacing_seconds
        self._sleep = sleep

    async def deliver(
        self, sender_id: str, chunks: list[MessageChunk]
    ) -> list[DeliveryOutcome]:
        """
        Send every chunk, in order.

        Raises:
            DeliveryFailed: on the first failed send, naming its index and
                carrying the outcomes recorded so far.
        """
        ordered = sorted(chunks, key=lambda c: c.index)
        total = len(ordered)
        outcomes: list[DeliveryOutcome] = []

        logger.info(f"Sending {total} message(s) to {mask_sender(sender_id)}")

        for position, chunk in enumerate(ordered):
            if position > 0 and self._pacing_seconds > 0:
                await self._sleep(self._pacing_seconds)

            logger.debug(f"Sending part {chunk.index}/{total}, length {len(chunk.text)}")
            try:
                receipt_id = await self._sender.send(sender_id, chunk.text)
            except ReplySendError as exc:
                logger.error(
                    f"Send failed at part {chunk.index}/{total}: {exc} "
                    f"(status={exc.status_code}, payload={exc.payload!r})"
                )
                outcomes.append(
                    DeliveryOutcome(index=chunk.index, success=False, error=str(exc))
                )
                raise DeliveryFailed(chunk.index, total, exc, outcomes) from exc

            outcomes.append(
                DeliveryOutcome(index=chunk.index, success=True, receipt_id=receipt_id)
            )

        return outcomes
