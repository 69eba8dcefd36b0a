"""
Dependency wiring.

Provider clients are constructed here, once per process, and handed to the
pipeline components explicitly. Routes receive them through FastAPI's
Depends, so tests can swap any of them with app.dependency_overrides.
"""

import logging
from functools import lru_cache

import httpx

from app.config import Settings, load_settings
from app.services.dispatcher import ReplyDispatcher, TwilioReplySender
from app.services.extractor import TextExtractor
from app.services.media_fetcher import MediaFetcher
from app.services.rate_limiter import RateLimiter, RedisCounterStore
from app.services.webhook_controller import WebhookController

logger = logging.getLogger(__name__)

# Per-call network timeouts; the request deadline is enforced separately
HTTP_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


@lru_cache
def get_settings() -> Settings:
    return load_settings()


@lru_cache
def get_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT)


@lru_cache
def get_counter_store() -> RedisCounterStore:
    return RedisCounterStore.from_url(get_settings().redis_url)


@lru_cache
def get_extractor() -> TextExtractor:
    settings = get_settings()
    return TextExtractor.from_api_key(
        settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_tokens=settings.extraction_max_tokens,
    )


def build_controller(
    settings: Settings,
    http_client: httpx.AsyncClient,
    counter_store,
    extractor: TextExtractor,
) -> WebhookController:
    """Assemble the webhook pipeline from explicit collaborators."""
    rate_limiter = RateLimiter(
        counter_store,
        quota=settings.rate_limit_quota,
        window_seconds=settings.rate_limit_window_seconds,
    )
    media_fetcher = MediaFetcher(
        http_client,
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        max_bytes=settings.media_max_bytes,
    )
    sender = TwilioReplySender(
        http_client,
        account_sid=settings.twilio_account_sid,
        auth_token=settings.twilio_auth_token,
        from_number=settings.twilio_phone_number,
    )
    dispatcher = ReplyDispatcher(sender, pacing_seconds=settings.chunk_pacing_seconds)
    return WebhookController(
        rate_limiter=rate_limiter,
        media_fetcher=media_fetcher,
        extractor=extractor,
        dispatcher=dispatcher,
        max_chunk_length=settings.max_chunk_length,
        deadline_seconds=settings.pipeline_deadline_seconds,
    )


@lru_cache
def get_controller() -> WebhookController:
    return build_controller(
        get_settings(),
        get_http_client(),
        get_counter_store(),
        get_extractor(),
    )


async def close_clients() -> None:
    """Close any provider clients that were created."""
    if get_http_client.cache_info().currsize:
        await get_http_client().aclose()
        get_http_client.cache_clear()
    if get_counter_store.cache_info().currsize:
        try:
            await get_counter_store().close()
        except Exception as exc:
            logger.warning(f"Failed to close counter store: {exc}")
        get_counter_store.cache_clear()
    get_controller.cache_clear()
