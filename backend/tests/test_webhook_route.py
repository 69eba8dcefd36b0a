"""
HTTP-level tests for the WhatsApp webhook, the image upload endpoint and the
health checks.

The controller, extractor and counter store are replaced through
app.dependency_overrides / patch. No provider is contacted.

Coverage:
  - GET /api/webhook liveness string
  - POST /api/webhook: 200 for handled requests (including error replies),
    500 for malformed requests and delivery failures, 504 when preparing the
    reply outlasts the hard deadline, and a paced multi-part reply that runs
    past that deadline still sent in full
  - POST /api/process-image: validation, size ceiling, provider failures
  - /, /health, /health/redis
"""

import asyncio
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.dependencies import get_controller, get_extractor, get_settings
from app.errors import (
    DeliveryFailed,
    ExtractionProviderError,
    ExtractionTimeout,
    InfrastructureFault,
    ReplySendError,
)
from app.main import app
from app.models.pipeline import (
    ExtractionFailure,
    ExtractionResult,
    FetchedMedia,
    MessageChunk,
    PipelineState,
    RateDecision,
    ReplyPlan,
    WebhookOutcome,
)
from app.services import replies
from app.services.dispatcher import ReplyDispatcher, ReplySender
from app.services.webhook_controller import WebhookController


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _settings(**overrides) -> Settings:
    values = dict(
        twilio_account_sid="AC123",
        twilio_auth_token="secret",
        twilio_phone_number="+15550000000",
        anthropic_api_key="sk-test",
        rate_limit_quota=5,
    )
    values.update(overrides)
    return Settings(**values)


def _controller(prepare: AsyncMock | None = None, send: AsyncMock | None = None) -> MagicMock:
    controller = MagicMock()
    controller.now = time.monotonic
    controller.prepare = prepare or AsyncMock(return_value=PLAN)
    controller.send = send or AsyncMock(return_value=DELIVERED)
    return controller


class RecordingSender(ReplySender):
    def __init__(self):
        self.bodies: list[str] = []

    async def send(self, to, body):
        self.bodies.append(body)
        return f"SM{len(self.bodies)}"


WEBHOOK_FORM = {
    "From": "whatsapp:+15551234567",
    "To": "whatsapp:+15550000000",
    "MessageSid": "MM1",
    "Body": "",
    "NumMedia": "1",
    "MediaUrl0": "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages/MM1/Media/ME1",
    "MediaContentType0": "image/jpeg",
}

PLAN = ReplyPlan(
    state=PipelineState.DELIVERED,
    reply_kind="extracted_text",
    chunks=[MessageChunk(index=1, total=1, text="Hello from the page.")],
)
DELIVERED = WebhookOutcome(state=PipelineState.DELIVERED, reply_kind="extracted_text")

IMAGE = FetchedMedia(content=b"\xff\xd8\xff" + b"\x00" * 16, content_type="image/jpeg")
LONG_TEXT = "\n\n".join([("word " * 88).strip() + "."] * 9)


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use(settings: Settings | None = None, controller=None, extractor=None):
    app.dependency_overrides[get_settings] = lambda: settings or _settings()
    if controller is not None:
        app.dependency_overrides[get_controller] = lambda: controller
    if extractor is not None:
        app.dependency_overrides[get_extractor] = lambda: extractor


# ===========================================================================
# /api/webhook
# ===========================================================================

class TestWebhookRoute:

    def test_get_reports_liveness(self, client):
        response = client.get("/api/webhook")
        assert response.status_code == 200
        assert response.text == "Webhook endpoint is active"

    def test_handled_request_returns_success(self, client):
        controller = _controller()
        _use(controller=controller)

        response = client.post("/api/webhook", data=WEBHOOK_FORM)

        assert response.status_code == 200
        assert response.json() == {"success": True}
        message = controller.prepare.await_args.args[0]
        assert message.sender_id == "whatsapp:+15551234567"
        assert message.media.media_sid == "ME1"
        assert "started" in controller.prepare.await_args.kwargs
        controller.send.assert_awaited_once_with(message, PLAN)

    def test_error_reply_still_returns_200(self, client):
        outcome = WebhookOutcome(
            state=PipelineState.ERRORED,
            reply_kind="invalid_media",
            error_state=PipelineState.ADMITTED,
        )
        _use(controller=_controller(send=AsyncMock(return_value=outcome)))

        response = client.post("/api/webhook", data=WEBHOOK_FORM)
        assert response.status_code == 200

    def test_missing_sender_is_malformed(self, client):
        controller = _controller()
        _use(controller=controller)
        form = {k: v for k, v in WEBHOOK_FORM.items() if k != "From"}

        response = client.post("/api/webhook", data=form)

        assert response.status_code == 500
        assert response.json() == {"error": "Malformed webhook request"}
        controller.prepare.assert_not_awaited()
        controller.send.assert_not_awaited()

    def test_delivery_failure_returns_500(self, client):
        error = DeliveryFailed(1, 1, ReplySendError("rejected", status_code=400))
        _use(controller=_controller(send=AsyncMock(side_effect=error)))

        response = client.post("/api/webhook", data=WEBHOOK_FORM)

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to send message"}

    def test_infrastructure_fault_returns_500(self, client):
        error = InfrastructureFault("unexpected")
        controller = _controller(prepare=AsyncMock(side_effect=error))
        _use(controller=controller)

        response = client.post("/api/webhook", data=WEBHOOK_FORM)

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        controller.send.assert_not_awaited()

    def test_counter_store_outage_returns_500(self, client):
        controller = _controller(prepare=AsyncMock(side_effect=ConnectionError("redis down")))
        _use(controller=controller)

        response = client.post("/api/webhook", data=WEBHOOK_FORM)
        assert response.status_code == 500

    def test_hard_deadline_returns_504(self, client):
        async def never_finishes(*args, **kwargs):
            await asyncio.sleep(5)

        controller = _controller(prepare=AsyncMock(side_effect=never_finishes))
        _use(
            settings=_settings(pipeline_deadline_seconds=0.01, request_timeout_seconds=0.05),
            controller=controller,
        )

        response = client.post("/api/webhook", data=WEBHOOK_FORM)

        assert response.status_code == 504
        assert response.json() == {"error": "Request timed out"}
        controller.send.assert_not_awaited()

    def test_slow_send_is_not_cut_off_by_request_deadline(self, client):
        async def slow_send(*args, **kwargs):
            await asyncio.sleep(0.2)
            return DELIVERED

        controller = _controller(send=AsyncMock(side_effect=slow_send))
        _use(
            settings=_settings(pipeline_deadline_seconds=0.05, request_timeout_seconds=0.1),
            controller=controller,
        )

        response = client.post("/api/webhook", data=WEBHOOK_FORM)

        assert response.status_code == 200
        assert response.json() == {"success": True}

    def test_every_part_is_sent_when_pacing_outlasts_request_deadline(self, client):
        sender = RecordingSender()
        extractor = MagicMock()

        async def slow_extract(*args, **kwargs):
            await asyncio.sleep(0.15)
            return ExtractionResult(text=LONG_TEXT)

        extractor.extract_text = AsyncMock(side_effect=slow_extract)
        media_fetcher = MagicMock()
        media_fetcher.fetch_media = AsyncMock(return_value=IMAGE)
        rate_limiter = MagicMock()
        rate_limiter.check_admission = AsyncMock(return_value=RateDecision(
            allowed=True, reset_at=datetime.now(timezone.utc), limit=5, remaining=4,
        ))
        controller = WebhookController(
            rate_limiter=rate_limiter,
            media_fetcher=media_fetcher,
            extractor=extractor,
            dispatcher=ReplyDispatcher(sender, pacing_seconds=0.1),
            max_chunk_length=1500,
            deadline_seconds=0.2,
        )
        _use(
            settings=_settings(pipeline_deadline_seconds=0.2, request_timeout_seconds=0.3),
            controller=controller,
        )

        response = client.post("/api/webhook", data=WEBHOOK_FORM)

        assert response.status_code == 200
        assert len(sender.bodies) == 3
        assert [body.split("\n", 1)[0] for body in sender.bodies] == [
            "Part 1/3", "Part 2/3", "Part 3/3",
        ]



# ===========================================================================
# /api/process-image
# ===========================================================================

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _extractor(**kwargs) -> MagicMock:
    extractor = MagicMock()
    extractor.extract_text = AsyncMock(**kwargs)
    return extractor


class TestProcessImage:

    def test_returns_text_and_chunks(self, client):
        extractor = _extractor(return_value=ExtractionResult(text="**Total:** 12.00"))
        _use(extractor=extractor)

        response = client.post(
            "/api/process-image", files={"image": ("receipt.png", PNG, "image/png")}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["text_found"] is True
        assert body["chunks"] == ["*Total:* 12.00"]
        assert extractor.extract_text.await_args.args == (PNG, "image/png")

    def test_no_text_found_returns_sentinel(self, client):
        _use(extractor=_extractor(
            return_value=ExtractionResult(failure_reason=ExtractionFailure.EMPTY)
        ))

        response = client.post(
            "/api/process-image", files={"image": ("blank.png", PNG, "image/png")}
        )

        assert response.status_code == 200
        assert response.json()["text_found"] is False
        assert response.json()["text"] == replies.NO_TEXT_EXTRACTED

    def test_non_multipart_request_is_rejected(self, client):
        _use(extractor=_extractor())
        response = client.post("/api/process-image", json={"image": "x"})
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid content type"}

    def test_missing_image_field_is_rejected(self, client):
        _use(extractor=_extractor())
        response = client.post(
            "/api/process-image", files={"file": ("receipt.png", PNG, "image/png")}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "No image file received"}

    def test_unsupported_type_is_rejected(self, client):
        extractor = _extractor()
        _use(extractor=extractor)

        response = client.post(
            "/api/process-image", files={"image": ("anim.gif", b"GIF89a", "image/gif")}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid file type"}
        extractor.extract_text.assert_not_awaited()

    def test_file_over_upload_ceiling_is_rejected(self, client):
        _use(settings=_settings(upload_max_bytes=16), extractor=_extractor())
        response = client.post(
            "/api/process-image", files={"image": ("big.png", PNG, "image/png")}
        )
        assert response.status_code == 413
        assert response.json() == {"error": "File too large"}

    def test_empty_file_is_rejected(self, client):
        _use(extractor=_extractor())
        response = client.post(
            "/api/process-image", files={"image": ("empty.png", b"", "image/png")}
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Empty file"}

    def test_extraction_timeout_returns_504(self, client):
        _use(extractor=_extractor(side_effect=ExtractionTimeout("slow")))
        response = client.post(
            "/api/process-image", files={"image": ("r.webp", PNG, "image/webp")}
        )
        assert response.status_code == 504

    def test_provider_unreachable_returns_502(self, client):
        _use(extractor=_extractor(side_effect=ExtractionProviderError("down")))
        response = client.post(
            "/api/process-image", files={"image": ("r.jpg", PNG, "image/jpeg")}
        )
        assert response.status_code == 502
        assert response.json() == {"error": "Image processing failed"}


# ===========================================================================
# Health
# ===========================================================================

class TestHealth:

    def test_root_reports_version(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["message"] == "Textsnap API"

    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_redis_reachable(self, client):
        store = MagicMock()
        store.ping = AsyncMock(return_value=True)
        with patch("app.main.get_counter_store", return_value=store):
            response = client.get("/health/redis")
        assert response.status_code == 200
        assert response.json()["counter_store"] == "reachable"

    def test_redis_unreachable_returns_503(self, client):
        store = MagicMock()
        store.ping = AsyncMock(side_effect=ConnectionError("refused"))
        with patch("app.main.get_counter_store", return_value=store):
            response = client.get("/health/redis")
        assert response.status_code == 503

    def test_redis_not_configured_returns_503(self, client):
        with patch("app.main.get_counter_store", side_effect=ValueError("missing")):
            response = client.get("/health/redis")
        assert response.status_code == 503
