"""
WhatsApp webhook router.

Receives the provider's form-encoded message webhook and hands it to the
webhook controller.

The response is {"success": true} with status 200 whenever the pipeline ran,
including every case where the user got an error reply, so the provider does
not retry. Only hard failures change the status:

  500  reply channel failed, malformed request, or unexpected fault
  504  the hard request deadline passed before the reply was decided

The hard deadline bounds only the stages before delivery. Once the reply is
decided every part of it is sent, however long the paced sends take.

Endpoints:
  GET  /api/webhook   - liveness string
  POST /api/webhook   - provider webhook
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from app.config import Settings
from app.dependencies import get_controller, get_settings
from app.errors import DeliveryFailed, InfrastructureFault
from app.services.inbound_message_adapter import normalize_twilio_form
from app.services.webhook_controller import WebhookController

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.get("", response_class=PlainTextResponse)
async def webhook_status() -> str:
    return "Webhook endpoint is active"


@router.post("")
async def receive_webhook(
    request: Request,
    controller: WebhookController = Depends(get_controller),
    settings: Settings = Depends(get_settings),
):
    """
    Provider webhook receiver.

    The pipeline's own deadline (a timeout reply, still 200) is shorter than
    the hard request deadline enforced here (504), which covers preparing
    the reply but not sending it.
    """
    started = controller.now()
    logger.info("Received webhook request")

    try:
        form = await request.form()
        message = normalize_twilio_form(form)
    except InfrastructureFault as exc:
        logger.error(f"Malformed webhook request: {exc}")
        return _error(500, "Malformed webhook request")

    remaining = settings.request_timeout_seconds - (controller.now() - started)
    try:
        plan = await asyncio.wait_for(
            controller.prepare(message, started=started),
            timeout=max(remaining, 0),
        )
    except asyncio.TimeoutError:
        logger.error(
            f"Request deadline of {settings.request_timeout_seconds}s exceeded"
        )
        return _error(504, "Request timed out")
    except InfrastructureFault as exc:
        logger.error(f"Error processing request: {exc}")
        return _error(500, "Internal server error")
    except Exception as exc:
        logger.error(f"Error processing request: {exc}", exc_info=True)
        return _error(500, "Internal server error")

    # Not bounded by the request deadline: a reply sequence is never cut short
    try:
        outcome = await controller.send(message, plan)
    except DeliveryFailed as exc:
        logger.error(f"Error sending message: {exc}")
        return _error(500, "Failed to send message")
    except Exception as exc:
        logger.error(f"Error sending message: {exc}", exc_info=True)
        return _error(500, "Internal server error")

    logger.info(
        f"Webhook handled: state={outcome.state.value}, reply={outcome.reply_kind}, "
        f"messages={len(outcome.deliveries)}"
    )
    return {"success": True}
