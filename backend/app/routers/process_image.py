"""
Direct image upload endpoint.

Runs the same extraction and formatting as the webhook on an uploaded file and
returns the result as JSON instead of sending it to a chat. Uploads have a
smaller size ceiling than media downloaded from the messaging provider.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from app.config import Settings
from app.dependencies import get_extractor, get_settings
from app.errors import ExtractionProviderError, ExtractionTimeout
from app.services import replies
from app.services.extractor import TextExtractor
from app.services.formatter import format_for_channel
from app.services.media_fetcher import base_content_type

logger = logging.getLogger(__name__)

router = APIRouter()

UPLOAD_IMAGE_TYPES = frozenset({"image/jpeg", "image/png", "image/webp"})


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("")
async def process_image(
    request: Request,
    extractor: TextExtractor = Depends(get_extractor),
    settings: Settings = Depends(get_settings),
):
    """
    Extract text from an uploaded image (multipart field "image").

    Returns the cleaned text and the chunks a chat reply would be split into.
    """
    request_type = request.headers.get("content-type", "")
    if "multipart/form-data" not in request_type:
        logger.error(f"Invalid content type: {request_type!r}")
        return _error(400, "Invalid content type")

    form = await request.form()
    image = form.get("image")
    if not isinstance(image, UploadFile):
        logger.error("No image file received")
        return _error(400, "No image file received")

    mime = base_content_type(image.content_type)
    if mime not in UPLOAD_IMAGE_TYPES:
        logger.error(f"Invalid file type: {image.content_type!r}")
        return _error(400, "Invalid file type")

    content = await image.read(settings.upload_max_bytes + 1)
    if len(content) > settings.upload_max_bytes:
        return _error(413, "File too large")
    if not content:
        return _error(400, "Empty file")

    logger.info(
        f"Received image: name={image.filename!r}, "
        f"size={len(content) / 1024 / 1024:.2f}MB, type={mime}"
    )

    try:
        result = await asyncio.wait_for(
            extractor.extract_text(
                content, mime, timeout=settings.pipeline_deadline_seconds
            ),
            timeout=settings.request_timeout_seconds,
        )
    except (ExtractionTimeout, asyncio.TimeoutError):
        return _error(504, "Image processing timed out")
    except ExtractionProviderError as exc:
        logger.error(f"Processing error: {exc}")
        return _error(502, "Image processing failed")

    text = result.text if result.succeeded else replies.NO_TEXT_EXTRACTED
    chunks = format_for_channel(text, settings.max_chunk_length)

    logger.info("Image processing completed successfully")
    return {
        "success": True,
        "text_found": result.succeeded,
        "text": text,
        "chunks": [chunk.text for chunk in chunks],
    }
