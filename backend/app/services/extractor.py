"""
Text extraction service.
Sends a photographed document to Claude and returns the text it reads.
"""

import base64
import logging
import time
from typing import Optional

import anthropic

from app.config import DEFAULT_MODEL
from app.errors import ExtractionProviderError, ExtractionTimeout
from app.models.pipeline import ExtractionFailure, ExtractionResult

logger = logging.getLogger(__name__)

# Model configuration
MODEL = DEFAULT_MODEL
MAX_TOKENS = 500

EXTRACTION_PROMPT = """\
Please extract and structure all the text content from this image.

Format the response using WhatsApp formatting only:
- *asterisks* for bold text
- _underscores_ for italics
- ~tildes~ for strikethrough

Avoid markdown headers, bullet points, code blocks, tables or any other
special formatting. Separate sections with a blank line. Be concise but
thorough, and do not add commentary about the image itself.
"""


def build_messages(image_bytes: bytes, content_type: str) -> list[dict]:
    """Build the single user turn: the image followed by the instructions."""
    return [
        {
            "role": "user",
            "content": [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": content_type,
                        "data": base64.b64encode(image_bytes).decode("ascii"),
                    },
                },
                {"type": "text", "text": EXTRACTION_PROMPT},
            ],
        }
    ]


def _response_text(response) -> str:
    """Join the text blocks of a Messages API response."""
    parts = [
        block.text
        for block in (response.content or [])
        if getattr(block, "type", "text") == "text" and getattr(block, "text", None)
    ]
    return "\n".join(parts).strip()


class TextExtractor:
    """
    One synchronous vision call per request, bounded by a caller-supplied
    timeout so the deadline can be measured from request entry.
    """

    def __init__(
        self,
        client: anthropic.AsyncAnthropic,
        model: str = MODEL,
        max_tokens: int = MAX_TOKENS,
    ):
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    @classmethod
    def from_api_key(cls, api_key: Optional[str], **kwargs) -> "TextExtractor":
        # Retries would eat into the request deadline
        client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)
        return cls(client, **kwargs)

    async def extract_text(
        self,
        image_bytes: bytes,
        content_type: str,
        timeout: Optional[float] = None,
    ) -> ExtractionResult:
        """
        Ask the model for the text in the image.

        Provider-side errors and empty output come back as an
        ExtractionResult with failure_reason set.

        Raises:
            ExtractionTimeout: the call did not finish within timeout.
            ExtractionProviderError: the provider could not be reached.
        """
        if timeout is not None and timeout <= 0:
            raise ExtractionTimeout("No time left for extraction")

        started = time.monotonic()
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                messages=build_messages(image_bytes, content_type),
                timeout=timeout,
            )
        except anthropic.APITimeoutError as exc:
            raise ExtractionTimeout(f"Extraction timed out after {timeout}s") from exc
        except anthropic.APIConnectionError as exc:
            raise ExtractionProviderError(f"Inference provider unreachable: {exc}") from exc
        except anthropic.APIStatusError as exc:
            logger.warning(
                f"Inference provider returned {exc.status_code}: {exc.message}"
            )
            return ExtractionResult(failure_reason=ExtractionFailure.PROVIDER_ERROR)

        elapsed = time.monotonic() - started
        text = _response_text(response)
        usage = getattr(response, "usage", None)
        input_tokens = getattr(usage, "input_tokens", 0) or 0
        output_tokens = getattr(usage, "output_tokens", 0) or 0

        logger.info(
            f"Extraction finished in {elapsed:.2f}s: {len(text)} chars, "
            f"{input_tokens} in / {output_tokens} out tokens"
        )

        if not text:
            return ExtractionResult(
                failure_reason=ExtractionFailure.EMPTY,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        return ExtractionResult(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
