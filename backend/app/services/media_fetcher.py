"""
Media fetcher for Twilio WhatsApp attachments.

An inbound message carries only a reference to its media. Getting the bytes
takes two authenticated round trips:

  1. GET the media metadata resource to learn the content URI.
  2. GET the content URI (Twilio redirects to short-lived storage).

Both count as one logical fetch: any failure in either step surfaces as a
single MediaFetchFailed (or one of its subclasses), never a partial result.
"""

import logging
from typing import Optional

import httpx

from app.config import DEFAULT_MEDIA_MAX_BYTES
from app.errors import InvalidMediaType, MediaFetchFailed, MediaTooLarge
from app.models.inbound_message import MediaReference
from app.models.pipeline import FetchedMedia

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com"

# Image families the vision model accepts
ALLOWED_IMAGE_TYPES = frozenset({
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
})


def base_content_type(header_value: Optional[str]) -> Optional[str]:
    """'image/JPEG; charset=binary' -> 'image/jpeg'."""
    if not header_value:
        return None
    return header_value.split(";", 1)[0].strip().lower() or None


class MediaFetcher:
    """Resolves a MediaReference into verified image bytes."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        account_sid: str,
        auth_token: str,
        max_bytes: int = DEFAULT_MEDIA_MAX_BYTES,
        api_base: str = TWILIO_API_BASE,
    ):
        self._http = http_client
        self._account_sid = account_sid
        self._auth = httpx.BasicAuth(account_sid, auth_token)
        self._max_bytes = max_bytes
        self._api_base = api_base.rstrip("/")

    async def fetch_media(self, media: MediaReference) -> FetchedMedia:
        """
        Download the referenced image.

        Raises:
            InvalidMediaType: content type is not an allow-listed image type.
            MediaTooLarge: body exceeds the configured ceiling.
            MediaFetchFailed: any other failure in either round trip.
        """
        try:
            content_url = await self._resolve_content_url(media)
            fetched = await self._download(content_url)
        except MediaFetchFailed:
            raise
        except (httpx.HTTPError, ValueError) as exc:
            raise MediaFetchFailed(f"Media fetch failed: {exc}") from exc

        logger.info(
            f"Fetched media {media.media_sid}: {fetched.content_type}, "
            f"{fetched.size_bytes} bytes"
        )
        return fetched

    async def _resolve_content_url(self, media: MediaReference) -> str:
        media_sid = media.media_sid
        if not media_sid:
            raise MediaFetchFailed(f"No media id in media URL: {media.media_url!r}")

        metadata_url = (
            f"{self._api_base}/2010-04-01/Accounts/{self._account_sid}"
            f"/Messages/{media.message_sid}/Media/{media_sid}.json"
        )
        response = await self._http.get(metadata_url, auth=self._auth)
        if response.status_code != 200:
            raise MediaFetchFailed(
                f"Media metadata lookup returned {response.status_code}"
            )

        uri = response.json().get("uri")
        if not uri:
            raise MediaFetchFailed("Media metadata has no uri")

        # The metadata uri points at the JSON resource; drop .json for the bytes
        return f"{self._api_base}{uri.removesuffix('.json')}"

    async def _download(self, content_url: str) -> FetchedMedia:
        async with self._http.stream(
            "GET", content_url, auth=self._auth, follow_redirects=True
        ) as response:
            if response.status_code != 200:
                raise MediaFetchFailed(
                    f"Media download returned {response.status_code}"
                )

            # Checked before reading the body so non-images are never buffered
            content_type = base_content_type(response.headers.get("content-type"))
            if content_type not in ALLOWED_IMAGE_TYPES:
                raise InvalidMediaType(content_type)

            declared_length = response.headers.get("content-length")
            if declared_length and declared_length.isdigit():
                if int(declared_length) > self._max_bytes:
                    raise MediaTooLarge(int(declared_length), self._max_bytes)

            data = bytearray()
            async for chunk in response.aiter_bytes():
                data.extend(chunk)
                if len(data) > self._max_bytes:
                    raise MediaTooLarge(len(data), self._max_bytes)

        if not data:
            raise MediaFetchFailed("Media download returned an empty body")

        return FetchedMedia(content=bytes(data), content_type=content_type)
