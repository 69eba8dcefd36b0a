"""
Provider-agnostic inbound message model.

Represents one inbound chat message after provider-specific form fields have
been mapped by the adapter layer. The router and the pipeline work exclusively
with these models; only the adapter knows about the provider's field names.
"""

from typing import Optional
from pydantic import BaseModel


class MediaReference(BaseModel):
    """
    Opaque handle to an uploaded attachment.

    The provider does not send the bytes, only a URL to its media resource
    and the id of the message the media belongs to.
    """

    model_config = {"frozen": True}

    message_sid: str
    media_url: str
    declared_content_type: Optional[str] = None   # provider hint, not trusted

    @property
    def media_sid(self) -> str:
        """Media id: the path segment after /Media/ in media_url."""
        _, sep, tail = self.media_url.partition("/Media/")
        if not sep:
            return ""
        return tail.split("/")[0].split("?")[0].removesuffix(".json")


class InboundMessage(BaseModel):
    """One inbound message. Built once per request and never mutated."""

    model_config = {"frozen": True}

    sender_id: str
    message_sid: str
    body: Optional[str] = None
    media: Optional[MediaReference] = None

    @property
    def has_media(self) -> bool:
        return self.media is not None
