"""
Inbound message adapter.

Normalizes the provider's form-encoded webhook body into the provider-agnostic
InboundMessage model.

Twilio WhatsApp webhook fields used
-----------------------------------
  From               str  - sender address, e.g. "whatsapp:+15551234567"
  Body               str  - message text (may be empty)
  MessageSid         str  - provider message id
  NumMedia           str  - number of attachments ("0" when none)
  MediaUrl0          str  - first attachment's media resource URL
  MediaContentType0  str  - provider's declared MIME type (not trusted)

Only the first attachment is used. If the provider changes its field names,
only this file needs updating.
"""

from typing import Mapping

from app.errors import InfrastructureFault
from app.models.inbound_message import InboundMessage, MediaReference


def _field(form: Mapping, name: str) -> str:
    value = form.get(name)
    if value is None:
        return ""
    return str(value).strip()


def normalize_twilio_form(form: Mapping) -> InboundMessage:
    """
    Convert a Twilio webhook form into an InboundMessage.

    Raises:
        InfrastructureFault: the form lacks a sender or message id.
    """
    sender_id = _field(form, "From")
    message_sid = _field(form, "MessageSid")
    if not sender_id:
        raise InfrastructureFault("Webhook form has no 'From' field")
    if not message_sid:
        raise InfrastructureFault("Webhook form has no 'MessageSid' field")

    media_url = _field(form, "MediaUrl0")
    num_media = _field(form, "NumMedia")
    if num_media.isdigit() and int(num_media) == 0:
        media_url = ""

    media = None
    if media_url:
        media = MediaReference(
            message_sid=message_sid,
            media_url=media_url,
            declared_content_type=_field(form, "MediaContentType0") or None,
        )

    return InboundMessage(
        sender_id=sender_id,
        message_sid=message_sid,
        body=_field(form, "Body") or None,
        media=media,
    )
