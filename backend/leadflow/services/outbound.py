import logging
import re
from datetime import datetime, timezone
from typing import Optional, Union
from urllib.parse import quote

from leadflow.db.store import DocumentStore
from leadflow.models.lead import LeadMessage, LeadModel
from leadflow.models.sequence import (
    AudioMessage,
    FormMessage,
    ImageMessage,
    OutboundMessage,
    SequenceStep,
    StepType,
    TextMessage,
    VideoMessage,
)
from leadflow.services.identity import IdentityResolver

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

# Templates authored in the CRM use the Spanish field names
FIELD_ALIASES = {"nombre": "name", "telefono": "phone"}


def _lead_fields(lead: Union[LeadModel, dict]) -> dict:
    if isinstance(lead, LeadModel):
        return lead.to_document()
    return dict(lead or {})


def first_token(value) -> str:
    parts = str(value or "").split()
    return parts[0] if parts else ""


def replace_placeholders(template: str, lead: Union[LeadModel, dict]) -> str:
    """
    Resolve {{field}} tokens against the lead. The name only ever renders as
    its first word; unknown or empty fields render as "".
    """
    fields = _lead_fields(lead)

    def _substitute(match):
        field = FIELD_ALIASES.get(match.group(1), match.group(1))
        value = fields.get(field)
        if field == "name":
            return first_token(value)
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(_substitute, template or "")


def build_outbound_message(step: SequenceStep, lead: Union[LeadModel, dict]) -> OutboundMessage:
    fields = _lead_fields(lead)
    if step.type == StepType.TEXT:
        return TextMessage(text=replace_placeholders(step.content, fields).strip())
    if step.type == StepType.FORM:
        phone = re.sub(r"\D", "", str(fields.get("phone") or ""))
        form_fields = dict(fields, phone=phone, name=quote(first_token(fields.get("name")), safe=""))
        text = re.sub(r"\r?\n", " ", step.content or "")
        return FormMessage(text=replace_placeholders(text, form_fields).strip())
    if step.type == StepType.AUDIO:
        return AudioMessage(url=replace_placeholders(step.content, fields).strip())
    if step.type == StepType.IMAGE:
        return ImageMessage(url=replace_placeholders(step.content, fields).strip())
    if step.type == StepType.VIDEO:
        return VideoMessage(url=replace_placeholders(step.content, fields).strip())
    raise ValueError(f"Unknown step type: {step.type}")


def describe(message: OutboundMessage) -> str:
    if isinstance(message, (TextMessage, FormMessage)):
        return message.text
    return message.url


def media_type_of(message: OutboundMessage) -> str:
    if isinstance(message, TextMessage):
        return "text"
    if isinstance(message, FormMessage):
        return "form"
    if isinstance(message, AudioMessage):
        return "audio"
    if isinstance(message, ImageMessage):
        return "image"
    if isinstance(message, VideoMessage):
        return "video"
    raise TypeError(f"Unhandled outbound message: {message!r}")


class Messenger:
    """
    The single send boundary: resolves the target, skips empty content and
    disconnected sessions, dispatches on the message variant and keeps the
    lead's message log.
    """

    def __init__(self, store: DocumentStore, transport, resolver: IdentityResolver):
        self.store = store
        self.transport = transport
        self.resolver = resolver

    async def send(self, target, message: OutboundMessage) -> bool:
        """Returns False when nothing was sent; transport failures raise."""
        jid = self.resolver.resolve_target(target)
        if not jid:
            logger.warning(f"[SEND] No routable id for target {target!r}")
            return False
        if not describe(message):
            logger.debug(f"[SEND] Empty {media_type_of(message)} message for {jid}, skipped")
            return False
        if not await self.transport.is_connected():
            logger.info(f"[SEND] Messaging session not connected, skipping send to {jid}")
            return False

        if isinstance(message, (TextMessage, FormMessage)):
            await self.transport.send_text(jid, message.text)
        elif isinstance(message, AudioMessage):
            options = {"ptt": message.voice_note}
            if message.mimetype:
                options["mimetype"] = message.mimetype
            await self.transport.send_media(jid, "audio", message.url, options)
        elif isinstance(message, ImageMessage):
            await self.transport.send_media(jid, "image", message.url, {"caption": message.caption} if message.caption else None)
        elif isinstance(message, VideoMessage):
            await self.transport.send_media(jid, "video", message.url, {"caption": message.caption} if message.caption else None)
        else:
            raise TypeError(f"Unhandled outbound message: {message!r}")
        return True

    async def record(self, lead_id: Optional[str], content: str = "", sender: str = "business",
                     media_type: Optional[str] = None, media_url: Optional[str] = None):
        if not lead_id:
            return
        entry = LeadMessage(
            lead_id=lead_id,
            content=content,
            sender=sender,
            media_type=media_type,
            media_url=media_url,
            timestamp=datetime.now(timezone.utc),
        )
        await self.store.insert(LeadMessage.COLLECTION, entry.model_dump())
        await self.store.update(LeadModel.COLLECTION, lead_id, set_fields={"last_message_at": entry.timestamp})
