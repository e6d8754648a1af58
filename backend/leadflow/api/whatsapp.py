import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from leadflow.api.deps import get_services
from leadflow.models.lead import LeadModel
from leadflow.models.sequence import TextMessage
from leadflow.runtime import Services
from leadflow.services.inbound import InboundEvent
from leadflow.services.transport import TransportError

logger = logging.getLogger(__name__)
router = APIRouter()

# message node key -> media type recorded in the message log
MEDIA_NODES = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
}


class SendMessageRequest(BaseModel):
    lead_id: str
    message: str


class MarkReadRequest(BaseModel):
    lead_id: str


def parse_inbound_message(raw: dict) -> Optional[InboundEvent]:
    """Gateway message envelope -> InboundEvent; None when it carries no sender."""
    key = raw.get("key") or {}
    remote_jid = key.get("remoteJid")
    if not remote_jid:
        return None

    message = raw.get("message") or {}
    text = message.get("conversation") or (message.get("extendedTextMessage") or {}).get("text") or ""
    media_type = None
    media_url = raw.get("mediaUrl")
    for node, kind in MEDIA_NODES.items():
        if node in message:
            media_type = kind
            text = text or (message[node] or {}).get("caption") or ""
            break

    return InboundEvent(
        remote_jid=remote_jid,
        remote_jid_alt=key.get("remoteJidAlt"),
        addressing_mode=key.get("addressingMode"),
        from_me=bool(key.get("fromMe")),
        push_name=raw.get("pushName") or "",
        text=text.strip(),
        media_type=media_type,
        media_url=media_url,
    )


def extract_messages(payload) -> List[dict]:
    if isinstance(payload, list):
        return [m for m in payload if isinstance(m, dict)]
    if isinstance(payload, dict):
        if isinstance(payload.get("messages"), list):
            return [m for m in payload["messages"] if isinstance(m, dict)]
        return [payload]
    return []


@router.post("/whatsapp/events")
async def whatsapp_events(request: Request, services: Services = Depends(get_services)):
    """Inbound webhook from the messaging gateway (one envelope or a batch)."""
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")

    handled, dropped = 0, 0
    for raw in extract_messages(payload):
        event = parse_inbound_message(raw)
        if event is None:
            dropped += 1
            continue
        try:
            lead_id = await services.inbound.handle(event)
        except Exception as e:
            logger.error(f"[INBOUND] Failed to handle event from {event.remote_jid}: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail="Inbound processing failed")
        if lead_id:
            handled += 1
        else:
            dropped += 1

    return {"handled": handled, "dropped": dropped}


@router.get("/whatsapp/status")
async def whatsapp_status(services: Services = Depends(get_services)):
    return await services.transport.status()


@router.post("/whatsapp/send-message")
async def send_message(body: SendMessageRequest, services: Services = Depends(get_services)):
    """Operator send of a free text to a lead."""
    document = await services.store.get(LeadModel.COLLECTION, body.lead_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Lead not found")
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Empty message")

    try:
        sent = await services.messenger.send(document, TextMessage(text=body.message))
    except TransportError as e:
        logger.error(f"[SEND] Operator message to {body.lead_id} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    if not sent:
        raise HTTPException(status_code=409, detail="Messaging session not connected or lead not routable")

    await services.messenger.record(body.lead_id, content=body.message, sender="business")
    return {"success": True}


@router.post("/whatsapp/mark-read")
async def mark_read(body: MarkReadRequest, services: Services = Depends(get_services)):
    updated = await services.store.update(LeadModel.COLLECTION, body.lead_id, set_fields={"unread_count": 0})
    if not updated:
        raise HTTPException(status_code=404, detail="Lead not found")
    return {"success": True}
