import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from app.models.schemas import Platform

logger = logging.getLogger(__name__)

PLATFORM_BY_OBJECT = {
    "instagram": Platform.instagram,
    "page": Platform.instagram,
    "whatsapp_business_account": Platform.whatsapp,
}


class Attachment(BaseModel):
    type: str
    url: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return self.type.lower() in {"image", "photo", "sticker_image"}


class InboundEvent(BaseModel):
    platform: Platform
    sender_id: str
    recipient_id: Optional[str] = None
    external_message_id: Optional[str] = None
    text: str = ""
    attachments: List[Attachment] = Field(default_factory=list)
    timestamp: Optional[int] = None
    is_echo: bool = False

    @property
    def dedup_key(self) -> str:
        if self.external_message_id:
            return self.external_message_id
        return f"{self.sender_id}:{self.timestamp or 0}"

    @property
    def attachment_types(self) -> List[str]:
        return [a.type.lower() for a in self.attachments]

    @property
    def first_image(self) -> Optional[Attachment]:
        for a in self.attachments:
            if a.is_image:
                return a
        return None


class Reply(BaseModel):
    text: str
    category: str
    media_url: Optional[str] = None
    template: Optional[str] = None
    ai_used: bool = False
    product_ids: List[str] = Field(default_factory=list)


class Ack(BaseModel):
    status: str = "ok"


class EventOutcome(BaseModel):
    dedup_key: str
    status: str
    category: Optional[str] = None
    reply_sent: Optional[bool] = None
    ts: datetime = Field(default_factory=datetime.utcnow)


def _messaging_event(platform: Platform, raw: Dict[str, Any]) -> Optional[InboundEvent]:
    message = raw.get("message")
    if not isinstance(message, dict):
        # postbacks, reads, reactions
        return None
    sender = (raw.get("sender") or {}).get("id")
    if not sender:
        return None
    attachments = []
    for att in message.get("attachments") or []:
        payload = att.get("payload") or {}
        attachments.append(Attachment(type=str(att.get("type") or "file"), url=payload.get("url")))
    return InboundEvent(
        platform=platform,
        sender_id=str(sender),
        recipient_id=str((raw.get("recipient") or {}).get("id") or "") or None,
        external_message_id=message.get("mid"),
        text=(message.get("text") or "").strip(),
        attachments=attachments,
        timestamp=raw.get("timestamp"),
        is_echo=bool(message.get("is_echo")),
    )


def _whatsapp_event(value: Dict[str, Any], raw: Dict[str, Any]) -> Optional[InboundEvent]:
    sender = raw.get("from")
    if not sender:
        return None
    msg_type = raw.get("type") or "text"
    text = ""
    attachments = []
    if msg_type == "text":
        text = ((raw.get("text") or {}).get("body") or "").strip()
    elif msg_type in {"image", "document", "audio", "video", "sticker"}:
        media = raw.get(msg_type) or {}
        # Cloud API delivers a media id; the fetcher resolves it to a download url
        attachments.append(Attachment(type=msg_type, url=media.get("link") or media.get("id")))
        text = (media.get("caption") or "").strip()
    elif msg_type == "button":
        text = ((raw.get("button") or {}).get("text") or "").strip()
    else:
        return None
    ts = raw.get("timestamp")
    try:
        ts = int(ts) if ts is not None else None
    except (TypeError, ValueError):
        ts = None
    return InboundEvent(
        platform=Platform.whatsapp,
        sender_id=str(sender),
        recipient_id=(value.get("metadata") or {}).get("phone_number_id"),
        external_message_id=raw.get("id"),
        text=text,
        attachments=attachments,
        timestamp=ts,
    )


def _parse_one(parser, *args) -> Optional[InboundEvent]:
    try:
        return parser(*args)
    except (AttributeError, TypeError, ValueError, ValidationError) as e:
        logger.warning("skipping malformed webhook event: %s", e)
        return None


def parse_delivery(payload: Dict[str, Any]) -> List[InboundEvent]:
    """Flatten a webhook delivery into inbound events.

    Handles the Messenger/Instagram ``entry[].messaging[]`` shape and the
    WhatsApp Business ``entry[].changes[].value.messages[]`` shape. A raw
    event that does not parse is logged and skipped on its own; its siblings
    in the same delivery are still returned.
    """
    if not isinstance(payload, dict):
        return []
    platform = PLATFORM_BY_OBJECT.get(str(payload.get("object") or "").lower())
    if platform is None:
        return []
    events: List[InboundEvent] = []
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for raw in entry.get("messaging") or []:
            if isinstance(raw, dict):
                ev = _parse_one(_messaging_event, platform, raw)
                if ev:
                    events.append(ev)
        for change in entry.get("changes") or []:
            if not isinstance(change, dict) or change.get("field") not in (None, "messages"):
                continue
            value = change.get("value")
            if not isinstance(value, dict):
                continue
            for raw in value.get("messages") or []:
                if isinstance(raw, dict):
                    ev = _parse_one(_whatsapp_event, value, raw)
                    if ev:
                        events.append(ev)
    return events
