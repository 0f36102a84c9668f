"""
Payload normalizers: platform webhook bodies -> MessageEnvelope

Both parsers return None for payloads that are recognisably from the platform
but malformed, and raise PayloadValidationError only when the body is not a
mapping at all (which means the endpoint is wired to the wrong source).
"""

import mimetypes
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationError

from errors import PayloadValidationError
from models import Attachment, MessageEnvelope, Platform
from monitoring import logger

WHATSAPP_PREFIX = "whatsapp:"

# === WhatsApp (Twilio) ===

class TwilioWhatsAppPayload(BaseModel):
    """Fields of a Twilio inbound-message webhook the pipeline relies on"""
    MessageSid: str = Field(min_length=1)
    From: str = Field(min_length=1)
    To: Optional[str] = None
    Body: str = ""
    NumMedia: int = Field(default=0, ge=0)
    ProfileName: Optional[str] = None

def strip_channel_prefix(address: Optional[str]) -> Optional[str]:
    """'whatsapp:+14155550123' -> '+14155550123'"""
    if address is None:
        return None
    if address.lower().startswith(WHATSAPP_PREFIX):
        return address[len(WHATSAPP_PREFIX):]
    return address

def classify_whatsapp_message(attachments: List[Attachment]) -> str:
    """text / image / document from the first media item"""
    if not attachments:
        return "text"
    if attachments[0].mime_type.startswith("image/"):
        return "image"
    return "document"

def _media_sid(url: Optional[str], message_sid: str, index: int) -> str:
    if url:
        segment = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]
        if segment:
            return segment
    return f"{message_sid}_{index}"

def parse_twilio_whatsapp(raw: Any) -> Optional[MessageEnvelope]:
    """Normalize a Twilio WhatsApp form body"""
    if not isinstance(raw, Mapping):
        raise PayloadValidationError(f"Twilio payload must be a form mapping, got {type(raw).__name__}")

    try:
        payload = TwilioWhatsAppPayload.model_validate(dict(raw))
    except ValidationError as e:
        logger.warning("twilio_payload_invalid", errors=e.error_count(), message_sid=raw.get("MessageSid"))
        return None

    attachments = []
    for i in range(payload.NumMedia):
        url = raw.get(f"MediaUrl{i}")
        mime_type = raw.get(f"MediaContentType{i}") or "application/octet-stream"
        media_sid = _media_sid(url, payload.MessageSid, i)
        extension = mimetypes.guess_extension(mime_type) or ""
        attachments.append(Attachment(
            id=media_sid,
            mime_type=mime_type,
            file_name=f"whatsapp_{media_sid}{extension}",
            url=url or None,
        ))

    return MessageEnvelope(
        message_id=payload.MessageSid,
        platform=Platform.WHATSAPP,
        sender=strip_channel_prefix(payload.From),
        timestamp=datetime.now(timezone.utc),
        content=payload.Body.strip() or None,
        attachments=attachments,
        metadata={
            "to": strip_channel_prefix(payload.To),
            "message_type": classify_whatsapp_message(attachments),
            "profile_name": payload.ProfileName,
        },
    )

# === Slack ===

class SlackFile(BaseModel):
    id: str
    name: Optional[str] = None
    mimetype: Optional[str] = None
    size: Optional[int] = None
    url_private_download: Optional[str] = None

class SlackEvent(BaseModel):
    type: str
    user: Optional[str] = None
    user_id: Optional[str] = None        # file_shared events
    channel: Optional[str] = None
    channel_id: Optional[str] = None     # file_shared events
    ts: Optional[str] = None
    event_ts: Optional[str] = None
    thread_ts: Optional[str] = None
    text: Optional[str] = None
    subtype: Optional[str] = None
    bot_id: Optional[str] = None
    file_id: Optional[str] = None
    files: List[SlackFile] = []

class SlackEventPayload(BaseModel):
    type: str
    team_id: Optional[str] = None
    event: Optional[SlackEvent] = None
    event_id: Optional[str] = None
    event_time: Optional[int] = None

SUPPORTED_EVENT_TYPES = ("message", "file_shared")
# Message subtypes that still carry a user's message
PROCESSED_SUBTYPES = (None, "file_share", "thread_broadcast")
MENTION_PATTERN = re.compile(r"<@[A-Z0-9]+>")

@dataclass
class SlackParseResult:
    """Envelope for a processable event, or a soft skip the caller acknowledges"""
    envelope: Optional[MessageEnvelope] = None
    skipped: bool = False
    reason: Optional[str] = None

def handle_url_verification(raw: Any) -> Optional[Dict[str, str]]:
    """Challenge response for URL verification payloads, None for anything else"""
    if not isinstance(raw, Mapping) or raw.get("type") != "url_verification":
        return None
    challenge = raw.get("challenge")
    if not isinstance(challenge, str) or not challenge:
        raise PayloadValidationError("url_verification payload without a challenge")
    return {"challenge": challenge}

def _event_timestamp(payload: SlackEventPayload, event: SlackEvent) -> datetime:
    if payload.event_time:
        return datetime.fromtimestamp(payload.event_time, tz=timezone.utc)
    for ts in (event.ts, event.event_ts):
        if ts:
            try:
                return datetime.fromtimestamp(float(ts), tz=timezone.utc)
            except ValueError:
                continue
    return datetime.now(timezone.utc)

def _slack_attachments(event: SlackEvent) -> List[Attachment]:
    return [
        Attachment(
            id=f.id,
            mime_type=f.mimetype or "application/octet-stream",
            file_name=f.name,
            size=f.size,
            url=f.url_private_download,
        )
        for f in event.files
    ]

def parse_slack_event(raw: Any) -> Optional[SlackParseResult]:
    """Normalize a Slack Events API callback"""
    if not isinstance(raw, Mapping):
        raise PayloadValidationError(f"Slack payload must be a JSON object, got {type(raw).__name__}")

    try:
        payload = SlackEventPayload.model_validate(dict(raw))
    except ValidationError as e:
        logger.warning("slack_payload_invalid", errors=e.error_count())
        return None

    if payload.type != "event_callback":
        return SlackParseResult(skipped=True, reason=f"unsupported_payload:{payload.type}")

    event = payload.event
    if event is None or not payload.team_id:
        logger.warning("slack_payload_incomplete", event_id=payload.event_id)
        return None

    if event.type not in SUPPORTED_EVENT_TYPES:
        return SlackParseResult(skipped=True, reason=f"unsupported_event:{event.type}")
    if event.bot_id or event.subtype == "bot_message":
        return SlackParseResult(skipped=True, reason="bot_message")
    if event.subtype not in PROCESSED_SUBTYPES:
        return SlackParseResult(skipped=True, reason=f"subtype:{event.subtype}")
    if event.type == "file_shared" and not event.files:
        # Only a file id; the file_share message for the same upload carries the details
        return SlackParseResult(skipped=True, reason="file_shared_without_details")

    user = event.user or event.user_id
    channel = event.channel or event.channel_id
    if not user or not channel:
        logger.warning("slack_event_missing_identity", event_id=payload.event_id, event_type=event.type)
        return None

    if event.type == "file_shared":
        content = None
    else:
        content = MENTION_PATTERN.sub("", event.text or "").strip() or None

    message_ts = event.ts or event.event_ts
    message_id = payload.event_id or f"{channel}:{message_ts}"

    envelope = MessageEnvelope(
        message_id=message_id,
        platform=Platform.SLACK,
        sender=user,
        timestamp=_event_timestamp(payload, event),
        content=content,
        attachments=_slack_attachments(event),
        metadata={
            "channel_id": channel,
            "workspace_id": payload.team_id,
            "thread_ts": event.thread_ts or message_ts,
            "is_dm": channel.startswith("D"),
            "event_type": event.type,
        },
    )
    return SlackParseResult(envelope=envelope)
