"""
Message type normalizer.

Maps gateway message shapes onto the canonical model. Checks run in a fixed
priority order and the first match wins:

    text                      -> text         preview: first 60 chars of body
    audio / voice             -> audio        preview: [AUDIO]
    image                     -> image        preview: [IMAGE]
    document                  -> document     preview: filename or [DOCUMENT]
    video                     -> video        preview: [VIDEO]
    interactive / button      -> interactive  preview: first 60 chars of text
    anything else             -> other        preview: [<TYPE>]

Media messages without a media id still normalize, with media_ref=None.
"""

import logging
from typing import Callable, Optional

from pydantic import ValidationError

from chatpanel.domain import MessageType, NormalizedMessage
from chatpanel.errors import MalformedEvent
from chatpanel.events import GatewayEvent, GatewayMessage, InboundMessageEvent, MediaBody, StatusEvent

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 60
INTERACTIVE_FALLBACK_TEXT = "interactive response"

# (type, text, media_ref, preview)
Normalized = tuple[MessageType, Optional[str], Optional[str], str]


def text_preview(text: Optional[str]) -> str:
    return (text or "")[:PREVIEW_LENGTH]


def _media_id(media: Optional[MediaBody]) -> Optional[str]:
    return media.id if media and media.id else None


def _is_text(msg: GatewayMessage) -> bool:
    return msg.type == "text"


def _normalize_text(msg: GatewayMessage) -> Normalized:
    body = msg.text.body if msg.text else None
    return MessageType.TEXT, body, None, text_preview(body)


def _is_audio(msg: GatewayMessage) -> bool:
    return msg.type in ("audio", "voice") or msg.audio is not None or msg.voice is not None


def _normalize_audio(msg: GatewayMessage) -> Normalized:
    media_ref = _media_id(msg.audio) or _media_id(msg.voice)
    return MessageType.AUDIO, None, media_ref, "[AUDIO]"


def _is_image(msg: GatewayMessage) -> bool:
    return msg.type == "image"


def _normalize_image(msg: GatewayMessage) -> Normalized:
    caption = msg.image.caption if msg.image else None
    return MessageType.IMAGE, caption or None, _media_id(msg.image), "[IMAGE]"


def _is_document(msg: GatewayMessage) -> bool:
    return msg.type == "document"


def _normalize_document(msg: GatewayMessage) -> Normalized:
    filename = (msg.document.filename if msg.document else None) or None
    return MessageType.DOCUMENT, filename, _media_id(msg.document), filename or "[DOCUMENT]"


def _is_video(msg: GatewayMessage) -> bool:
    return msg.type == "video"


def _normalize_video(msg: GatewayMessage) -> Normalized:
    caption = msg.video.caption if msg.video else None
    return MessageType.VIDEO, caption or None, _media_id(msg.video), "[VIDEO]"


def _is_interactive(msg: GatewayMessage) -> bool:
    return msg.type in ("interactive", "button") or msg.interactive is not None or msg.button is not None


def _normalize_interactive(msg: GatewayMessage) -> Normalized:
    title = None
    reply_id = None
    if msg.interactive:
        reply = msg.interactive.button_reply or msg.interactive.list_reply
        if reply:
            title, reply_id = reply.title, reply.id
    if msg.button and not title:
        title = msg.button.text
        reply_id = reply_id or msg.button.payload
    text = title or reply_id or INTERACTIVE_FALLBACK_TEXT
    return MessageType.INTERACTIVE, text, None, text_preview(text)


def _normalize_other(msg: GatewayMessage) -> Normalized:
    return MessageType.OTHER, None, None, f"[{msg.type.upper()}]"


# Priority order matters: first match wins
POLICY: list[tuple[Callable[[GatewayMessage], bool], Callable[[GatewayMessage], Normalized]]] = [
    (_is_text, _normalize_text),
    (_is_audio, _normalize_audio),
    (_is_image, _normalize_image),
    (_is_document, _normalize_document),
    (_is_video, _normalize_video),
    (_is_interactive, _normalize_interactive),
]


def classify(msg: GatewayMessage) -> Normalized:
    for matches, normalize_as in POLICY:
        if matches(msg):
            return normalize_as(msg)
    return _normalize_other(msg)


def parse_message(raw: object) -> GatewayMessage:
    """
    Validate one raw message body.

    Raises:
        MalformedEvent: sender or timestamp missing or unreadable
    """
    event_id = raw.get("id") if isinstance(raw, dict) else None
    try:
        return GatewayMessage.model_validate(raw)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "<root>" for err in e.errors())
        raise MalformedEvent(f"Malformed message event ({fields})", event_id=event_id) from e


def normalize(event: GatewayEvent) -> Optional[NormalizedMessage]:
    """
    Normalize one decoded gateway event.

    Returns:
        None for status events, a NormalizedMessage for message events

    Raises:
        MalformedEvent: the message lacks a sender id or a timestamp
    """
    if isinstance(event, StatusEvent):
        logger.debug(f"Status event carries no message: status={event.status}")
        return None
    if not isinstance(event, InboundMessageEvent):
        raise MalformedEvent(f"Unsupported event: {type(event).__name__}")

    msg = parse_message(event.raw)
    message_type, text, media_ref, preview = classify(msg)

    logger.debug(f"Normalized message: from={msg.sender}, type={msg.type} -> {message_type.value}")

    return NormalizedMessage(
        phone=msg.sender,
        type=message_type,
        timestamp=msg.timestamp,
        preview=preview,
        text=text,
        media_ref=media_ref,
        contact_name=event.contact_name(msg.sender),
        wa_message_id=msg.id,
    )
