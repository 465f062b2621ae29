"""
Canonical message model.

Gateway-agnostic shapes produced by the normalizer and the send coordinator,
and consumed by the stores. For ORM tables, see models.py.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MessageDirection(str, Enum):
    """Direction of a message relative to the panel."""

    INBOUND = "in"
    OUTBOUND = "out"


class MessageType(str, Enum):
    """Canonical message types."""

    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    VIDEO = "video"
    AUDIO = "audio"
    INTERACTIVE = "interactive"
    TEMPLATE = "template"
    OTHER = "other"


@dataclass(frozen=True)
class CanonicalMessage:
    """
    A message as it is appended to the message log.

    Inbound messages start unread; outbound messages have nothing to read.
    """

    phone: str
    direction: MessageDirection
    type: MessageType
    timestamp: int
    text: Optional[str] = None
    template_name: Optional[str] = None
    media_ref: Optional[str] = None
    wa_message_id: Optional[str] = None

    @property
    def is_read(self) -> bool:
        return self.direction == MessageDirection.OUTBOUND


@dataclass(frozen=True)
class NormalizedMessage:
    """Result of normalizing one inbound gateway message."""

    phone: str
    type: MessageType
    timestamp: int
    preview: str
    text: Optional[str] = None
    media_ref: Optional[str] = None
    contact_name: Optional[str] = None
    wa_message_id: Optional[str] = None

    def to_canonical(self) -> CanonicalMessage:
        return CanonicalMessage(
            phone=self.phone,
            direction=MessageDirection.INBOUND,
            type=self.type,
            timestamp=self.timestamp,
            text=self.text,
            media_ref=self.media_ref,
            wa_message_id=self.wa_message_id,
        )


@dataclass(frozen=True)
class ChatSummary:
    """Chat row as shown in the panel list, with the derived unread flag."""

    phone: str
    name: Optional[str]
    last_timestamp: Optional[int]
    last_preview: Optional[str]
    pinned: bool
    has_unread: bool


@dataclass(frozen=True)
class SendResult:
    """Outcome of a successful outbound send."""

    message_id: int
    phone: str
    type: MessageType
    timestamp: int
    wa_message_id: Optional[str] = None
    template_language: Optional[str] = None
