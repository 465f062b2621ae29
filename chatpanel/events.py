"""
Decoding of WhatsApp Cloud API webhook deliveries.

A delivery is decoded into a flat list of typed events: one
InboundMessageEvent per entry in ``value.messages[]`` and one StatusEvent per
entry in ``value.statuses[]``. Every level of the envelope is read element by
element, so a bad entry, change or contact is skipped without spoiling its
siblings. Message bodies are kept raw here and validated one by one in the
normalizer.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidatorFunctionWrapHandler, field_validator

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> list[Any]:
    """A null or non-list collection reads as empty."""
    return value if isinstance(value, list) else []


# =============================================================================
# Envelope Models
# =============================================================================

class ContactProfile(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    name: Optional[str] = None


class Contact(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    wa_id: Optional[str] = None
    profile: Optional[ContactProfile] = None


class ChangeValue(BaseModel):
    model_config = ConfigDict(extra="ignore")

    contacts: list[Any] = Field(default_factory=list)
    messages: list[Any] = Field(default_factory=list)
    statuses: list[Any] = Field(default_factory=list)

    @field_validator("contacts", "messages", "statuses", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> list[Any]:
        return _as_list(value)


class Change(BaseModel):
    model_config = ConfigDict(extra="ignore")

    field: Optional[str] = None
    value: ChangeValue = Field(default_factory=ChangeValue)

    @field_validator("value", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}


class Entry(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: Optional[str] = None
    changes: list[Any] = Field(default_factory=list)

    @field_validator("changes", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> list[Any]:
        return _as_list(value)


class WebhookPayload(BaseModel):
    """Outer shape of a delivery: entry[].changes[].value."""

    model_config = ConfigDict(extra="ignore")

    object: Optional[str] = None
    entry: list[Any] = Field(default_factory=list)

    @field_validator("entry", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> list[Any]:
        return _as_list(value)


# =============================================================================
# Message Body Models
# =============================================================================

class TextBody(BaseModel):
    body: Optional[str] = None


class MediaBody(BaseModel):
    """Shared by image, audio, voice, video, document and sticker."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    mime_type: Optional[str] = None
    caption: Optional[str] = None
    filename: Optional[str] = None


class Reply(BaseModel):
    id: Optional[str] = None
    title: Optional[str] = None


class InteractiveBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    button_reply: Optional[Reply] = None
    list_reply: Optional[Reply] = None


class ButtonBody(BaseModel):
    """Quick-reply button pressed on a template message."""

    text: Optional[str] = None
    payload: Optional[str] = None


class GatewayMessage(BaseModel):
    """
    One inbound message as sent by the gateway.

    Only ``from`` and ``timestamp`` are validated strictly. A type marker or
    body of an unexpected shape reads as absent, so the message still
    normalizes (as ``other`` or with no media reference).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    sender: str = Field(..., alias="from", min_length=1)
    timestamp: int = Field(..., ge=0)
    type: str = "unknown"
    id: Optional[str] = None
    text: Optional[TextBody] = None
    image: Optional[MediaBody] = None
    audio: Optional[MediaBody] = None
    voice: Optional[MediaBody] = None
    video: Optional[MediaBody] = None
    document: Optional[MediaBody] = None
    interactive: Optional[InteractiveBody] = None
    button: Optional[ButtonBody] = None

    @field_validator("type", mode="wrap")
    @classmethod
    def _unknown_type(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> str:
        try:
            return handler(value) or "unknown"
        except ValidationError:
            return "unknown"

    @field_validator(
        "id", "text", "image", "audio", "voice", "video", "document", "interactive", "button",
        mode="wrap",
    )
    @classmethod
    def _absent_when_unreadable(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        try:
            return handler(value)
        except ValidationError:
            return None


# =============================================================================
# Decoded Events
# =============================================================================

@dataclass(frozen=True)
class InboundMessageEvent:
    """A message entry together with the delivery's contact list."""

    raw: Any
    contacts: tuple[Contact, ...] = field(default_factory=tuple)

    @property
    def event_id(self) -> Optional[str]:
        if isinstance(self.raw, dict):
            return self.raw.get("id")
        return None

    def contact_name(self, wa_id: str) -> Optional[str]:
        """
        Profile name of the sender.

        Matched on ``wa_id``. A lone contact without a ``wa_id`` is taken to be
        the sender; a contact listed for another number never is.
        """
        for contact in self.contacts:
            if contact.wa_id == wa_id:
                return contact.profile.name if contact.profile else None
        if len(self.contacts) == 1 and self.contacts[0].wa_id is None and self.contacts[0].profile:
            return self.contacts[0].profile.name
        return None


@dataclass(frozen=True)
class StatusEvent:
    """A delivery status update (sent, delivered, read, failed)."""

    raw: Any

    @property
    def status(self) -> Optional[str]:
        if isinstance(self.raw, dict):
            return self.raw.get("status")
        return None


GatewayEvent = Union[InboundMessageEvent, StatusEvent]


def parse_contacts(raw_contacts: list[Any]) -> tuple[Contact, ...]:
    """Read each contact on its own, dropping the unreadable ones."""
    contacts = []
    for raw in raw_contacts:
        try:
            contacts.append(Contact.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Skipping unreadable contact: {e.error_count()} errors")
    return tuple(contacts)


def decode_delivery(payload: Any) -> list[GatewayEvent]:
    """
    Decode one webhook delivery into its events, in delivery order.

    An envelope that cannot be read at all yields no events; an unreadable
    entry or change is skipped and its siblings are still decoded.
    """
    try:
        envelope = WebhookPayload.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Unreadable webhook envelope, ignoring delivery: {e.error_count()} errors")
        return []

    if envelope.object not in (None, "whatsapp_business_account"):
        logger.info(f"Ignoring webhook for object={envelope.object}")
        return []

    events: list[GatewayEvent] = []
    for raw_entry in envelope.entry:
        try:
            entry = Entry.model_validate(raw_entry)
        except ValidationError as e:
            logger.warning(f"Skipping unreadable entry: {e.error_count()} errors")
            continue

        for raw_change in entry.changes:
            try:
                change = Change.model_validate(raw_change)
            except ValidationError as e:
                logger.warning(f"Skipping unreadable change: entry={entry.id}, {e.error_count()} errors")
                continue

            if change.field not in (None, "messages"):
                continue
            contacts = parse_contacts(change.value.contacts)
            events.extend(InboundMessageEvent(raw=m, contacts=contacts) for m in change.value.messages)
            events.extend(StatusEvent(raw=s) for s in change.value.statuses)

    logger.debug(f"Decoded delivery into {len(events)} events")
    return events
