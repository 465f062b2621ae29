"""
Tests for webhook decoding and message normalization.

Tests cover:
- Every row of the type policy table
- Media messages without a media id
- Interactive reply title/id/fallback resolution
- Status events yield no message
- Malformed events raise MalformedEvent
"""

import pytest

from chatpanel.domain import MessageType
from chatpanel.errors import MalformedEvent
from chatpanel.events import InboundMessageEvent, StatusEvent, decode_delivery
from chatpanel.normalizer import normalize


def make_delivery(messages=None, statuses=None, contacts=None) -> dict:
    """Build a WhatsApp Cloud API delivery with a single change."""
    value = {
        "messaging_product": "whatsapp",
        "metadata": {"display_phone_number": "51100000000", "phone_number_id": "PHONE_1"},
    }
    if contacts is not None:
        value["contacts"] = contacts
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA_1", "changes": [{"field": "messages", "value": value}]}],
    }


def message(type_: str, ts: str = "1000", sender: str = "51999", **body) -> dict:
    msg = {"from": sender, "id": f"wamid.{type_}", "timestamp": ts, "type": type_}
    msg.update(body)
    return msg


def normalize_one(raw: dict, contacts=None):
    return normalize(InboundMessageEvent(raw=raw, contacts=tuple(contacts or ())))


class TestPolicyTable:
    """One minimal well-formed event per declared type."""

    def test_text(self):
        result = normalize_one(message("text", text={"body": "Hola"}))
        assert result.type == MessageType.TEXT
        assert result.text == "Hola"
        assert result.media_ref is None
        assert result.preview == "Hola"

    def test_text_preview_truncated_to_60_chars(self):
        body = "x" * 100
        result = normalize_one(message("text", text={"body": body}))
        assert result.text == body
        assert result.preview == "x" * 60

    def test_audio(self):
        result = normalize_one(message("audio", audio={"id": "A1", "mime_type": "audio/ogg"}))
        assert result.type == MessageType.AUDIO
        assert result.text is None
        assert result.media_ref == "A1"
        assert result.preview == "[AUDIO]"

    def test_voice_object_is_audio(self):
        result = normalize_one(message("voice", voice={"id": "V1"}))
        assert result.type == MessageType.AUDIO
        assert result.media_ref == "V1"
        assert result.preview == "[AUDIO]"

    def test_image(self):
        result = normalize_one(message("image", image={"id": "M1"}))
        assert result.type == MessageType.IMAGE
        assert result.media_ref == "M1"
        assert result.text is None
        assert result.preview == "[IMAGE]"

    def test_image_with_caption(self):
        result = normalize_one(message("image", image={"id": "M1", "caption": "look"}))
        assert result.text == "look"
        assert result.preview == "[IMAGE]"

    def test_document_with_filename(self):
        result = normalize_one(message("document", document={"id": "D1", "filename": "invoice.pdf"}))
        assert result.type == MessageType.DOCUMENT
        assert result.media_ref == "D1"
        assert result.text == "invoice.pdf"
        assert result.preview == "invoice.pdf"

    def test_document_without_filename(self):
        result = normalize_one(message("document", document={"id": "D1"}))
        assert result.text is None
        assert result.preview == "[DOCUMENT]"

    def test_video(self):
        result = normalize_one(message("video", video={"id": "VID1", "caption": "clip"}))
        assert result.type == MessageType.VIDEO
        assert result.media_ref == "VID1"
        assert result.text == "clip"
        assert result.preview == "[VIDEO]"

    def test_interactive_button_reply(self):
        result = normalize_one(message(
            "interactive",
            interactive={"type": "button_reply", "button_reply": {"id": "btn_yes", "title": "Sí"}},
        ))
        assert result.type == MessageType.INTERACTIVE
        assert result.text == "Sí"
        assert result.media_ref is None
        assert result.preview == "Sí"

    def test_interactive_list_reply(self):
        result = normalize_one(message(
            "interactive",
            interactive={"type": "list_reply", "list_reply": {"id": "row_1", "title": "Option 1"}},
        ))
        assert result.text == "Option 1"

    def test_interactive_falls_back_to_reply_id(self):
        result = normalize_one(message(
            "interactive",
            interactive={"type": "button_reply", "button_reply": {"id": "btn_yes"}},
        ))
        assert result.text == "btn_yes"
        assert result.preview == "btn_yes"

    def test_interactive_without_reply(self):
        result = normalize_one(message("interactive", interactive={"type": "nfm_reply"}))
        assert result.text == "interactive response"
        assert result.preview == "interactive response"

    def test_template_quick_reply_button(self):
        result = normalize_one(message("button", button={"text": "Confirmar", "payload": "CONFIRM"}))
        assert result.type == MessageType.INTERACTIVE
        assert result.text == "Confirmar"

    def test_unknown_type_is_other(self):
        result = normalize_one(message("sticker", sticker={"id": "S1"}))
        assert result.type == MessageType.OTHER
        assert result.text is None
        assert result.media_ref is None
        assert result.preview == "[STICKER]"

    def test_location_is_other(self):
        result = normalize_one(message("location", location={"latitude": 1.0, "longitude": 2.0}))
        assert result.type == MessageType.OTHER
        assert result.preview == "[LOCATION]"


class TestEdgeCases:

    @pytest.mark.parametrize("type_,expected", [
        ("audio", MessageType.AUDIO),
        ("image", MessageType.IMAGE),
        ("document", MessageType.DOCUMENT),
        ("video", MessageType.VIDEO),
    ])
    def test_media_type_without_media_id(self, type_, expected):
        result = normalize_one(message(type_))
        assert result.type == expected
        assert result.media_ref is None

    def test_timestamp_is_parsed_to_int(self):
        result = normalize_one(message("text", ts="1704067200", text={"body": "x"}))
        assert result.timestamp == 1704067200

    def test_contact_name_matched_by_wa_id(self):
        contacts = decode_delivery(make_delivery(
            messages=[message("text", text={"body": "Hola"})],
            contacts=[
                {"wa_id": "51000", "profile": {"name": "Other"}},
                {"wa_id": "51999", "profile": {"name": "Ana"}},
            ],
        ))
        assert normalize(contacts[0]).contact_name == "Ana"

    def test_status_event_yields_no_message(self):
        assert normalize(StatusEvent(raw={"id": "wamid.1", "status": "delivered"})) is None


class TestMalformed:

    def test_missing_sender(self):
        raw = message("text", text={"body": "x"})
        del raw["from"]
        with pytest.raises(MalformedEvent):
            normalize_one(raw)

    def test_empty_sender(self):
        with pytest.raises(MalformedEvent):
            normalize_one(message("text", sender="", text={"body": "x"}))

    def test_missing_timestamp(self):
        raw = message("text", text={"body": "x"})
        del raw["timestamp"]
        with pytest.raises(MalformedEvent) as exc_info:
            normalize_one(raw)
        assert exc_info.value.event_id == "wamid.text"

    def test_non_numeric_timestamp(self):
        with pytest.raises(MalformedEvent):
            normalize_one(message("text", ts="yesterday", text={"body": "x"}))

    def test_not_an_object(self):
        with pytest.raises(MalformedEvent):
            normalize_one("garbage")


class TestDecodeDelivery:

    def test_messages_and_statuses_in_order(self):
        events = decode_delivery(make_delivery(
            messages=[message("text", text={"body": "a"}), message("image", image={"id": "M1"})],
            statuses=[{"id": "wamid.x", "status": "read"}],
        ))
        assert [type(e) for e in events] == [InboundMessageEvent, InboundMessageEvent, StatusEvent]

    def test_non_whatsapp_object_is_ignored(self):
        assert decode_delivery({"object": "instagram", "entry": []}) == []

    def test_unreadable_envelope_is_ignored(self):
        assert decode_delivery({"entry": "nope"}) == []
        assert decode_delivery([1, 2, 3]) == []

    def test_other_change_fields_are_skipped(self):
        payload = make_delivery(messages=[message("text", text={"body": "a"})])
        payload["entry"][0]["changes"][0]["field"] = "account_update"
        assert decode_delivery(payload) == []


class TestUnexpectedShapes:
    """Only sender and timestamp can make a message malformed."""

    def test_numeric_media_id_drops_media(self):
        result = normalize_one(message("audio", audio={"id": 12345}))
        assert result.type == MessageType.AUDIO
        assert result.media_ref is None
        assert result.preview == "[AUDIO]"

    def test_media_body_not_an_object(self):
        result = normalize_one(message("image", image="M1"))
        assert result.type == MessageType.IMAGE
        assert result.media_ref is None

    def test_null_type_is_other(self):
        result = normalize_one(message(None))
        assert result.type == MessageType.OTHER
        assert result.preview == "[UNKNOWN]"

    def test_missing_type_is_other(self):
        raw = message("text")
        del raw["type"]
        result = normalize_one(raw)
        assert result.type == MessageType.OTHER
        assert result.preview == "[UNKNOWN]"

    def test_unreadable_text_body(self):
        result = normalize_one(message("text", text=["Hola"]))
        assert result.type == MessageType.TEXT
        assert result.text is None
        assert result.preview == ""

    def test_numeric_sender(self):
        result = normalize_one(message("text", sender=51999, text={"body": "Hola"}))
        assert result.phone == "51999"

    def test_unreadable_message_id(self):
        result = normalize_one(message("text", text={"body": "Hola"}, id={"nested": True}))
        assert result.wa_message_id is None
        assert result.text == "Hola"


class TestContactName:

    def test_numeric_wa_id_still_matches(self):
        events = decode_delivery(make_delivery(
            messages=[message("text", text={"body": "Hola"})],
            contacts=[{"wa_id": 51999, "profile": {"name": "Ana"}}],
        ))
        assert len(events) == 1
        assert normalize(events[0]).contact_name == "Ana"

    def test_unreadable_contact_keeps_sibling_message(self):
        events = decode_delivery(make_delivery(
            messages=[message("text", text={"body": "Hola"})],
            contacts=[{"wa_id": "51999", "profile": {"name": {"first": "Ana"}}}],
        ))
        assert len(events) == 1
        result = normalize(events[0])
        assert result.text == "Hola"
        assert result.contact_name is None

    def test_contact_of_another_number_is_not_used(self):
        events = decode_delivery(make_delivery(
            messages=[message("text", sender="B", text={"body": "Hola"})],
            contacts=[{"wa_id": "A", "profile": {"name": "Ana"}}],
        ))
        assert normalize(events[0]).contact_name is None

    def test_lone_contact_without_wa_id(self):
        events = decode_delivery(make_delivery(
            messages=[message("text", text={"body": "Hola"})],
            contacts=[{"profile": {"name": "Ana"}}],
        ))
        assert normalize(events[0]).contact_name == "Ana"


class TestPartialEnvelopes:

    def test_null_messages_with_statuses(self):
        payload = make_delivery(statuses=[{"id": "wamid.x", "status": "read"}])
        payload["entry"][0]["changes"][0]["value"]["messages"] = None
        events = decode_delivery(payload)
        assert [type(e) for e in events] == [StatusEvent]

    def test_null_contacts(self):
        payload = make_delivery(messages=[message("text", text={"body": "a"})])
        payload["entry"][0]["changes"][0]["value"]["contacts"] = None
        assert len(decode_delivery(payload)) == 1

    def test_unreadable_entry_skipped(self):
        payload = make_delivery(messages=[message("text", text={"body": "a"})])
        payload["entry"].insert(0, "junk")
        assert len(decode_delivery(payload)) == 1

    def test_unreadable_change_skipped(self):
        payload = make_delivery(messages=[message("text", text={"body": "a"})])
        payload["entry"][0]["changes"].insert(0, {"field": ["messages"], "value": {}})
        assert len(decode_delivery(payload)) == 1
