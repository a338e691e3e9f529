"""Tests for the Evolution API dialect."""

import pytest

from chatdesk.errors import NormalizationError
from chatdesk.whatsapp.evolution_adapter import matches, split, to_event
from chatdesk.whatsapp.models import (
    ChatUpdated,
    ConnectionChanged,
    ContactUpdated,
    MessageReceived,
    QrUpdated,
    Skipped,
)
from helpers import INSTANCE_ID, PHONE, REMOTE_JID, evolution_message, image_message


class TestEvolutionMessages:
    def test_text_message(self):
        event = to_event(evolution_message())

        assert isinstance(event, MessageReceived)
        assert event.instance_id == INSTANCE_ID
        assert event.provider_message_id == "MSG1"
        assert event.chat_id == PHONE
        assert event.remote_jid == REMOTE_JID
        assert event.body == "Oi"
        assert event.message_type == "text"
        assert event.sender_display_name == "Maria"
        assert event.from_me is False
        assert event.timestamp == 1714560000000
        assert event.media_ref is None
        assert event.dialect == "evolution"

    def test_image_with_caption(self):
        event = to_event(evolution_message(message=image_message(caption="look")))

        assert event.message_type == "image"
        assert event.body == "look"
        assert event.media_ref.url == "https://mmg.example/enc/abc"
        assert event.media_ref.media_key == "bWVkaWEta2V5"
        assert event.media_ref.file_length == 2048

    def test_image_without_caption_gets_marker(self):
        event = to_event(evolution_message(message=image_message()))
        assert event.body == "[Image]"

    def test_inline_base64_on_record(self):
        payload = evolution_message(message={"audioMessage": {"mimetype": "audio/ogg"}})
        payload["data"]["base64"] = "T2dnUw=="
        event = to_event(payload)
        assert event.media_ref.inline_base64 == "T2dnUw=="

    def test_from_me_flag(self):
        event = to_event(evolution_message(from_me=True))
        assert event.from_me is True

    def test_group_message(self):
        payload = evolution_message(remote_jid="120363021234567890@g.us")
        payload["data"]["key"]["participant"] = "5511888888888@s.whatsapp.net"
        event = to_event(payload)
        assert event.is_group is True
        assert event.chat_id == "120363021234567890"
        assert event.participant == "5511888888888@s.whatsapp.net"

    def test_missing_timestamp_uses_receipt_time(self):
        event = to_event(evolution_message(timestamp=None))
        assert event.timestamp > 1714560000000

    def test_broadcast_skipped(self):
        result = to_event(evolution_message(remote_jid="status@broadcast"))
        assert isinstance(result, Skipped)
        assert result.reason == "broadcast chat"

    def test_reaction_skipped(self):
        result = to_event(evolution_message(message={"reactionMessage": {"text": "+1"}}))
        assert isinstance(result, Skipped)

    def test_missing_remote_jid_raises(self):
        payload = evolution_message()
        del payload["data"]["key"]["remoteJid"]
        with pytest.raises(NormalizationError, match="remoteJid"):
            to_event(payload)

    def test_missing_message_id_raises(self):
        payload = evolution_message()
        payload["data"]["key"]["id"] = ""
        with pytest.raises(NormalizationError, match="message id"):
            to_event(payload)

    def test_missing_data_raises(self):
        with pytest.raises(NormalizationError):
            to_event({"event": "messages.upsert", "instance": INSTANCE_ID})


class TestEvolutionInstanceEvents:
    def test_qrcode_updated(self):
        event = to_event(
            {
                "event": "qrcode.updated",
                "instance": INSTANCE_ID,
                "data": {"qrcode": {"base64": "data:image/png;base64,AAA", "pairingCode": "ABCD"}},
                "date_time": "2024-05-01T12:00:00Z",
            }
        )
        assert isinstance(event, QrUpdated)
        assert event.qr_code == "data:image/png;base64,AAA"
        assert event.pairing_code == "ABCD"
        assert event.timestamp == 1714564800000

    def test_qr_without_code_raises(self):
        with pytest.raises(NormalizationError, match="qr"):
            to_event({"event": "qrcode.updated", "instance": INSTANCE_ID, "data": {"qrcode": {}}})

    @pytest.mark.parametrize(
        "raw,state",
        [("open", "open"), ("connecting", "connecting"), ("close", "close"), ("refused", "connecting")],
    )
    def test_connection_update(self, raw, state):
        event = to_event(
            {
                "event": "connection.update",
                "instance": INSTANCE_ID,
                "data": {"state": raw, "wuid": "5511@s.whatsapp.net", "profileName": "Acme"},
            }
        )
        assert isinstance(event, ConnectionChanged)
        assert event.state == state
        assert event.raw_state == raw
        assert event.owner_jid == "5511@s.whatsapp.net"

    def test_chats_upsert_list_is_split(self):
        payload = {
            "event": "chats.upsert",
            "instance": INSTANCE_ID,
            "data": [{"id": REMOTE_JID, "unreadMessages": 2}, {"id": "1203@g.us", "name": "Team"}],
        }
        parts = split(payload)
        events = [to_event(p) for p in parts]

        assert len(parts) == 2
        assert all(isinstance(e, ChatUpdated) for e in events)
        assert events[0].unread_count == 2
        assert events[1].is_group is True
        assert events[1].name == "Team"

    def test_contacts_update(self):
        event = to_event(
            {
                "event": "contacts.update",
                "instance": INSTANCE_ID,
                "data": {"remoteJid": REMOTE_JID, "pushName": "Maria Silva"},
            }
        )
        assert isinstance(event, ContactUpdated)
        assert event.name == "Maria Silva"
        assert event.chat_id == PHONE

    def test_unsupported_event_skipped(self):
        result = to_event({"event": "presence.update", "instance": INSTANCE_ID, "data": {}})
        assert isinstance(result, Skipped)
        assert result.event_name == "presence.update"


class TestEvolutionShape:
    def test_matches(self):
        assert matches(evolution_message())
        assert not matches({"event": "messagesUpsert", "instance": {"name": "x"}})
        assert not matches({"keyId": "1"})

    def test_messages_set_split(self):
        payload = evolution_message()
        record = payload["data"]
        payload["data"] = {"messages": [record, {**record, "key": {**record["key"], "id": "MSG2"}}]}
        assert [p["data"]["key"]["id"] for p in split(payload)] == ["MSG1", "MSG2"]
