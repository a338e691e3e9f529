"""Tests for message content extraction shared by all dialects."""

import base64

import pytest

from chatdesk.errors import NormalizationError
from chatdesk.whatsapp import content as c


class TestExtractBody:
    def test_conversation_wins(self):
        message = {"conversation": "Oi", "extendedTextMessage": {"text": "other"}}
        assert c.extract_body(message) == "Oi"

    def test_extended_text(self):
        assert c.extract_body({"extendedTextMessage": {"text": "hello"}}) == "hello"

    def test_blank_conversation_falls_through(self):
        message = {"conversation": "  ", "extendedTextMessage": {"text": "hello"}}
        assert c.extract_body(message) == "hello"

    def test_image_caption(self):
        assert c.extract_body({"imageMessage": {"caption": "look"}}) == "look"

    def test_document_caption(self):
        assert c.extract_body({"documentMessage": {"caption": "invoice"}}) == "invoice"

    @pytest.mark.parametrize(
        "message,marker",
        [
            ({"imageMessage": {}}, "[Image]"),
            ({"audioMessage": {"seconds": 3}}, "[Audio]"),
            ({"videoMessage": {"caption": ""}}, "[Video]"),
            ({"stickerMessage": {}}, "[Sticker]"),
            ({"locationMessage": {"degreesLatitude": 1}}, "[Location]"),
            ({"contactMessage": {}}, "[Contact]"),
            ({}, "[Message]"),
        ],
    )
    def test_markers(self, message, marker):
        assert c.extract_body(message) == marker


class TestUnwrapAndType:
    def test_unwraps_ephemeral_and_view_once(self):
        message = {
            "ephemeralMessage": {
                "message": {"viewOnceMessageV2": {"message": {"imageMessage": {"caption": "x"}}}}
            }
        }
        assert c.unwrap_message(message) == {"imageMessage": {"caption": "x"}}

    def test_unwrap_none(self):
        assert c.unwrap_message(None) == {}

    def test_message_type(self):
        assert c.message_type({"conversation": "hi"}) == "text"
        assert c.message_type({"audioMessage": {}}) == "audio"
        assert c.message_type({"locationMessage": {}}) == "location"
        assert c.message_type({}, declared="imageMessage") == "image"
        assert c.message_type({}, declared="somethingNew") == "text"

    def test_noise(self):
        assert c.is_noise({"protocolMessage": {"type": 0}})
        assert c.is_noise({"reactionMessage": {}, "messageContextInfo": {}})
        assert not c.is_noise({"conversation": "hi", "messageContextInfo": {}})
        assert not c.is_noise({})


class TestMediaKey:
    def test_string_passthrough(self):
        assert c.media_key_to_base64("abc=") == "abc="

    def test_byte_list(self):
        assert c.media_key_to_base64([1, 2, 3]) == base64.b64encode(b"\x01\x02\x03").decode()

    def test_serialized_uint8array(self):
        value = {"1": 2, "0": 1, "2": 3}
        assert c.media_key_to_base64(value) == base64.b64encode(b"\x01\x02\x03").decode()

    def test_missing(self):
        assert c.media_key_to_base64(None) is None
        assert c.media_key_to_base64("") is None

    def test_unsupported_raises(self):
        with pytest.raises(NormalizationError):
            c.media_key_to_base64(12345)

    @pytest.mark.parametrize("value", [[300, 1], [-1], {"0": 256}, ["x"]])
    def test_out_of_range_bytes_raise(self, value):
        with pytest.raises(NormalizationError):
            c.media_key_to_base64(value)


class TestExtractMediaRef:
    def test_image_ref(self):
        message = {
            "imageMessage": {
                "url": "https://mmg.example/enc",
                "mediaKey": [9, 9],
                "directPath": "/v/t62/x",
                "mimetype": "image/jpeg",
                "fileLength": {"low": 2048, "high": 0},
            }
        }
        ref = c.extract_media_ref(message)
        assert ref.content_type == "image"
        assert ref.mime_type == "image/jpeg"
        assert ref.media_key == base64.b64encode(b"\x09\x09").decode()
        assert ref.file_length == 2048
        assert ref.has_encrypted_pointer

    def test_inline_bytes_attached(self):
        ref = c.extract_media_ref({"audioMessage": {}}, inline_base64="AAAA")
        assert ref.inline_base64 == "AAAA"
        assert ref.mime_type == "application/octet-stream"
        assert not ref.has_encrypted_pointer

    def test_text_has_no_ref(self):
        assert c.extract_media_ref({"conversation": "hi"}) is None


class TestParseTimestamp:
    @pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
    def test_non_finite_raises(self, value):
        with pytest.raises(NormalizationError):
            c.parse_timestamp(value, 0)

    def test_bad_protobuf_long_raises(self):
        with pytest.raises(NormalizationError):
            c.parse_timestamp({"low": "x"}, 0)

    def test_seconds_become_millis(self):
        assert c.parse_timestamp(1714560000, 0) == 1714560000000

    def test_millis_kept(self):
        assert c.parse_timestamp(1714560000123, 0) == 1714560000123

    def test_numeric_string(self):
        assert c.parse_timestamp("1714560000", 0) == 1714560000000

    def test_iso_string(self):
        assert c.parse_timestamp("2024-05-01T12:00:00Z", 0) == 1714564800000

    def test_protobuf_long(self):
        assert c.parse_timestamp({"low": 1714560000, "high": 0}, 0) == 1714560000000

    def test_missing_uses_default(self):
        assert c.parse_timestamp(None, 42) == 42
        assert c.parse_timestamp("", 42) == 42

    @pytest.mark.parametrize("value", ["yesterday", True, [1]])
    def test_garbage_raises(self, value):
        with pytest.raises(NormalizationError):
            c.parse_timestamp(value, 0)


class TestEventNames:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("messages.upsert", "messages.upsert"),
            ("MESSAGES_UPSERT", "messages.upsert"),
            ("messagesUpsert", "messages.upsert"),
            ("qr-updated", "qr.updated"),
            ("qrcodeUpdated", "qrcode.updated"),
        ],
    )
    def test_canonical_name(self, name, expected):
        assert c.canonical_event_name(name) == expected

    def test_families(self):
        assert c.event_family("MESSAGES_UPSERT") == "message"
        assert c.event_family("connectionUpdate") == "connection"
        assert c.event_family("QRCODE_UPDATED") == "qr"
        assert c.event_family("contactsUpsert") == "contact"
        assert c.event_family("presence.update") is None
        assert c.event_family(None) is None
