"""Tests for JID helpers."""

import pytest

from chatdesk.whatsapp.jid import (
    canonical_chat_id,
    is_broadcast_jid,
    is_group_jid,
    phone_from_chat_id,
    split_jid,
    to_remote_jid,
)


class TestCanonicalChatId:
    @pytest.mark.parametrize(
        "remote_jid",
        [
            "5511999999999@s.whatsapp.net",
            "5511999999999@c.us",
            "5511999999999:12@s.whatsapp.net",
            "5511999999999",
        ],
    )
    def test_suffixes_collapse_to_same_id(self, remote_jid):
        assert canonical_chat_id(remote_jid) == "5511999999999"

    def test_group_keeps_local_part(self):
        assert canonical_chat_id("120363021234567890@g.us") == "120363021234567890"


class TestJidKinds:
    def test_split(self):
        assert split_jid("123@S.WhatsApp.net") == ("123", "s.whatsapp.net")
        assert split_jid("123") == ("123", "")

    def test_group(self):
        assert is_group_jid("120363@g.us")
        assert not is_group_jid("5511@s.whatsapp.net")

    def test_broadcast(self):
        assert is_broadcast_jid("status@broadcast")
        assert is_broadcast_jid("12345@broadcast")
        assert not is_broadcast_jid("5511@s.whatsapp.net")

    def test_phone_digits(self):
        assert phone_from_chat_id("+55 (11) 99999-9999") == "5511999999999"

    def test_to_remote_jid(self):
        assert to_remote_jid("5511") == "5511@s.whatsapp.net"
        assert to_remote_jid("1203", is_group=True) == "1203@g.us"
        assert to_remote_jid("5511@c.us") == "5511@c.us"
