"""WhatsApp JID helpers.

A remote JID looks like "5511999999999@s.whatsapp.net", "5511999999999@c.us",
"5511999999999:12@s.whatsapp.net" (device suffix), "120363...@g.us" (group)
or "status@broadcast". Different payload dialects use different suffixes for
the same contact, so the canonical chat id is the bare local part.
"""

import re

GROUP_SERVER = "g.us"
USER_SERVER = "s.whatsapp.net"
BROADCAST_SERVER = "broadcast"

_NON_DIGITS = re.compile(r"\D")


def split_jid(remote_jid: str) -> tuple[str, str]:
    """Split a JID into (local part, server). Server is "" when absent."""
    local, _, server = remote_jid.strip().partition("@")
    return local, server.lower()


def canonical_chat_id(remote_jid: str) -> str:
    """Strip the provider suffix and device suffix from a remote JID.

    Examples:
        "5511999999999@c.us" -> "5511999999999"
        "5511999999999:12@s.whatsapp.net" -> "5511999999999"
    """
    local, _ = split_jid(remote_jid)
    return local.split(":", 1)[0]


def is_group_jid(remote_jid: str) -> bool:
    return split_jid(remote_jid)[1] == GROUP_SERVER


def is_broadcast_jid(remote_jid: str) -> bool:
    local, server = split_jid(remote_jid)
    return server == BROADCAST_SERVER or local == "status"


def phone_from_chat_id(chat_id: str) -> str:
    """Digits of a chat id (the contact's phone for one-to-one chats)."""
    return _NON_DIGITS.sub("", chat_id)


def to_remote_jid(chat_id: str, is_group: bool = False) -> str:
    """Rebuild a provider JID from a canonical chat id."""
    if "@" in chat_id:
        return chat_id
    return f"{chat_id}@{GROUP_SERVER if is_group else USER_SERVER}"
