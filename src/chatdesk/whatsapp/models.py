"""Canonical inbound event model.

Every provider payload dialect is mapped onto one of these frozen
dataclasses. They are transient: produced once per provider callback,
consumed once by the ingestion pipeline.

ATTENTION PII:
- remote_jid, chat_id, body, sender_display_name and names are PII
- Never log them; log message id prefixes and kinds only
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Union

EventKind = Literal[
    "qr_updated",
    "connection_changed",
    "message_received",
    "chat_updated",
    "contact_updated",
]

ConnectionState = Literal["open", "connecting", "close"]

MEDIA_CONTENT_TYPES = ("image", "video", "audio", "document", "sticker")


@dataclass(frozen=True)
class MediaRef:
    """Reference to message media: an encrypted/remote pointer or inline bytes."""

    content_type: str
    mime_type: str = "application/octet-stream"
    url: str | None = None
    media_key: str | None = None
    direct_path: str | None = None
    inline_base64: str | None = None
    file_name: str | None = None
    file_length: int | None = None
    seconds: int | None = None

    @property
    def has_encrypted_pointer(self) -> bool:
        return bool(self.url and self.media_key)

    def to_dict(self, include_inline: bool = False) -> dict[str, Any]:
        """Serialize for storage. Inline bytes are dropped unless asked for."""
        data = {
            "content_type": self.content_type,
            "mime_type": self.mime_type,
            "url": self.url,
            "media_key": self.media_key,
            "direct_path": self.direct_path,
            "file_name": self.file_name,
            "file_length": self.file_length,
            "seconds": self.seconds,
        }
        if include_inline and self.inline_base64:
            data["inline_base64"] = self.inline_base64
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MediaRef":
        return cls(
            content_type=data.get("content_type", "document"),
            mime_type=data.get("mime_type") or "application/octet-stream",
            url=data.get("url"),
            media_key=data.get("media_key"),
            direct_path=data.get("direct_path"),
            inline_base64=data.get("inline_base64"),
            file_name=data.get("file_name"),
            file_length=data.get("file_length"),
            seconds=data.get("seconds"),
        )


@dataclass(frozen=True)
class QrUpdated:
    instance_id: str
    timestamp: int
    qr_code: str
    pairing_code: str | None = None
    kind: Literal["qr_updated"] = field(default="qr_updated", init=False)


@dataclass(frozen=True)
class ConnectionChanged:
    instance_id: str
    timestamp: int
    state: ConnectionState
    raw_state: str | None = None
    profile_name: str | None = None
    profile_pic_url: str | None = None
    owner_jid: str | None = None
    kind: Literal["connection_changed"] = field(default="connection_changed", init=False)


@dataclass(frozen=True)
class MessageReceived:
    """A chat message, inbound or echoed from the operator's own device."""

    instance_id: str
    timestamp: int
    provider_message_id: str
    chat_id: str
    remote_jid: str
    from_me: bool
    body: str
    message_type: str
    is_group: bool = False
    sender_display_name: str | None = None
    participant: str | None = None
    media_ref: MediaRef | None = None
    dialect: str = "evolution"
    kind: Literal["message_received"] = field(default="message_received", init=False)


@dataclass(frozen=True)
class ChatUpdated:
    instance_id: str
    timestamp: int
    chat_id: str
    remote_jid: str
    name: str | None = None
    is_group: bool = False
    unread_count: int = 0
    kind: Literal["chat_updated"] = field(default="chat_updated", init=False)


@dataclass(frozen=True)
class ContactUpdated:
    instance_id: str
    timestamp: int
    chat_id: str
    remote_jid: str
    name: str | None = None
    profile_pic_url: str | None = None
    is_group: bool = False
    kind: Literal["contact_updated"] = field(default="contact_updated", init=False)


InboundEvent = Union[QrUpdated, ConnectionChanged, MessageReceived, ChatUpdated, ContactUpdated]


@dataclass(frozen=True)
class Skipped:
    """A recognized-but-ignored event (unknown kind, broadcast, protocol noise)."""

    reason: str
    event_name: str | None = None


@dataclass(frozen=True)
class Dialect:
    """One provider payload dialect.

    Attributes:
        name: Dialect name, also accepted as a source format hint.
        matches: Heuristic shape detector (presence of known fields).
        split: Splits a multi-event delivery into single-event payloads.
        to_event: Maps one single-event payload to a canonical event.
    """

    name: str
    matches: Callable[[dict[str, Any]], bool]
    split: Callable[[dict[str, Any]], list[dict[str, Any]]]
    to_event: Callable[[dict[str, Any]], "InboundEvent | Skipped"]
