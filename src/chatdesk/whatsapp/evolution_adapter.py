"""Evolution API adapter - detect, split and normalize webhook payloads.

Envelope:
    {"event": "messages.upsert", "instance": "acme-01",
     "data": {...} | [...], "date_time": "2024-05-01T12:00:00.000Z"}

Message records are keyed (`data.key.remoteJid`, `data.message`).
"""

from __future__ import annotations

from typing import Any

from chatdesk.errors import NormalizationError
from chatdesk.infra.time import now_ms

from . import content as c
from . import records
from .models import Dialect, InboundEvent, Skipped

NAME = "evolution"


def matches(payload: dict[str, Any]) -> bool:
    """Evolution envelopes name the instance with a plain string."""
    return isinstance(payload.get("event"), str) and isinstance(payload.get("instance"), str)


def split(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """One envelope per record for list-valued `data` (chats.set, messages.set)."""
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        data = data["messages"]
    if isinstance(data, list):
        return [{**payload, "data": item} for item in data]
    return [payload]


def _instance_id(payload: dict[str, Any]) -> str:
    instance = payload.get("instance")
    if isinstance(instance, str) and instance.strip():
        return instance.strip()
    raise NormalizationError("missing instance")


def to_event(payload: dict[str, Any]) -> InboundEvent | Skipped:
    """Normalize one single-record Evolution envelope.

    Raises:
        NormalizationError: If required fields are missing or invalid.
    """
    event_name = payload.get("event")
    family = c.event_family(event_name)
    if family is None:
        return Skipped("unsupported event", event_name if isinstance(event_name, str) else None)

    instance_id = _instance_id(payload)
    data = payload.get("data")
    if not isinstance(data, dict):
        raise NormalizationError("missing data")

    received = now_ms()
    timestamp = c.parse_timestamp(payload.get("date_time"), received)

    if family == "message":
        return records.message_from_keyed(instance_id, data, received, NAME)
    if family == "qr":
        return records.qr_from_record(instance_id, data, timestamp)
    if family == "connection":
        return records.connection_from_record(instance_id, data, timestamp)
    if family == "chat":
        return records.chat_from_record(instance_id, data, timestamp)
    return records.contact_from_record(instance_id, data, timestamp)


DIALECT = Dialect(name=NAME, matches=matches, split=split, to_event=to_event)
