"""CodeChat / Yumer API adapter.

Envelope:
    {"event": "messagesUpsert", "instance": {"name": "acme-01", "instanceId": 7},
     "data": {...flat record...} | {"messages": [...]}, "timestamp": "2024-..."}

Event names are camelCase. Message records are flat
(`keyId`, `keyRemoteJid`, `content`).
"""

from __future__ import annotations

from typing import Any

from chatdesk.errors import NormalizationError
from chatdesk.infra.time import now_ms

from . import content as c
from . import records
from .models import Dialect, InboundEvent, Skipped

NAME = "codechat"


def matches(payload: dict[str, Any]) -> bool:
    """CodeChat envelopes carry an instance object."""
    return isinstance(payload.get("event"), str) and isinstance(payload.get("instance"), dict)


def split(payload: dict[str, Any]) -> list[dict[str, Any]]:
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        data = data["messages"]
    if isinstance(data, list):
        return [{**payload, "data": item} for item in data]
    return [payload]


def _instance_id(payload: dict[str, Any]) -> str:
    instance = payload.get("instance") or {}
    for field in ("name", "instanceName", "instanceId", "id"):
        value = instance.get(field)
        if value is not None and str(value).strip():
            return str(value).strip()
    raise NormalizationError("missing instance")


def to_event(payload: dict[str, Any]) -> InboundEvent | Skipped:
    """Normalize one single-record CodeChat envelope.

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
    timestamp = c.parse_timestamp(payload.get("timestamp"), received)

    if family == "message":
        if isinstance(data.get("key"), dict):
            return records.message_from_keyed(instance_id, data, received, NAME)
        return records.message_from_flat(instance_id, data, received, NAME)
    if family == "qr":
        return records.qr_from_record(instance_id, data, timestamp)
    if family == "connection":
        return records.connection_from_record(instance_id, data, timestamp)
    if family == "chat":
        return records.chat_from_record(instance_id, data, timestamp)
    return records.contact_from_record(instance_id, data, timestamp)


DIALECT = Dialect(name=NAME, matches=matches, split=split, to_event=to_event)
