"""Legacy flat single-message payloads (no event envelope).

    {"keyId": "3EB0...", "keyRemoteJid": "5511...@s.whatsapp.net",
     "keyFromMe": false, "pushName": "Maria", "messageType": "conversation",
     "content": {"text": "Oi"}, "messageTimestamp": 1714560000,
     "instanceId": 42}
"""

from __future__ import annotations

from typing import Any

from chatdesk.errors import NormalizationError
from chatdesk.infra.time import now_ms

from . import records
from .models import Dialect, InboundEvent, Skipped

NAME = "flat"


def matches(payload: dict[str, Any]) -> bool:
    return "keyId" in payload and "keyRemoteJid" in payload


def split(payload: dict[str, Any]) -> list[dict[str, Any]]:
    return [payload]


def to_event(payload: dict[str, Any]) -> InboundEvent | Skipped:
    instance = payload.get("instanceId", payload.get("instance"))
    if isinstance(instance, dict):
        instance = instance.get("name") or instance.get("instanceId")
    if instance is None or not str(instance).strip():
        raise NormalizationError("missing instance")
    return records.message_from_flat(str(instance).strip(), payload, now_ms(), NAME)


DIALECT = Dialect(name=NAME, matches=matches, split=split, to_event=to_event)
