"""Optimistic-view reconciliation.

A viewer may render a provisional message before its durable write is
confirmed. When the stored message arrives (through the fan-out), it must
replace the provisional entry, never duplicate it.

An entry matches the stored message when:
  - both carry the same correlation_id, or
  - they belong to the same chat (ticket_id, else chat_id), have the same
    content, and their timestamps are within RECONCILE_WINDOW_MS.

Entries are plain dicts with ticket_id and/or chat_id, content,
timestamp (ms) and optional correlation_id / provider_message_id / id.
`stored` may be a stored row or a fan-out notification
(chatdesk.domain.messages.change_notification); a notification whose
content was truncated matches on prefix.
"""

from __future__ import annotations

from typing import Any

RECONCILE_WINDOW_MS = 5000


def _row_id(item: dict[str, Any]) -> Any:
    # Notifications carry the row id as message_id
    return item.get("id") or item.get("message_id")


def _same_stored(entry: dict[str, Any], stored: dict[str, Any]) -> bool:
    row_id = _row_id(entry)
    if row_id is not None and row_id == _row_id(stored):
        return True
    provider_id = entry.get("provider_message_id")
    return provider_id is not None and provider_id == stored.get("provider_message_id")


def _same_chat(entry: dict[str, Any], stored: dict[str, Any]) -> bool:
    for field in ("ticket_id", "chat_id"):
        if entry.get(field) is not None and stored.get(field) is not None:
            return entry[field] == stored[field]
    return False


def _same_content(entry: dict[str, Any], stored: dict[str, Any]) -> bool:
    content = entry.get("content")
    stored_content = stored.get("content")
    if content is None or stored_content is None:
        return False
    if stored.get("content_truncated"):
        return content.startswith(stored_content)
    return content == stored_content


def matches_provisional(
    entry: dict[str, Any],
    stored: dict[str, Any],
    window_ms: int = RECONCILE_WINDOW_MS,
) -> bool:
    correlation_id = entry.get("correlation_id")
    if correlation_id is not None and correlation_id == stored.get("correlation_id"):
        return True
    if not _same_chat(entry, stored) or not _same_content(entry, stored):
        return False
    try:
        delta = abs(int(entry["timestamp"]) - int(stored["timestamp"]))
    except (KeyError, TypeError, ValueError):
        return False
    return delta <= window_ms


def reconcile_provisional(
    provisional: list[dict[str, Any]],
    stored: dict[str, Any],
    window_ms: int = RECONCILE_WINDOW_MS,
) -> list[dict[str, Any]]:
    """Merge a confirmed message into a viewer's message list.

    Returns a new list where the first matching entry (already-stored copy
    first, then a provisional match) is replaced by `stored`; if nothing
    matches, `stored` is appended.
    """
    result = list(provisional)
    confirmed = {**stored, "provisional": False}

    for index, entry in enumerate(result):
        if _same_stored(entry, stored):
            result[index] = confirmed
            return result

    for index, entry in enumerate(result):
        if entry.get("provisional", True) and matches_provisional(entry, stored, window_ms):
            result[index] = confirmed
            return result

    result.append(confirmed)
    return result
