"""Event Normalizer - map any provider payload dialect to canonical events.

Dialects are tried in registry order; a `source_format_hint` (the dialect
name) bypasses detection. Adding a dialect means registering one more
Dialect, the pipeline never changes.
"""

from __future__ import annotations

from typing import Any, Iterator, Union

from chatdesk.errors import NormalizationError
from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import payload_shape, safe_log_context

from . import codechat_adapter, evolution_adapter, flat_adapter
from .models import Dialect, InboundEvent, Skipped

logger = get_logger(__name__)

Outcome = Union[InboundEvent, Skipped, NormalizationError]

DIALECTS: list[Dialect] = [
    codechat_adapter.DIALECT,
    evolution_adapter.DIALECT,
    flat_adapter.DIALECT,
]


def register_dialect(dialect: Dialect, first: bool = False) -> None:
    """Add a dialect detector (replacing one with the same name)."""
    DIALECTS[:] = [d for d in DIALECTS if d.name != dialect.name]
    if first:
        DIALECTS.insert(0, dialect)
    else:
        DIALECTS.append(dialect)


def detect_dialect(raw: dict[str, Any], source_format_hint: str | None = None) -> Dialect:
    """Pick the dialect for a payload.

    Raises:
        NormalizationError: Unknown hint or unrecognized payload shape.
    """
    if source_format_hint:
        for dialect in DIALECTS:
            if dialect.name == source_format_hint:
                return dialect
        raise NormalizationError(f"unknown source format: {source_format_hint}", raw)

    for dialect in DIALECTS:
        if dialect.matches(raw):
            return dialect
    raise NormalizationError("unrecognized payload shape", raw)


def _to_event(dialect: Dialect, raw: dict[str, Any]) -> InboundEvent | Skipped:
    try:
        return dialect.to_event(raw)
    except NormalizationError as exc:
        if exc.raw is None:
            exc.raw = raw
        raise
    except (ValueError, TypeError, OverflowError, AttributeError) as exc:
        raise NormalizationError(f"malformed {dialect.name} record", raw) from exc


def normalize(raw: Any, source_format_hint: str | None = None) -> InboundEvent | Skipped:
    """Normalize a single-event payload.

    Args:
        raw: Decoded JSON webhook body.
        source_format_hint: Optional dialect name ("evolution", "codechat", "flat").

    Returns:
        The canonical event, or Skipped for recognized-but-ignored events.

    Raises:
        NormalizationError: If the payload is malformed or carries several events.
    """
    if not isinstance(raw, dict):
        raise NormalizationError("payload is not an object", raw)

    dialect = detect_dialect(raw, source_format_hint)
    parts = dialect.split(raw)
    if not parts:
        return Skipped("empty delivery", raw.get("event"))
    if len(parts) > 1:
        raise NormalizationError("multi-event payload, use normalize_batch", raw)
    return _to_event(dialect, parts[0])


def normalize_batch(raw: Any, source_format_hint: str | None = None) -> Iterator[Outcome]:
    """Yield one outcome per event of a delivery.

    A delivery is a single envelope, a list of envelopes, or an envelope
    whose data holds several records. Failures are yielded, not raised, so
    one bad event never hides the others.
    """
    items = raw if isinstance(raw, list) else [raw]
    for item in items:
        if not isinstance(item, dict):
            yield NormalizationError("payload is not an object", item)
            continue
        try:
            dialect = detect_dialect(item, source_format_hint)
        except NormalizationError as exc:
            logger.warning(
                "unrecognized webhook payload",
                extra={"extra_fields": safe_log_context(shape=payload_shape(item))},
            )
            yield exc
            continue

        try:
            parts = dialect.split(item)
        except NormalizationError as exc:
            yield exc
            continue
        except (ValueError, TypeError, AttributeError):
            yield NormalizationError(f"malformed {dialect.name} envelope", item)
            continue

        for part in parts:
            try:
                yield _to_event(dialect, part)
            except NormalizationError as exc:
                yield exc
