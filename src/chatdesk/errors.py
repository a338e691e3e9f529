"""Error taxonomy for the ingestion pipeline.

Per-event errors are isolated by the pipeline: they are logged and the rest
of the batch continues. None of them is allowed to reach the provider as a
webhook failure.
"""

from typing import Any


class NormalizationError(Exception):
    """Raised when a webhook payload cannot be mapped to a canonical event.

    Carries the raw payload so the caller can log its shape.
    """

    def __init__(self, reason: str, raw: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.raw = raw


class DuplicateEvent(Exception):
    """Control-flow outcome: the message was already materialized."""

    def __init__(self, instance_id: str, provider_message_id: str) -> None:
        super().__init__(f"duplicate message {provider_message_id[:8]}")
        self.instance_id = instance_id
        self.provider_message_id = provider_message_id


class MaterializationConflict(Exception):
    """Raised by a store when a concurrent upsert collided on a unique key."""

    def __init__(self, table: str, key: dict[str, Any] | None = None) -> None:
        super().__init__(f"upsert conflict on {table}")
        self.table = table
        self.key = key or {}


class UnknownInstanceError(Exception):
    """Raised when an event references an instance with no client scope."""

    pass


class OperationCancelled(Exception):
    """Raised when a caller cancelled an operation before any attempt ran."""

    pass


class RecoveryError(Exception):
    """All media recovery strategies were exhausted.

    Attributes:
        instance_id: Instance that owns the message.
        message_id: Provider message id of the media message.
        cause: Last underlying error (None if no strategy applied).
        attempted: Names of the strategies that were tried, in order.
    """

    def __init__(
        self,
        instance_id: str,
        message_id: str,
        cause: BaseException | None = None,
        attempted: list[str] | None = None,
    ) -> None:
        detail = type(cause).__name__ if cause is not None else "no applicable strategy"
        super().__init__(f"media unavailable ({detail})")
        self.instance_id = instance_id
        self.message_id = message_id
        self.cause = cause
        self.attempted = attempted or []


class AnalysisFailure(Exception):
    """The external analysis function failed or returned nothing usable."""

    pass
