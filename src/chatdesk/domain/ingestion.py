"""Ingestion pipeline - one webhook delivery in, durable rows out.

    raw -> normalize_batch -> per event:
        message_received -> dedup claim -> customer -> ticket -> message
                            -> fan-out -> media task (media messages)
        qr / connection / chat / contact -> instance handlers
        skipped -> counted

Every event is isolated: a failure is logged with the payload shape and
the rest of the delivery continues. Nothing here raises to the ingress.

ATTENTION PII: bodies, names, phones and JIDs are never logged.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chatdesk.errors import DuplicateEvent, NormalizationError, UnknownInstanceError
from chatdesk.infra.backoff import BackoffController
from chatdesk.infra.fanout import Broadcaster
from chatdesk.infra.store import DurableStore
from chatdesk.media.analysis import MEDIA_TASK_PATH, media_task_id
from chatdesk.observability.correlation import (
    bind_instance_id,
    get_correlation_id,
    unbind_instance_id,
)
from chatdesk.observability.logging import get_logger, message_id_prefix
from chatdesk.observability.redaction import payload_shape, safe_log_context
from chatdesk.tasks.client import TasksClient
from chatdesk.whatsapp.jid import phone_from_chat_id
from chatdesk.whatsapp.models import (
    ChatUpdated,
    ConnectionChanged,
    ContactUpdated,
    InboundEvent,
    MessageReceived,
    QrUpdated,
    Skipped,
)
from chatdesk.whatsapp.normalizer import normalize_batch

from .customers import resolve_customer
from .dedup import IdempotencyGuard
from .instances import (
    handle_chat_updated,
    handle_connection_changed,
    handle_contact_updated,
    handle_qr_updated,
    resolve_client_scope,
)
from .messages import Message, store_message
from .names import ATTENDANT_NAME, DEFAULT_NAME_POLICY, NamePolicy
from .tickets import resolve_ticket

logger = get_logger(__name__)


@dataclass
class IngestReport:
    """Per-delivery counters; `outcomes` lists one entry per event."""

    stored: int = 0
    duplicates: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: list[str] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        self.outcomes.append(outcome)
        if outcome == "stored":
            self.stored += 1
        elif outcome == "duplicate":
            self.duplicates += 1
        elif outcome == "skipped":
            self.skipped += 1
        elif outcome == "failed":
            self.failed += 1
        else:
            self.applied += 1


def customer_identity(event: MessageReceived) -> str:
    """Customer identity key: the phone, or the group id for group chats."""
    if event.is_group:
        return event.chat_id
    return phone_from_chat_id(event.chat_id) or event.chat_id


def observed_customer_name(event: MessageReceived) -> str | None:
    """Name that may describe the customer.

    Own messages carry the operator's profile name and group messages the
    participant's, so neither names the customer.
    """
    if event.from_me or event.is_group:
        return None
    return event.sender_display_name


class IngestionPipeline:
    """Materializes normalized events.

    Args:
        store: Durable store.
        broadcaster: Fan-out for stored messages (None disables fan-out).
        guard: Idempotency guard (a fresh one over `store` when omitted).
        tasks_client: Receives media tasks (None disables media tasks).
        name_policy: Synthetic-name policy.
        controller: Backoff controller for conflict retries.
    """

    def __init__(
        self,
        store: DurableStore,
        broadcaster: Broadcaster | None = None,
        guard: IdempotencyGuard | None = None,
        tasks_client: TasksClient | None = None,
        *,
        name_policy: NamePolicy = DEFAULT_NAME_POLICY,
        controller: BackoffController | None = None,
    ) -> None:
        self.store = store
        self.broadcaster = broadcaster
        self.guard = guard or IdempotencyGuard(store)
        self.tasks_client = tasks_client
        self.name_policy = name_policy
        self.controller = controller

    def ingest(self, raw: Any, source_format_hint: str | None = None) -> IngestReport:
        """Process one webhook delivery. Never raises for per-event failures."""
        report = IngestReport()
        for outcome in normalize_batch(raw, source_format_hint):
            if isinstance(outcome, NormalizationError):
                logger.warning(
                    "webhook event rejected",
                    extra={
                        "extra_fields": safe_log_context(
                            reason=outcome.reason, shape=payload_shape(outcome.raw)
                        )
                    },
                )
                report.record("failed")
                continue
            if isinstance(outcome, Skipped):
                logger.info(
                    "webhook event skipped",
                    extra={
                        "extra_fields": safe_log_context(
                            reason=outcome.reason, event=outcome.event_name
                        )
                    },
                )
                report.record("skipped")
                continue
            report.record(self._process_isolated(outcome))
        return report

    def _process_isolated(self, event: InboundEvent) -> str:
        token = bind_instance_id(event.instance_id)
        try:
            return self.handle_event(event)
        except DuplicateEvent as exc:
            logger.info(
                "message already processed",
                extra={
                    "extra_fields": safe_log_context(
                        message_id=message_id_prefix(exc.provider_message_id)
                    )
                },
            )
            return "duplicate"
        except UnknownInstanceError:
            logger.warning(
                "event for unregistered instance dropped",
                extra={"extra_fields": safe_log_context(kind=event.kind)},
            )
            return "failed"
        except Exception:
            logger.exception(
                "event processing failed",
                extra={"extra_fields": safe_log_context(kind=event.kind)},
            )
            return "failed"
        finally:
            unbind_instance_id(token)

    def handle_event(self, event: InboundEvent) -> str:
        """Dispatch one canonical event. Returns its outcome name."""
        if isinstance(event, MessageReceived):
            return self.ingest_message(event)
        if isinstance(event, QrUpdated):
            handle_qr_updated(self.store, event)
            return "qr_updated"
        if isinstance(event, ConnectionChanged):
            handle_connection_changed(self.store, event)
            return "connection_changed"
        if isinstance(event, ChatUpdated):
            handle_chat_updated(self.store, event)
            return "chat_updated"
        if isinstance(event, ContactUpdated):
            handle_contact_updated(self.store, event, policy=self.name_policy)
            return "contact_updated"
        raise TypeError(f"unsupported event: {type(event).__name__}")

    def ingest_message(self, event: MessageReceived) -> str:
        """Materialize a message event. Returns "stored".

        Raises:
            DuplicateEvent: The message was already materialized (or a
                concurrent delivery holds its claim).
        """
        log_ctx = {"message_id": message_id_prefix(event.provider_message_id)}

        if not self.guard.claim(event.instance_id, event.provider_message_id):
            raise DuplicateEvent(event.instance_id, event.provider_message_id)

        try:
            result = self._materialize(event)
        except Exception:
            self.guard.release(event.instance_id, event.provider_message_id)
            raise
        self.guard.complete(event.instance_id, event.provider_message_id)

        if not result.inserted:
            raise DuplicateEvent(event.instance_id, event.provider_message_id)

        logger.info(
            "message stored",
            extra={
                "extra_fields": safe_log_context(
                    **log_ctx,
                    message_type=event.message_type,
                    from_me=event.from_me,
                    dialect=event.dialect,
                )
            },
        )
        if event.media_ref is not None:
            self._enqueue_media(event)
        return "stored"

    def _materialize(self, event: MessageReceived):
        client_scope_id = resolve_client_scope(self.store, event.instance_id)
        phone = customer_identity(event)

        customer = resolve_customer(
            self.store,
            client_scope_id,
            event.chat_id,
            observed_customer_name(event),
            phone,
            policy=self.name_policy,
            controller=self.controller,
        )
        ticket = resolve_ticket(
            self.store,
            client_scope_id,
            event.chat_id,
            event.instance_id,
            customer["id"],
            event.body,
            event.timestamp,
            customer["display_name"],
            controller=self.controller,
        )

        if event.from_me:
            sender_name = ATTENDANT_NAME
        else:
            sender_name = event.sender_display_name or customer["display_name"]

        message = Message(
            ticket_id=ticket["id"],
            instance_id=event.instance_id,
            provider_message_id=event.provider_message_id,
            from_me=event.from_me,
            sender_name=sender_name,
            content=event.body,
            message_type=event.message_type,
            timestamp=event.timestamp,
            media_ref=event.media_ref.to_dict(include_inline=True) if event.media_ref else None,
            remote_jid=event.remote_jid,
            chat_id=event.chat_id,
        )
        return store_message(self.store, self.broadcaster, message)

    def _enqueue_media(self, event: MessageReceived) -> None:
        if self.tasks_client is None:
            return
        task_id = media_task_id(event.instance_id, event.provider_message_id)
        try:
            self.tasks_client.enqueue_http(
                task_id=task_id,
                url_path=MEDIA_TASK_PATH,
                payload={
                    "instance_id": event.instance_id,
                    "provider_message_id": event.provider_message_id,
                },
                correlation_id=get_correlation_id() or None,
            )
        except Exception:
            # Media stays "received"; it is resolved lazily on first display
            logger.exception(
                "media task enqueue failed",
                extra={
                    "extra_fields": safe_log_context(
                        message_id=message_id_prefix(event.provider_message_id)
                    )
                },
            )
