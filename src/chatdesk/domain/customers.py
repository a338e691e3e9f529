"""Customer materializer.

Identity is (client_scope_id, phone). The display name follows a
monotonic-quality rule (see chatdesk.domain.names): a real name replaces a
synthetic one, never the other way around.

ATTENTION PII: phone and display_name are never logged.
"""

from __future__ import annotations

from typing import Any

from chatdesk.infra.backoff import BackoffController
from chatdesk.infra.store import DurableStore
from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context

from .materialize import upsert_entity
from .names import DEFAULT_NAME_POLICY, NamePolicy

logger = get_logger(__name__)

CUSTOMERS_TABLE = "customers"


def _name_merge(policy: NamePolicy, observed: str | None, phone: str):
    def merge(existing: dict[str, Any], _fields: dict[str, Any]) -> dict[str, Any]:
        upgraded = policy.upgrade(existing.get("display_name"), observed, phone)
        if upgraded is None:
            return {}
        return {"display_name": upgraded}

    return merge


def resolve_customer(
    store: DurableStore,
    client_scope_id: str,
    chat_id: str,
    observed_name: str | None,
    phone: str,
    *,
    policy: NamePolicy = DEFAULT_NAME_POLICY,
    controller: BackoffController | None = None,
) -> dict[str, Any]:
    """Find or create the customer for a chat identity.

    Args:
        store: Durable store.
        client_scope_id: Tenant owning the instance.
        chat_id: Canonical chat id the message arrived on.
        observed_name: Provider-observed name (may be synthetic or None).
        phone: Digits-only phone (identity key).
        policy: Synthetic-name policy.
        controller: Backoff controller for the conflict retry.

    Returns:
        The customer row after insert or name upgrade.
    """
    row = upsert_entity(
        store,
        CUSTOMERS_TABLE,
        {"client_scope_id": client_scope_id, "phone": phone},
        {
            "chat_identity": chat_id,
            "display_name": policy.display_name(observed_name, phone),
        },
        merge=_name_merge(policy, observed_name, phone),
        controller=controller,
    )
    return row


def apply_contact_name(
    store: DurableStore,
    client_scope_id: str,
    phone: str,
    name: str | None,
    *,
    policy: NamePolicy = DEFAULT_NAME_POLICY,
) -> bool:
    """Upgrade an existing customer's name from a contact update.

    Never creates a customer. Returns True if the name changed.
    """
    key = {"client_scope_id": client_scope_id, "phone": phone}
    existing = store.get(CUSTOMERS_TABLE, key)
    if existing is None:
        return False

    upgraded = policy.upgrade(existing.get("display_name"), name, phone)
    if upgraded is None:
        return False

    # Re-check through the merge so a concurrent upgrade is not overwritten
    result = store.upsert(
        CUSTOMERS_TABLE,
        key,
        {"chat_identity": existing.get("chat_identity"), "display_name": upgraded},
        list(key.keys()),
        merge=_name_merge(policy, name, phone),
    )
    changed = bool(result.row) and result.row.get("display_name") == upgraded
    if changed:
        logger.info(
            "customer name upgraded from contact update",
            extra={"extra_fields": safe_log_context(customer_id=existing.get("id"))},
        )
    return changed
