"""WhatsApp provider webhook ingress.

The provider retries on anything but 2xx, so once the caller is
authenticated the delivery is always acknowledged: malformed bodies and
per-event failures are logged, never surfaced as errors. Idempotent
materialization makes provider redelivery harmless.

Security:
- Payload contents (names, phones, JIDs, text) are never logged
- Only payload shape (keys) and event counters are logged
"""

import hmac
import json
import os
from typing import Any

from fastapi import APIRouter, Header, Request, Response
from fastapi.concurrency import run_in_threadpool

from chatdesk import runtime
from chatdesk.domain.ingestion import IngestionPipeline
from chatdesk.observability.correlation import get_correlation_id
from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context
from chatdesk.whatsapp.normalizer import DIALECTS

router = APIRouter(prefix="/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)

ACCEPTED = {"accepted": True}


def _get_pipeline() -> IngestionPipeline:
    """Get the ingestion pipeline (allows test injection)."""
    return runtime.get_pipeline()


def _check_secret(provided: str | None) -> bool:
    """Webhook secret validation (fail-closed outside local dev)."""
    correlation_id = get_correlation_id()
    expected_secret = os.environ.get("WEBHOOK_SECRET", "")
    if not expected_secret:
        if os.environ.get("APP_ENV", "") == "local":
            logger.warning(
                "WEBHOOK_SECRET not set - skipping validation (local dev)",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
            )
            return True
        logger.error(
            "WEBHOOK_SECRET not configured - rejecting webhook (fail-closed)",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    if not provided or not hmac.compare_digest(provided, expected_secret):
        logger.warning(
            "webhook secret mismatch",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return False
    return True


async def _receive(request: Request, secret: str | None, dialect: str | None) -> Any:
    if not _check_secret(secret):
        return Response(status_code=401, content="unauthorized")

    correlation_id = get_correlation_id()

    body = await request.body()
    try:
        payload: Any = json.loads(body)
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id, size=len(body))},
        )
        return ACCEPTED

    try:
        report = await run_in_threadpool(_get_pipeline().ingest, payload, dialect)
    except Exception:
        logger.exception(
            "webhook ingestion failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return ACCEPTED

    logger.info(
        "webhook processed",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                dialect=dialect,
                stored=report.stored,
                duplicates=report.duplicates,
                applied=report.applied,
                skipped=report.skipped,
                failed=report.failed,
            )
        },
    )
    return ACCEPTED


@router.post("")
async def whatsapp_webhook(
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
) -> Any:
    """Receive a provider webhook; the dialect is detected from the payload.

    Returns:
        200 {"accepted": true} once authenticated.
        401 Unauthorized if secret validation fails.
    """
    return await _receive(request, x_webhook_secret, None)


@router.post("/{dialect}")
async def whatsapp_webhook_dialect(
    dialect: str,
    request: Request,
    x_webhook_secret: str | None = Header(None, alias="X-Webhook-Secret"),
) -> Any:
    """Receive a provider webhook with an explicit dialect ("evolution", "codechat", "flat").

    Returns:
        200 {"accepted": true} once authenticated.
        401 Unauthorized if secret validation fails.
        404 Not Found for an unknown dialect.
    """
    if dialect not in {d.name for d in DIALECTS}:
        return Response(status_code=404, content="unknown dialect")
    return await _receive(request, x_webhook_secret, dialect)
