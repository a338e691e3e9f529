"""Worker task route: media recovery and analysis.

Outcomes:
- Transient failures (store unavailable, unexpected errors) return 500 so
  the task queue retries.
- Permanent outcomes (message missing, media unavailable after the bounded
  ladder, analysis failed) return 200 with a terminal flag.
"""

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from chatdesk import runtime
from chatdesk.observability.correlation import get_correlation_id
from chatdesk.observability.logging import get_logger, message_id_prefix
from chatdesk.observability.redaction import safe_log_context

from ..task_auth import verify_task_auth

router = APIRouter(prefix="/tasks/media", tags=["tasks"])

logger = get_logger(__name__)

_TERMINAL_OUTCOMES = {"not_found", "no_media", "unavailable", "analysis_failed"}


class ProcessMediaRequest(BaseModel):
    """Request model for the media task (no PII)."""

    instance_id: str
    provider_message_id: str
    correlation_id: str | None = None


@router.post("/process")
async def process_media(request: Request, req: ProcessMediaRequest):
    """Resolve media for a stored message and run the analyzer.

    Returns:
        {"ok": true, "outcome": ...} on success.
        {"ok": false, "terminal": true, "outcome": ...} on permanent failure.
        500 on transient failure.
    """
    correlation_id = req.correlation_id or get_correlation_id()

    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    log_ctx = safe_log_context(
        correlationId=correlation_id,
        message_id=message_id_prefix(req.provider_message_id),
    )

    try:
        outcome = await run_in_threadpool(
            runtime.run_media_task,
            {"instance_id": req.instance_id, "provider_message_id": req.provider_message_id},
        )
    except Exception:
        logger.exception("media task failed", extra={"extra_fields": log_ctx})
        return Response(status_code=500, content="media task failed")

    logger.info("media task done", extra={"extra_fields": {**log_ctx, "outcome": outcome}})
    if outcome in _TERMINAL_OUTCOMES:
        return {"ok": False, "terminal": True, "outcome": outcome}
    return {"ok": True, "outcome": outcome}
