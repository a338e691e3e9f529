"""Media processing task: recover bytes, then run the external analyzer.

Status transitions of a media message:

    received -> failed      media could not be recovered (content untouched)
    received -> processed   media recovered, no analyzer configured
    processed -> analyzed   analyzer produced an annotation
    processed -> failed     analyzer failed; a descriptive placeholder is
                            stored as the annotation

Security: media bytes and annotations are NEVER logged.
"""

from __future__ import annotations

import base64
import os
from typing import Any, Protocol

import requests

from chatdesk.domain.messages import get_message, update_processing_status
from chatdesk.errors import AnalysisFailure
from chatdesk.infra.backoff import BackoffController, BackoffPolicy
from chatdesk.infra.store import DurableStore
from chatdesk.observability.logging import get_logger, message_id_prefix
from chatdesk.observability.redaction import safe_log_context
from chatdesk.whatsapp.models import MediaRef

from .recovery import MediaRecoveryEngine

logger = get_logger(__name__)

ANALYZER_TIMEOUT = float(os.environ.get("ANALYZER_HTTP_TIMEOUT", "60"))

ANALYSIS_POLICY = BackoffPolicy(max_attempts=2, initial_delay=1.0, max_delay=2.0, retry_on=(AnalysisFailure,))

MEDIA_TASK_PATH = "/tasks/media/process"


def media_task_id(instance_id: str, provider_message_id: str) -> str:
    return f"media:{instance_id}:{provider_message_id}"


def analysis_placeholder(content_type: str) -> str:
    return f"[{content_type} analysis unavailable]"


class Analyzer(Protocol):
    def analyze(self, data: bytes, content_type: str, mime_type: str) -> str:
        """Return a text annotation (transcript, description). Raise AnalysisFailure."""
        ...


class HttpAnalyzer:
    """Analyzer calling an HTTP service.

    POST {url} {"contentType", "mimeType", "base64"} -> {"text": "..."}
    """

    def __init__(self, url: str, timeout: float = ANALYZER_TIMEOUT) -> None:
        self._url = url
        self._timeout = timeout

    def analyze(self, data: bytes, content_type: str, mime_type: str) -> str:
        payload = {
            "contentType": content_type,
            "mimeType": mime_type,
            "base64": base64.b64encode(data).decode("ascii"),
        }
        try:
            response = requests.post(self._url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            raise AnalysisFailure(f"analyzer request failed: {type(e).__name__}") from e

        text = body.get("text") if isinstance(body, dict) else None
        if not isinstance(text, str) or not text.strip():
            raise AnalysisFailure("analyzer returned no text")
        return text.strip()


def analyzer_from_env() -> Analyzer | None:
    url = os.environ.get("ANALYZER_URL", "")
    return HttpAnalyzer(url) if url else None


def process_media_message(
    store: DurableStore,
    engine: MediaRecoveryEngine,
    analyzer: Analyzer | None,
    instance_id: str,
    provider_message_id: str,
    *,
    controller: BackoffController | None = None,
) -> str:
    """Run media recovery and analysis for one stored message.

    Returns:
        Outcome: "not_found", "no_media", "unavailable", "processed",
        "analyzed" or "analysis_failed".
    """
    log_ctx = {"message_id": message_id_prefix(provider_message_id)}

    row = get_message(store, instance_id, provider_message_id)
    if row is None:
        logger.warning("media task for unknown message", extra={"extra_fields": safe_log_context(**log_ctx)})
        return "not_found"

    raw_ref: dict[str, Any] | None = row.get("media_ref")
    if not raw_ref:
        return "no_media"

    ref = MediaRef.from_dict(raw_ref)
    resolved = engine.resolve_or_placeholder(
        instance_id,
        provider_message_id,
        ref,
        ref.content_type,
        chat_id=row.get("remote_jid"),
    )
    if not resolved.available:
        update_processing_status(store, row["id"], "failed")
        return "unavailable"

    update_processing_status(store, row["id"], "processed")
    if analyzer is None:
        return "processed"

    data = resolved.read()
    runner = controller or BackoffController()
    try:
        annotation = runner.run(
            lambda: analyzer.analyze(data, ref.content_type, resolved.mime_type),
            ANALYSIS_POLICY,
            label="media:analyze",
        )
    except AnalysisFailure as e:
        logger.warning(
            "media analysis failed",
            extra={"extra_fields": safe_log_context(**log_ctx, error_type=type(e).__name__)},
        )
        update_processing_status(
            store, row["id"], "failed", annotation=analysis_placeholder(ref.content_type)
        )
        return "analysis_failed"

    update_processing_status(store, row["id"], "analyzed", annotation=annotation)
    logger.info(
        "media analyzed",
        extra={"extra_fields": safe_log_context(**log_ctx, annotation_len=len(annotation))},
    )
    return "analyzed"
