"""HTTP backend for tasks - sends tasks to worker via HTTP POST.

Used where the public ingress and the worker run as separate processes.
The worker authenticates calls with the shared X-Internal-Task-Secret.
"""

import os

import requests

from chatdesk.observability.correlation import CORRELATION_ID_HEADER
from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context

logger = get_logger(__name__)

WORKER_BASE_URL = os.environ.get("WORKER_BASE_URL", "http://worker:8000")
INTERNAL_TASK_SECRET = os.environ.get("INTERNAL_TASK_SECRET", "")
HTTP_TIMEOUT = int(os.environ.get("TASKS_HTTP_TIMEOUT", "30"))


def enqueue_http(
    task_id: str,
    url_path: str,
    payload: dict,
    correlation_id: str | None = None,
) -> bool:
    """Enqueue task via HTTP POST to worker.

    Args:
        task_id: Unique task identifier (for logging/tracing).
        url_path: Worker endpoint path (e.g., "/tasks/media/process").
        payload: Task payload (must be PII-free).
        correlation_id: Optional correlation ID for tracing.

    Returns:
        True if request succeeded (2xx), False otherwise.
    """
    url = f"{WORKER_BASE_URL}{url_path}"
    headers = {
        "Content-Type": "application/json",
        CORRELATION_ID_HEADER: correlation_id or "",
        "X-Task-Id": task_id,
    }
    if INTERNAL_TASK_SECRET:
        headers["X-Internal-Task-Secret"] = INTERNAL_TASK_SECRET

    try:
        response = requests.post(
            url,
            json=payload,
            headers=headers,
            timeout=HTTP_TIMEOUT,
        )
        response.raise_for_status()
        logger.info(
            "HTTP task enqueued successfully",
            extra={"extra_fields": safe_log_context(task_id=task_id, url_path=url_path)},
        )
        return True
    except requests.RequestException as e:
        logger.error(
            "HTTP task enqueue failed",
            extra={
                "extra_fields": safe_log_context(
                    task_id=task_id, url_path=url_path, error_type=type(e).__name__
                )
            },
        )
        return False
