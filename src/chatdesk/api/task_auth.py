"""Shared authentication for worker task routes.

Tasks carry the X-Internal-Task-Secret header set by the HTTP task
backend. Fail-closed: with INTERNAL_TASK_SECRET unset every call is
rejected, except in local development (APP_ENV=local).
"""

from __future__ import annotations

import hmac
import os

from fastapi import Request

from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context

logger = get_logger(__name__)

TASK_SECRET_HEADER = "X-Internal-Task-Secret"


def is_local_env() -> bool:
    return os.environ.get("APP_ENV", "") == "local"


def verify_task_auth(request: Request) -> bool:
    """Verify the internal task secret.

    Args:
        request: FastAPI request object.

    Returns:
        True if authenticated, False otherwise.
    """
    expected = os.environ.get("INTERNAL_TASK_SECRET", "")
    if not expected:
        if is_local_env():
            logger.warning(
                "INTERNAL_TASK_SECRET not set - skipping task auth (local dev)",
                extra={"extra_fields": safe_log_context(auth_method="none")},
            )
            return True
        logger.error(
            "INTERNAL_TASK_SECRET not configured - fail closed",
            extra={"extra_fields": safe_log_context(reason="missing_secret_env")},
        )
        return False

    provided = request.headers.get(TASK_SECRET_HEADER, "")
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning(
            "task auth failed: secret mismatch",
            extra={"extra_fields": safe_log_context(reason="secret_mismatch")},
        )
        return False
    return True
