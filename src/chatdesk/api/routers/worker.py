"""Worker/internal routes (APP_ROLE=worker)."""

import os

from fastapi import APIRouter

from chatdesk import runtime
from chatdesk.infra.pg_store import is_available

router = APIRouter()


@router.get("/tasks/health")
def tasks_health() -> dict:
    """Tasks subsystem health check."""
    return {"status": "ok", "subsystem": "tasks"}


@router.get("/internal/health")
def internal_health() -> dict:
    """Internal health: store reachability and media cache size."""
    if os.environ.get("STORE_BACKEND", "pg") == "pg":
        store = "ok" if is_available() else "unavailable"
    else:
        store = "memory"
    return {
        "status": "ok",
        "subsystem": "internal",
        "store": store,
        "media_cache_entries": len(runtime.get_media_engine().cache),
    }
