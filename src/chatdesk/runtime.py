"""Process-wide components, built lazily from the environment.

Routes reach the pipeline through these getters; tests inject their own
instances with the setters (or reset_runtime()).

Env:
- STORE_BACKEND: "pg" (default) | "memory"
- FANOUT_BACKEND: "memory" (default) | "pg"
- DEDUP_BACKEND: "memory" (default) | "pg" (processed_events table)
- PROVIDER_BASE_URL / PROVIDER_API_TOKEN: enable remote media recovery
"""

from __future__ import annotations

import os
import threading

from chatdesk.domain.dedup import IdempotencyGuard, LocalDedupCache, PgDedupCache
from chatdesk.domain.ingestion import IngestionPipeline
from chatdesk.infra.fanout import Broadcaster, InMemoryBroadcaster, PgNotifyBroadcaster
from chatdesk.infra.pg_store import PostgresStore
from chatdesk.infra.store import DurableStore, MemoryStore
from chatdesk.media.analysis import MEDIA_TASK_PATH, analyzer_from_env, process_media_message
from chatdesk.media.cache import MediaCache
from chatdesk.media.provider import HttpProviderMediaApi
from chatdesk.media.recovery import MediaRecoveryEngine
from chatdesk.tasks.client import TasksClient

_lock = threading.RLock()

_store: DurableStore | None = None
_broadcaster: Broadcaster | None = None
_tasks_client: TasksClient | None = None
_media_engine: MediaRecoveryEngine | None = None
_pipeline: IngestionPipeline | None = None


def get_store() -> DurableStore:
    global _store
    with _lock:
        if _store is None:
            backend = os.environ.get("STORE_BACKEND", "pg")
            if backend == "memory":
                _store = MemoryStore()
            elif backend == "pg":
                _store = PostgresStore()
            else:
                raise ValueError(f"Unknown STORE_BACKEND: {backend}")
        return _store


def get_broadcaster() -> Broadcaster:
    global _broadcaster
    with _lock:
        if _broadcaster is None:
            backend = os.environ.get("FANOUT_BACKEND", "memory")
            if backend == "memory":
                _broadcaster = InMemoryBroadcaster()
            elif backend == "pg":
                _broadcaster = PgNotifyBroadcaster()
            else:
                raise ValueError(f"Unknown FANOUT_BACKEND: {backend}")
        return _broadcaster


def run_media_task(payload: dict) -> str:
    """Execute one media task payload {"instance_id", "provider_message_id"}."""
    return process_media_message(
        get_store(),
        get_media_engine(),
        analyzer_from_env(),
        payload["instance_id"],
        payload["provider_message_id"],
    )


def get_tasks_client() -> TasksClient:
    global _tasks_client
    with _lock:
        if _tasks_client is None:
            _tasks_client = TasksClient(inline_handlers={MEDIA_TASK_PATH: run_media_task})
        return _tasks_client


def get_media_engine() -> MediaRecoveryEngine:
    global _media_engine
    with _lock:
        if _media_engine is None:
            api = None
            if os.environ.get("PROVIDER_BASE_URL") and os.environ.get("PROVIDER_API_TOKEN"):
                api = HttpProviderMediaApi()
            _media_engine = MediaRecoveryEngine(api, MediaCache())
        return _media_engine


def get_pipeline() -> IngestionPipeline:
    global _pipeline
    with _lock:
        if _pipeline is None:
            store = get_store()
            if os.environ.get("DEDUP_BACKEND", "memory") == "pg":
                cache = PgDedupCache()
            else:
                cache = LocalDedupCache()
            _pipeline = IngestionPipeline(
                store,
                get_broadcaster(),
                IdempotencyGuard(store, cache),
                get_tasks_client(),
            )
        return _pipeline


def set_store(store: DurableStore | None) -> None:
    global _store
    with _lock:
        _store = store


def set_media_engine(engine: MediaRecoveryEngine | None) -> None:
    global _media_engine
    with _lock:
        _media_engine = engine


def set_pipeline(pipeline: IngestionPipeline | None) -> None:
    global _pipeline
    with _lock:
        _pipeline = pipeline


def reset_runtime() -> None:
    """Drop every cached component (tests)."""
    global _store, _broadcaster, _tasks_client, _media_engine, _pipeline
    with _lock:
        if _media_engine is not None:
            _media_engine.cache.clear()
        _store = None
        _broadcaster = None
        _tasks_client = None
        _media_engine = None
        _pipeline = None
