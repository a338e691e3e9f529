"""Tests for the worker media task route."""

import base64

import pytest
from fastapi.testclient import TestClient

from chatdesk import runtime
from chatdesk.api.factory import create_app
from chatdesk.domain.messages import Message, get_message, store_message
from chatdesk.infra.store import MemoryStore
from chatdesk.media.cache import MediaCache
from chatdesk.media.recovery import MediaRecoveryEngine
from chatdesk.whatsapp.models import MediaRef

TASK_SECRET = "task-secret"
INSTANCE = "acme-01"


@pytest.fixture
def worker_client(monkeypatch):
    monkeypatch.setenv("INTERNAL_TASK_SECRET", TASK_SECRET)
    monkeypatch.delenv("ANALYZER_URL", raising=False)
    return TestClient(create_app(role="worker"))


@pytest.fixture
def media_store():
    store = MemoryStore()
    ref = MediaRef("image", "image/jpeg", inline_base64=base64.b64encode(b"jpeg").decode())
    store_message(
        store,
        None,
        Message("t1", INSTANCE, "IMG1", False, "Maria", "[Image]", "image", 1714560000000,
                media_ref=ref.to_dict(include_inline=True)),
    )
    runtime.set_store(store)
    runtime.set_media_engine(MediaRecoveryEngine(None, MediaCache(ttl_seconds=60)))
    return store


def _post(client, body, secret=TASK_SECRET):
    headers = {"X-Internal-Task-Secret": secret} if secret else {}
    return client.post("/tasks/media/process", json=body, headers=headers)


class TestMediaTaskRoute:
    def test_requires_task_secret(self, worker_client, media_store):
        response = _post(worker_client, {"instance_id": INSTANCE, "provider_message_id": "IMG1"}, secret="bad")
        assert response.status_code == 401

    def test_processes_media(self, worker_client, media_store):
        response = _post(worker_client, {"instance_id": INSTANCE, "provider_message_id": "IMG1"})

        assert response.status_code == 200
        assert response.json() == {"ok": True, "outcome": "processed"}
        assert get_message(media_store, INSTANCE, "IMG1")["processing_status"] == "processed"

    def test_unknown_message_is_terminal(self, worker_client, media_store):
        response = _post(worker_client, {"instance_id": INSTANCE, "provider_message_id": "NOPE"})
        assert response.status_code == 200
        assert response.json() == {"ok": False, "terminal": True, "outcome": "not_found"}

    def test_invalid_body(self, worker_client, media_store):
        assert _post(worker_client, {"instance_id": INSTANCE}).status_code == 422

    def test_transient_failure_returns_500(self, worker_client, monkeypatch):
        def broken(_payload):
            raise RuntimeError("store down")

        monkeypatch.setattr(runtime, "run_media_task", broken)
        response = _post(worker_client, {"instance_id": INSTANCE, "provider_message_id": "IMG1"})
        assert response.status_code == 500

    def test_not_mounted_on_public_role(self):
        client = TestClient(create_app(role="public"))
        assert client.post("/tasks/media/process", json={}).status_code == 404


class TestInlineMediaTask:
    def test_runtime_tasks_client_runs_media_task_inline(self, media_store, monkeypatch):
        monkeypatch.delenv("ANALYZER_URL", raising=False)
        client = runtime.get_tasks_client()
        client.enqueue_http(
            "media:acme-01:IMG1",
            "/tasks/media/process",
            {"instance_id": INSTANCE, "provider_message_id": "IMG1"},
        )
        assert get_message(media_store, INSTANCE, "IMG1")["processing_status"] == "processed"
