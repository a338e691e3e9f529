"""Shared pytest fixtures for chatdesk tests."""
import sys
sys.dont_write_bytecode = True

import pytest  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_runtime():
    """Drop process-wide components so tests never share a store or cache."""
    from chatdesk import runtime

    runtime.reset_runtime()
    yield
    runtime.reset_runtime()


@pytest.fixture
def store():
    from chatdesk.infra.store import MemoryStore

    return MemoryStore()


@pytest.fixture
def controller():
    """Backoff controller that never sleeps."""
    from chatdesk.infra.backoff import BackoffController

    return BackoffController(sleep=lambda _delay: None)


@pytest.fixture
def scoped_store(store):
    """Memory store with the test instance registered to a client scope."""
    from chatdesk.domain.instances import register_instance
    from helpers import CLIENT_SCOPE_ID, INSTANCE_ID

    register_instance(store, INSTANCE_ID, CLIENT_SCOPE_ID)
    return store
