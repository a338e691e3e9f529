"""Tasks client with idempotent enqueue.

Backends selectable via TASKS_BACKEND env var:
- inline (default): runs a registered local handler for the task path
  immediately, otherwise records the task (dev/tests)
- http: sends tasks to the worker via HTTP POST
"""

import os
import threading
from collections import OrderedDict
from typing import Callable

TASKS_BACKEND = os.environ.get("TASKS_BACKEND", "inline")
EXECUTED_IDS_MAX = int(os.environ.get("TASKS_EXECUTED_IDS_MAX", "10000"))

InlineHandler = Callable[[dict], None]


class TasksClient:
    """Tasks client with idempotent enqueue by task_id.

    Tracks the most recent task_ids to ensure idempotency (same task_id =
    no-op). Past max_executed_ids the oldest ids are evicted, and a
    repeat of an evicted task_id is enqueued again.

    Args:
        backend: "inline" or "http" (TASKS_BACKEND when omitted).
        inline_handlers: url_path -> handler, executed by the inline backend.
        max_executed_ids: Number of task_ids remembered.
    """

    def __init__(
        self,
        backend: str | None = None,
        inline_handlers: dict[str, InlineHandler] | None = None,
        max_executed_ids: int = EXECUTED_IDS_MAX,
    ) -> None:
        self._executed_ids: OrderedDict[str, None] = OrderedDict()
        self._max_executed_ids = max_executed_ids
        self._scheduled_tasks: list[dict] = []
        self._backend = backend or TASKS_BACKEND
        self._inline_handlers = dict(inline_handlers or {})
        self._lock = threading.Lock()

    def register_inline_handler(self, url_path: str, handler: InlineHandler) -> None:
        self._inline_handlers[url_path] = handler

    def enqueue_http(
        self,
        task_id: str,
        url_path: str,
        payload: dict,
        correlation_id: str | None = None,
    ) -> bool:
        """Enqueue task for execution by the worker.

        Idempotent by task_id: if same task_id was already enqueued,
        returns False without re-enqueuing.

        Args:
            task_id: Unique identifier for idempotency.
            url_path: Worker endpoint path (e.g., "/tasks/media/process").
            payload: Task data (must not contain PII).
            correlation_id: Optional correlation ID for tracing.

        Returns:
            True if task was enqueued (new task_id).
            False if no-op (task_id already seen) or the HTTP enqueue failed.

        Raises:
            ValueError: If TASKS_BACKEND is unknown.
        """
        with self._lock:
            if task_id in self._executed_ids:
                self._executed_ids.move_to_end(task_id)
                return False
            self._executed_ids[task_id] = None
            while len(self._executed_ids) > self._max_executed_ids:
                self._executed_ids.popitem(last=False)

        if self._backend == "inline":
            handler = self._inline_handlers.get(url_path)
            if handler is not None:
                handler(payload)
                return True
            self._scheduled_tasks.append({
                "task_id": task_id,
                "url_path": url_path,
                "payload": payload,
                "correlation_id": correlation_id,
            })
            return True

        elif self._backend == "http":
            from chatdesk.tasks.http_backend import enqueue_http
            enqueued = enqueue_http(task_id, url_path, payload, correlation_id)
            if not enqueued:
                # Allow a later redelivery to try again
                with self._lock:
                    self._executed_ids.pop(task_id, None)
            return enqueued

        else:
            raise ValueError(f"Unknown TASKS_BACKEND: {self._backend}")

    def was_executed(self, task_id: str) -> bool:
        """Check if task_id was already executed/enqueued."""
        with self._lock:
            return task_id in self._executed_ids

    def get_scheduled_tasks(self) -> list[dict]:
        """Get list of recorded inline tasks (useful for testing)."""
        return list(self._scheduled_tasks)

    def clear(self) -> None:
        """Clear executed task_ids and recorded tasks (useful for testing)."""
        with self._lock:
            self._executed_ids.clear()
            self._scheduled_tasks.clear()
