"""TTL cache of resolved media, keyed by (instance_id, message_id).

Entries are purged lazily on lookup and by sweep(). get() and put() run
sweep() themselves at most once per sweep interval, so expired entries for
keys nobody looks up again are released too. An expired entry is never
returned. Every eviction (expiry, purge, replacement, clear)
releases the entry's handle. Handles are released outside the lock.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass
from typing import Callable

from chatdesk.observability.logging import get_logger
from chatdesk.observability.redaction import safe_log_context

from .handles import MediaHandle

logger = get_logger(__name__)

MEDIA_CACHE_TTL_SECONDS = float(os.environ.get("MEDIA_CACHE_TTL_SECONDS", "1800"))
MEDIA_CACHE_SWEEP_SECONDS = float(os.environ.get("MEDIA_CACHE_SWEEP_SECONDS", "60"))

CacheKey = tuple[str, str]


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    handle: MediaHandle
    strategy: str
    mime_type: str
    created_at: float


class MediaCache:
    """Thread-safe TTL cache.

    Args:
        ttl_seconds: Entry lifetime.
        clock: Monotonic clock (injectable for tests).
        sweep_interval: Minimum seconds between opportunistic sweeps.
    """

    def __init__(
        self,
        ttl_seconds: float = MEDIA_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = MEDIA_CACHE_SWEEP_SECONDS,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl = ttl_seconds
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self._ttl

    def _maybe_sweep(self) -> None:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep < self._sweep_interval:
                return
            self._last_sweep = now
        self.sweep()

    def get(self, key: CacheKey) -> CacheEntry | None:
        """Live entry for key, or None (an expired entry is purged)."""
        self._maybe_sweep()
        stale: CacheEntry | None = None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._expired(entry, self._clock()):
                stale = self._entries.pop(key)
                entry = None
        if stale is not None:
            self._release(stale, "expired")
        return entry

    def put(self, key: CacheKey, handle: MediaHandle, strategy: str, mime_type: str) -> CacheEntry:
        self._maybe_sweep()
        entry = CacheEntry(
            key=key,
            handle=handle,
            strategy=strategy,
            mime_type=mime_type,
            created_at=self._clock(),
        )
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = entry
        if previous is not None and previous.handle is not handle:
            self._release(previous, "replaced")
        return entry

    def purge(self, key: CacheKey) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        self._release(entry, "purged")
        return True

    def sweep(self) -> int:
        """Evict every expired entry. Returns the number evicted."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if self._expired(e, now)]
            evicted = [self._entries.pop(k) for k in expired]
        for entry in evicted:
            self._release(entry, "expired")
        return len(evicted)

    def clear(self) -> None:
        with self._lock:
            evicted = list(self._entries.values())
            self._entries.clear()
        for entry in evicted:
            self._release(entry, "cleared")

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _release(self, entry: CacheEntry, reason: str) -> None:
        try:
            entry.handle.release()
        except OSError:
            logger.warning(
                "media handle release failed",
                extra={"extra_fields": safe_log_context(reason=reason, strategy=entry.strategy)},
                exc_info=True,
            )
