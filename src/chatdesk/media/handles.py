"""Releasable handles for resolved media bytes.

A handle exposes a URL a viewer can load and owns the backing resource.
The media cache calls release() exactly once when the entry is evicted.
"""

from __future__ import annotations

import base64
import mimetypes
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

MEDIA_CACHE_DIR = os.environ.get("MEDIA_CACHE_DIR") or None


class MediaHandle(Protocol):
    mime_type: str

    @property
    def url(self) -> str:
        ...

    @property
    def released(self) -> bool:
        ...

    def read(self) -> bytes:
        ...

    def release(self) -> None:
        ...


class TempFileHandle:
    """Bytes written to a temporary file, served as a file:// URL."""

    def __init__(self, data: bytes, mime_type: str, directory: str | None = MEDIA_CACHE_DIR) -> None:
        self.mime_type = mime_type
        self.size = len(data)
        suffix = mimetypes.guess_extension(mime_type.split(";")[0].strip()) or ""
        fd, path = tempfile.mkstemp(prefix="media-", suffix=suffix, dir=directory)
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        self._path = Path(path)
        self._released = False
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def url(self) -> str:
        return self._path.as_uri()

    @property
    def released(self) -> bool:
        return self._released

    def read(self) -> bytes:
        if self._released:
            raise RuntimeError("media handle already released")
        return self._path.read_bytes()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._path.unlink(missing_ok=True)


class InlineHandle:
    """Bytes kept in memory, served as a data: URL."""

    def __init__(self, data: bytes, mime_type: str) -> None:
        self.mime_type = mime_type
        self.size = len(data)
        self._data: bytes | None = data

    @property
    def url(self) -> str:
        if self._data is None:
            raise RuntimeError("media handle already released")
        encoded = base64.b64encode(self._data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    @property
    def released(self) -> bool:
        return self._data is None

    def read(self) -> bytes:
        if self._data is None:
            raise RuntimeError("media handle already released")
        return self._data

    def release(self) -> None:
        self._data = None
