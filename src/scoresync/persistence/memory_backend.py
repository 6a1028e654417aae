"""In-memory backends for unit tests and local runs: dict-backed fakes."""

from __future__ import annotations

import time
from typing import Callable


class MemoryCacheBackend:
    """Dict-backed ICacheBackend. Entries expire after their TTL."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._store: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return None
        return value

    def setex(self, key: str, ttl: int, value: str) -> None:
        self._store[key] = (value, self._clock() + ttl)

    def set_if_absent(self, key: str, ttl: int, value: str) -> bool:
        if self.get(key) is not None:
            return False
        self.setex(key, ttl, value)
        return True

    def delete(self, key: str) -> None:
        self._store.pop(key, None)

    def delete_if_equals(self, key: str, value: str) -> bool:
        if self.get(key) != value:
            return False
        del self._store[key]
        return True


class MemoryFileStore:
    """Dict-backed IFileStore."""

    def __init__(self) -> None:
        self._files: dict[str, bytes] = {}

    def read(self, path: str) -> bytes:
        return self._files[path]

    def write(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        self._files[path] = data
        return path

    def list_files(self, prefix: str) -> list[str]:
        return [k for k in self._files if k.startswith(prefix)]
