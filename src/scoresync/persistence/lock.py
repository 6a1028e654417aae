"""Per-course run lock over an ICacheBackend (SET NX EX semantics)."""

from __future__ import annotations

import logging
import uuid

from scoresync.persistence.protocols import ICacheBackend

logger = logging.getLogger(__name__)


class CacheRunLock:
    """IRunLock implementation. The key expires after ``ttl`` if never released."""

    def __init__(self, cache: ICacheBackend, ttl: int = 3600, prefix: str = "lock:score-update") -> None:
        self._cache = cache
        self._ttl = ttl
        self._prefix = prefix
        self._owner = uuid.uuid4().hex

    def _key(self, course_id: str) -> str:
        return f"{self._prefix}:{course_id}"

    def acquire(self, course_id: str) -> bool:
        acquired = self._cache.set_if_absent(self._key(course_id), self._ttl, self._owner)
        if not acquired:
            logger.warning("Run lock for course %s is already held", course_id)
        return acquired

    def release(self, course_id: str) -> None:
        if not self._cache.delete_if_equals(self._key(course_id), self._owner):
            logger.info("Run lock for course %s was no longer ours to release", course_id)
