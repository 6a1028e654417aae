"""Course grade snapshots for display, fetched by a small pool of asyncio workers."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable

from scoresync.core.config import ReadPathConfig
from scoresync.core.exceptions import CacheError, ScoreSyncError
from scoresync.core.protocols import ICacheBackend, IGradebookClient
from scoresync.models.gradebook import CourseGradeSnapshot

logger = logging.getLogger(__name__)


class GradeSnapshotService:
    """Read-only. Cache hits are served directly; misses go through the worker queue."""

    def __init__(
        self,
        *,
        client: IGradebookClient,
        cache: ICacheBackend,
        config: ReadPathConfig | None = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self._config = config or ReadPathConfig()

    @staticmethod
    def cache_key(course_id: str, student_id: str = "self") -> str:
        return f"grade-snapshot:{course_id}:{student_id}"

    def _cached(self, course_id: str, student_id: str) -> CourseGradeSnapshot | None:
        try:
            raw = self._cache.get(self.cache_key(course_id, student_id))
        except CacheError as exc:
            logger.warning("Snapshot cache read failed for course %s: %s", course_id, exc)
            return None
        if raw is None:
            return None
        return CourseGradeSnapshot.model_validate_json(raw)

    def _store(self, snapshot: CourseGradeSnapshot, student_id: str) -> None:
        try:
            self._cache.setex(
                self.cache_key(snapshot.course_id, student_id),
                self._config.snapshot_ttl,
                snapshot.model_dump_json(),
            )
        except CacheError as exc:
            logger.warning("Snapshot cache write failed for course %s: %s", snapshot.course_id, exc)

    async def _fetch(self, course_id: str, student_id: str) -> CourseGradeSnapshot | None:
        try:
            snapshot = await self._client.fetch_course_grade(course_id, student_id)
        except ScoreSyncError as exc:
            logger.warning("Failed to fetch course grade for course %s: %s", course_id, exc)
            return None
        if snapshot is None:
            return None
        if snapshot.fetched_at is None:
            snapshot = snapshot.model_copy(update={"fetched_at": datetime.now(timezone.utc)})
        self._store(snapshot, student_id)
        return snapshot

    async def _worker(
        self,
        queue: asyncio.Queue[str],
        results: dict[str, CourseGradeSnapshot | None],
        student_id: str,
    ) -> None:
        while True:
            try:
                course_id = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                results[course_id] = await self._fetch(course_id, student_id)
            finally:
                queue.task_done()

    async def snapshots(
        self, course_ids: Iterable[str], student_id: str = "self"
    ) -> dict[str, CourseGradeSnapshot]:
        """Snapshot per course id. Courses whose fetch failed are left out."""
        ordered = list(dict.fromkeys(course_ids))
        results: dict[str, CourseGradeSnapshot | None] = {}

        queue: asyncio.Queue[str] = asyncio.Queue()
        for course_id in ordered:
            cached = self._cached(course_id, student_id)
            if cached is not None:
                results[course_id] = cached
            else:
                queue.put_nowait(course_id)

        pending = queue.qsize()
        if pending:
            width = max(1, min(self._config.worker_count, pending))
            logger.debug("Fetching %d course grades with %d workers", pending, width)
            await asyncio.gather(*(self._worker(queue, results, student_id) for _ in range(width)))

        return {cid: results[cid] for cid in ordered if results.get(cid) is not None}

    def invalidate(self, course_id: str, student_id: str = "self") -> None:
        self._cache.delete(self.cache_key(course_id, student_id))
