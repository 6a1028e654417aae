"""Protocol interfaces for all scoresync abstractions.

All inter-layer communication uses these Protocols: structural typing,
no inheritance required, easy to test with isinstance().
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from scoresync.models.gradebook import (
        Assignment,
        AssignmentSpec,
        CourseGradeSnapshot,
        ImportStatus,
        JobStatus,
        MetricDefinitionSpec,
        RubricSpec,
    )
    from scoresync.models.rollup import RollupSnapshot
    from scoresync.models.workflow import StudentUpdate


# ---------------------------------------------------------------------------
# Remote Gradebook
# ---------------------------------------------------------------------------

@runtime_checkable
class IGradebookClient(Protocol):
    """Reads and writes against the remote gradebook (Canvas or in-memory)."""

    async def fetch_rollups(self, course_id: str) -> RollupSnapshot: ...

    async def create_metric_definition(self, course_id: str, spec: MetricDefinitionSpec) -> str: ...

    async def poll_import_status(self, course_id: str, import_id: str) -> ImportStatus: ...

    async def find_assignment(self, course_id: str, name: str) -> Assignment | None: ...

    async def get_assignment(self, course_id: str, assignment_id: str) -> Assignment | None: ...

    async def create_assignment(self, course_id: str, spec: AssignmentSpec) -> str: ...

    async def create_rubric(
        self, course_id: str, assignment_id: str, metric_definition_id: str, spec: RubricSpec
    ) -> str: ...

    async def submit_student_score(
        self, course_id: str, assignment_id: str, student_id: str, criterion_id: str, score: float
    ) -> None: ...

    async def submit_override_score(self, enrollment_id: str, score: float) -> float | None: ...

    async def begin_bulk_update(
        self, course_id: str, assignment_id: str, criterion_id: str, updates: list[StudentUpdate]
    ) -> str: ...

    async def poll_job(self, job_id: str) -> JobStatus: ...

    async def fetch_override_scores(self, course_id: str) -> dict[str, float]: ...

    async def resolve_enrollment_id(self, course_id: str, student_id: str) -> str | None: ...

    async def enable_override(self, course_id: str) -> None: ...

    async def fetch_course_grade(
        self, course_id: str, student_id: str = "self"
    ) -> CourseGradeSnapshot | None: ...


# ---------------------------------------------------------------------------
# Persistence: Cache Backend
# ---------------------------------------------------------------------------

@runtime_checkable
class ICacheBackend(Protocol):
    """Redis-compatible cache interface."""

    def get(self, key: str) -> str | None: ...

    def setex(self, key: str, ttl: int, value: str) -> None: ...

    def set_if_absent(self, key: str, ttl: int, value: str) -> bool: ...

    def delete(self, key: str) -> None: ...

    def delete_if_equals(self, key: str, value: str) -> bool: ...


# ---------------------------------------------------------------------------
# Persistence: File Store
# ---------------------------------------------------------------------------

@runtime_checkable
class IFileStore(Protocol):
    """S3-compatible artifact storage interface."""

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str: ...

    def list_files(self, prefix: str) -> list[str]: ...


# ---------------------------------------------------------------------------
# Run Lock
# ---------------------------------------------------------------------------

@runtime_checkable
class IRunLock(Protocol):
    """Per-course mutual exclusion held for the lifetime of an update run."""

    def acquire(self, course_id: str) -> bool: ...

    def release(self, course_id: str) -> None: ...


# ---------------------------------------------------------------------------
# Progress Sink
# ---------------------------------------------------------------------------

@runtime_checkable
class IProgressSink(Protocol):
    """Receives human-readable progress messages from the update flow."""

    def set_text(self, message: str) -> None: ...

    def soft_update(self, message: str) -> None: ...

    def hold(self, message: str, duration_ms: int) -> None: ...


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------

@runtime_checkable
class IApprovalPort(Protocol):
    """Yes/no decision point (setup creation, summary export)."""

    async def request_approval(self, question: str) -> bool: ...
