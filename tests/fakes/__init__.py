"""Shared test doubles: memory backends, the in-memory gradebook and a fake clock."""

from __future__ import annotations

from scoresync.core.config import WorkflowConfig
from scoresync.gradebook.memory_client import InMemoryGradebook
from scoresync.models.gradebook import Assignment
from scoresync.orchestrator.approval import ScriptedApproval
from scoresync.orchestrator.progress import LoggingProgressSink
from scoresync.persistence.memory_backend import MemoryCacheBackend, MemoryFileStore


class FakeClock:
    """Monotonic clock advanced only by ``advance`` or by FakeSleep."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSleep:
    """Async sleep that records requested delays and advances a FakeClock."""

    def __init__(self, clock: FakeClock | None = None) -> None:
        self.clock = clock
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


COURSE_ID = "101"
METRIC_ID = "900"
ASSIGNMENT_ID = "500"
RUBRIC_ID = "300"
CRITERION_ID = "_77"


def fast_config(**overrides) -> WorkflowConfig:
    """WorkflowConfig with override writes off and short waits."""
    values = {
        "enable_override": False,
        "score_verify_attempts": 5,
        "score_verify_interval": 1.0,
        "override_verify_interval": 1.0,
        "import_poll_interval": 1.0,
        "bulk_poll_interval": 2.0,
    }
    values.update(overrides)
    return WorkflowConfig(**values)


def seeded_gradebook(
    students: dict[str, dict[str, float | None]] | None = None,
    *,
    course_id: str = COURSE_ID,
    with_setup: bool = True,
) -> InMemoryGradebook:
    """Course with two scored criteria and, optionally, the metric, placeholder assignment and rubric."""
    gradebook = InMemoryGradebook()
    gradebook.add_criterion(course_id, "10", "Essays")
    gradebook.add_criterion(course_id, "11", "Quizzes")
    if with_setup:
        gradebook.add_criterion(course_id, METRIC_ID, "Current Score", alignments=[f"assignment_{ASSIGNMENT_ID}"])
        gradebook.add_assignment(course_id, Assignment(
            id=ASSIGNMENT_ID,
            name="Current Score Assignment",
            rubric_id=RUBRIC_ID,
            rubric_title="Current Score Rubric",
            criterion_ids=[CRITERION_ID],
        ))
        gradebook.link_rubric_criterion(CRITERION_ID, METRIC_ID)
    for student_id, scores in (students or {}).items():
        gradebook.add_student(course_id, student_id, scores)
    return gradebook


__all__ = [
    "ASSIGNMENT_ID",
    "COURSE_ID",
    "CRITERION_ID",
    "METRIC_ID",
    "RUBRIC_ID",
    "FakeClock",
    "FakeSleep",
    "InMemoryGradebook",
    "LoggingProgressSink",
    "MemoryCacheBackend",
    "MemoryFileStore",
    "ScriptedApproval",
    "fast_config",
    "seeded_gradebook",
]
