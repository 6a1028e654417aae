"""In-memory IGradebookClient for unit tests and local dry runs.

Holds courses, criteria, scores and overrides in dicts. Failures, job
statuses and write-visibility lag can be scripted per test.
"""

from __future__ import annotations

import itertools
from typing import Iterable

from scoresync.core.exceptions import RemoteServiceError
from scoresync.models.gradebook import (
    Assignment,
    AssignmentSpec,
    CourseGradeSnapshot,
    ImportStatus,
    JobStatus,
    MetricDefinitionSpec,
    RubricSpec,
)
from scoresync.models.rollup import Criterion, CriterionScore, RollupSnapshot, StudentRollup
from scoresync.models.workflow import StudentUpdate


class InMemoryGradebook:
    """Dict-backed IGradebookClient."""

    def __init__(self) -> None:
        self._ids = itertools.count(1000)
        self.criteria: dict[str, dict[str, Criterion]] = {}
        self.scores: dict[str, dict[str, dict[str, float | None]]] = {}
        self.assignments: dict[str, dict[str, Assignment]] = {}
        self.overrides: dict[str, dict[str, float]] = {}
        self.enrollments: dict[str, dict[str, str]] = {}
        self.course_grades: dict[str, CourseGradeSnapshot] = {}
        self.override_enabled: set[str] = set()

        # Scripting knobs
        self.write_failures: dict[str, int] = {}
        self.override_write_failures: set[str] = set()
        self.import_statuses: list[ImportStatus] = []
        self.job_statuses: list[JobStatus] = []
        self.visibility_lag = 0
        self.fail_override_fetch = False
        self.fail_enable_override = False
        self.fail_bulk_submit = False
        self.failing_grade_courses: set[str] = set()

        # Recorded traffic
        self.calls: list[str] = []
        self.score_writes: list[tuple[str, str, float]] = []
        self.override_writes: list[tuple[str, float]] = []
        self.bulk_requests: list[list[StudentUpdate]] = []

        self._imports: dict[str, tuple[str, MetricDefinitionSpec]] = {}
        self._rubric_criteria: dict[str, str] = {}
        self._jobs: dict[str, tuple[str, str, list[StudentUpdate]]] = {}
        self._pending: list[list] = []  # [remaining_reads, course, student, criterion, score]

    # ------------------------------------------------------------------
    # Seeding helpers
    # ------------------------------------------------------------------

    def add_criterion(self, course_id: str, criterion_id: str, title: str,
                      alignments: Iterable[str] = ()) -> Criterion:
        criterion = Criterion(id=criterion_id, title=title, alignments=list(alignments))
        self.criteria.setdefault(course_id, {})[criterion_id] = criterion
        self.scores.setdefault(course_id, {})
        return criterion

    def add_student(self, course_id: str, student_id: str, scores: dict[str, float | None],
                    enrollment_id: str | None = None, override: float | None = None) -> None:
        self.scores.setdefault(course_id, {})[student_id] = dict(scores)
        self.enrollments.setdefault(course_id, {})[student_id] = enrollment_id or f"e{student_id}"
        if override is not None:
            self.overrides.setdefault(course_id, {})[student_id] = override

    def add_assignment(self, course_id: str, assignment: Assignment) -> None:
        self.assignments.setdefault(course_id, {})[assignment.id] = assignment

    def link_rubric_criterion(self, criterion_id: str, metric_definition_id: str) -> None:
        self._rubric_criteria[criterion_id] = metric_definition_id

    def _next_id(self) -> str:
        return str(next(self._ids))

    def _record_score(self, course_id: str, student_id: str, criterion_id: str, score: float) -> None:
        outcome_id = self._rubric_criteria.get(criterion_id, criterion_id)
        if self.visibility_lag > 0:
            self._pending.append([self.visibility_lag, course_id, student_id, outcome_id, score])
        else:
            self.scores.setdefault(course_id, {}).setdefault(student_id, {})[outcome_id] = score

    def _settle_pending(self, course_id: str) -> None:
        still_pending = []
        for entry in self._pending:
            remaining, course, student, outcome_id, score = entry
            if course != course_id:
                still_pending.append(entry)
            elif remaining <= 0:
                self.scores.setdefault(course, {}).setdefault(student, {})[outcome_id] = score
            else:
                entry[0] = remaining - 1
                still_pending.append(entry)
        self._pending = still_pending

    # ------------------------------------------------------------------
    # IGradebookClient
    # ------------------------------------------------------------------

    async def fetch_rollups(self, course_id: str) -> RollupSnapshot:
        self.calls.append("fetch_rollups")
        self._settle_pending(course_id)
        students = [
            StudentRollup(
                student_id=student_id,
                scores=[CriterionScore(criterion_id=cid, score=s) for cid, s in scores.items()],
            )
            for student_id, scores in self.scores.get(course_id, {}).items()
        ]
        criteria = [c.model_copy(deep=True) for c in self.criteria.get(course_id, {}).values()]
        return RollupSnapshot(students=students, criteria=criteria)

    async def create_metric_definition(self, course_id: str, spec: MetricDefinitionSpec) -> str:
        self.calls.append("create_metric_definition")
        import_id = self._next_id()
        self._imports[import_id] = (course_id, spec)
        return import_id

    async def poll_import_status(self, course_id: str, import_id: str) -> ImportStatus:
        self.calls.append("poll_import_status")
        status = self.import_statuses.pop(0) if self.import_statuses else ImportStatus.SUCCEEDED
        if status == ImportStatus.SUCCEEDED and import_id in self._imports:
            course, spec = self._imports.pop(import_id)
            self.add_criterion(course, self._next_id(), spec.title)
        return status

    async def find_assignment(self, course_id: str, name: str) -> Assignment | None:
        self.calls.append("find_assignment")
        return next((a for a in self.assignments.get(course_id, {}).values() if a.name == name), None)

    async def get_assignment(self, course_id: str, assignment_id: str) -> Assignment | None:
        self.calls.append("get_assignment")
        return self.assignments.get(course_id, {}).get(assignment_id)

    async def create_assignment(self, course_id: str, spec: AssignmentSpec) -> str:
        self.calls.append("create_assignment")
        assignment = Assignment(id=self._next_id(), name=spec.name)
        self.add_assignment(course_id, assignment)
        return assignment.id

    async def create_rubric(self, course_id: str, assignment_id: str, metric_definition_id: str,
                            spec: RubricSpec) -> str:
        self.calls.append("create_rubric")
        assignment = self.assignments.get(course_id, {}).get(assignment_id)
        if assignment is None:
            raise RemoteServiceError("createRubric", f"Assignment {assignment_id} not found", status=404)
        rubric_id, criterion_id = self._next_id(), f"_{self._next_id()}"
        self.assignments[course_id][assignment_id] = assignment.model_copy(update={
            "rubric_id": rubric_id, "rubric_title": spec.title, "criterion_ids": [criterion_id],
        })
        self.link_rubric_criterion(criterion_id, metric_definition_id)
        metric = self.criteria.get(course_id, {}).get(metric_definition_id)
        if metric is not None:
            metric.alignments.append(f"assignment_{assignment_id}")
        return rubric_id

    async def submit_student_score(self, course_id: str, assignment_id: str, student_id: str,
                                   criterion_id: str, score: float) -> None:
        self.calls.append("submit_student_score")
        remaining = self.write_failures.get(student_id, 0)
        if remaining:
            self.write_failures[student_id] = remaining - 1
            raise RemoteServiceError(f"submitStudentScore:{student_id}", "HTTP 500", status=500)
        self.score_writes.append((student_id, criterion_id, score))
        self._record_score(course_id, student_id, criterion_id, score)

    async def submit_override_score(self, enrollment_id: str, score: float) -> float | None:
        self.calls.append("submit_override_score")
        for course_id, by_student in self.enrollments.items():
            for student_id, eid in by_student.items():
                if eid != enrollment_id:
                    continue
                if student_id in self.override_write_failures:
                    raise RemoteServiceError("submitOverrideScore", "GraphQL error", status=200)
                self.override_writes.append((student_id, score))
                self.overrides.setdefault(course_id, {})[student_id] = score
                return score
        raise RemoteServiceError("submitOverrideScore", f"Unknown enrollment {enrollment_id}", status=404)

    async def begin_bulk_update(self, course_id: str, assignment_id: str, criterion_id: str,
                                updates: list[StudentUpdate]) -> str:
        self.calls.append("begin_bulk_update")
        if self.fail_bulk_submit:
            raise RemoteServiceError("beginBulkUpdate", "HTTP 500", status=500)
        self.bulk_requests.append(list(updates))
        job_id = self._next_id()
        self._jobs[job_id] = (course_id, criterion_id, list(updates))
        return job_id

    async def poll_job(self, job_id: str) -> JobStatus:
        self.calls.append("poll_job")
        status = self.job_statuses.pop(0) if self.job_statuses else JobStatus.COMPLETED
        if status == JobStatus.COMPLETED and job_id in self._jobs:
            course_id, criterion_id, updates = self._jobs.pop(job_id)
            for update in updates:
                self._record_score(course_id, update.student_id, criterion_id, update.new_average)
        return status

    async def fetch_override_scores(self, course_id: str) -> dict[str, float]:
        self.calls.append("fetch_override_scores")
        if self.fail_override_fetch:
            raise RemoteServiceError("fetchOverrideScores", "HTTP 503", status=503)
        return dict(self.overrides.get(course_id, {}))

    async def resolve_enrollment_id(self, course_id: str, student_id: str) -> str | None:
        return self.enrollments.get(course_id, {}).get(student_id)

    async def enable_override(self, course_id: str) -> None:
        self.calls.append("enable_override")
        if self.fail_enable_override:
            raise RemoteServiceError("enableOverride", "HTTP 403", status=403)
        self.override_enabled.add(course_id)

    async def fetch_course_grade(self, course_id: str, student_id: str = "self") -> CourseGradeSnapshot | None:
        self.calls.append("fetch_course_grade")
        if course_id in self.failing_grade_courses:
            raise RemoteServiceError("fetchCourseGrade", "HTTP 500", status=500)
        return self.course_grades.get(course_id)
