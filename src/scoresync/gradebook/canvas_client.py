"""Canvas LMS implementation of IGradebookClient over httpx.AsyncClient."""

from __future__ import annotations

import csv
import io
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import httpx

from scoresync.core.config import CanvasConfig
from scoresync.core.exceptions import RemoteServiceError
from scoresync.models.gradebook import (
    Assignment,
    AssignmentSpec,
    CourseGradeSnapshot,
    GradeSource,
    ImportStatus,
    JobStatus,
    MetricDefinitionSpec,
    RubricSpec,
)
from scoresync.models.rollup import Criterion, CriterionScore, RollupSnapshot, StudentRollup
from scoresync.models.workflow import StudentUpdate
from scoresync.persistence.cache import TTLCache

logger = logging.getLogger(__name__)

SET_OVERRIDE_MUTATION = """
mutation SetOverride($enrollmentId: ID!, $overrideScore: Float!) {
  setOverrideScore(input: { enrollmentId: $enrollmentId, overrideScore: $overrideScore }) {
    grades { customGradeStatusId overrideScore __typename }
    __typename
  }
}
"""

_IMPORT_STATES = {"succeeded": ImportStatus.SUCCEEDED, "failed": ImportStatus.FAILED}
_JOB_STATES = {s.value: s for s in JobStatus}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_assignment(data: dict[str, Any]) -> Assignment:
    settings = data.get("rubric_settings") or {}
    criteria = data.get("rubric") or []
    return Assignment(
        id=str(data["id"]),
        name=data.get("name", ""),
        rubric_id=str(settings["id"]) if settings.get("id") is not None else None,
        rubric_title=settings.get("title"),
        criterion_ids=[str(c["id"]) for c in criteria if isinstance(c, dict) and "id" in c],
    )


def _parse_rollups(rollups: list[dict[str, Any]], outcomes: list[dict[str, Any]]) -> RollupSnapshot:
    students = []
    for rollup in rollups:
        user = (rollup.get("links") or {}).get("user")
        if user is None:
            continue
        scores = [
            CriterionScore(
                criterion_id=str((s.get("links") or {}).get("outcome")),
                score=s.get("score") if _is_number(s.get("score")) else None,
            )
            for s in rollup.get("scores") or []
        ]
        students.append(StudentRollup(student_id=str(user), scores=scores))
    criteria = [
        Criterion(
            id=str(o["id"]),
            title=o.get("title") or "",
            alignments=[str(a) for a in o.get("alignments") or []],
        )
        for o in outcomes
    ]
    return RollupSnapshot(students=students, criteria=criteria)


def metric_definition_csv(spec: MetricDefinitionSpec) -> str:
    """Render the outcome import CSV (header row plus one outcome row with ratings)."""
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["vendor_guid", "object_type", "title", "description", "calculation_method", "mastery_points"])
    row: list[Any] = [
        f"scoresync_{uuid.uuid4().hex[:8]}",
        "outcome",
        spec.title,
        spec.description or f"Auto-generated outcome: {spec.title}",
        spec.calculation_method,
        spec.mastery_points,
    ]
    for rating in spec.ratings:
        row.extend([rating.points, rating.description])
    writer.writerow(row)
    return buf.getvalue()


class CanvasGradebookClient:
    """IGradebookClient backed by the Canvas REST and GraphQL APIs."""

    def __init__(
        self,
        config: CanvasConfig,
        *,
        client: httpx.AsyncClient | None = None,
        enrollment_cache: TTLCache[str, dict[str, str]] | None = None,
        assignment_name: str = "Current Score Assignment",
    ) -> None:
        self._config = config
        self._assignment_name = assignment_name
        if client is None:
            self._client = httpx.AsyncClient(base_url=config.base_url, timeout=config.timeout)
            self._owns_client = True
        else:
            self._client = client
            self._owns_client = False
        self._enrollments: TTLCache[str, dict[str, str]] = (
            enrollment_cache if enrollment_cache is not None else TTLCache(config.enrollment_cache_ttl)
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> CanvasGradebookClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"
        return headers

    async def _request(self, method: str, url: str, context: str, **kwargs: Any) -> httpx.Response:
        headers = {**self._headers(), **kwargs.pop("headers", {})}
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteServiceError(context, f"Network error: {exc}") from exc
        if response.is_error:
            raise RemoteServiceError(
                context,
                f"HTTP {response.status_code}",
                status=response.status_code,
                body=response.text[:500],
            )
        return response

    async def _json(self, method: str, url: str, context: str, **kwargs: Any) -> Any:
        response = await self._request(method, url, context, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise RemoteServiceError(
                context, "Invalid JSON response", status=response.status_code, body=response.text[:500]
            ) from exc

    async def _pages(self, url: str, context: str, params: dict[str, Any] | None = None):
        """Yield each page's JSON body following ``Link: rel="next"`` headers."""
        next_url: str | None = url
        next_params: dict[str, Any] | None = {"per_page": self._config.per_page, **(params or {})}
        while next_url:
            response = await self._request("GET", next_url, context, params=next_params)
            try:
                page = response.json()
            except ValueError as exc:
                raise RemoteServiceError(context, "Invalid JSON response", status=response.status_code) from exc
            yield page
            next_url = response.links.get("next", {}).get("url")
            next_params = None  # the next link already carries the query string

    async def _get_all_pages(self, url: str, context: str, params: dict[str, Any] | None = None) -> list[Any]:
        items: list[Any] = []
        async for page in self._pages(url, context, params):
            if isinstance(page, list):
                items.extend(page)
        return items

    # ------------------------------------------------------------------
    # Rollups and setup objects
    # ------------------------------------------------------------------

    async def fetch_rollups(self, course_id: str) -> RollupSnapshot:
        rollups: list[dict[str, Any]] = []
        outcomes: dict[str, dict[str, Any]] = {}
        async for page in self._pages(
            f"/api/v1/courses/{course_id}/outcome_rollups",
            "fetchRollups",
            {"include[]": ["outcomes", "users"]},
        ):
            rollups.extend(page.get("rollups") or [])
            for outcome in (page.get("linked") or {}).get("outcomes") or []:
                outcomes.setdefault(str(outcome["id"]), outcome)
        snapshot = _parse_rollups(rollups, list(outcomes.values()))
        logger.debug("Fetched rollups for course %s: %d students, %d outcomes",
                     course_id, len(snapshot.students), len(snapshot.criteria))
        return snapshot

    async def create_metric_definition(self, course_id: str, spec: MetricDefinitionSpec) -> str:
        data = await self._json(
            "POST",
            f"/api/v1/courses/{course_id}/outcome_imports",
            "createMetricDefinition",
            params={"import_type": "instructure_csv"},
            content=metric_definition_csv(spec).encode("utf-8"),
            headers={"Content-Type": "text/csv"},
        )
        logger.info("Outcome import started for course %s: %s", course_id, data.get("id"))
        return str(data["id"])

    async def poll_import_status(self, course_id: str, import_id: str) -> ImportStatus:
        data = await self._json(
            "GET", f"/api/v1/courses/{course_id}/outcome_imports/{import_id}", "pollImportStatus"
        )
        return _IMPORT_STATES.get(data.get("workflow_state"), ImportStatus.PENDING)

    async def find_assignment(self, course_id: str, name: str) -> Assignment | None:
        results = await self._get_all_pages(
            f"/api/v1/courses/{course_id}/assignments", "findAssignment", {"search_term": name}
        )
        match = next((a for a in results if a.get("name") == name), None)
        return _parse_assignment(match) if match else None

    async def get_assignment(self, course_id: str, assignment_id: str) -> Assignment | None:
        try:
            data = await self._json(
                "GET", f"/api/v1/courses/{course_id}/assignments/{assignment_id}", "getAssignment"
            )
        except RemoteServiceError as exc:
            if exc.status == 404:
                return None
            raise
        return _parse_assignment(data)

    async def create_assignment(self, course_id: str, spec: AssignmentSpec) -> str:
        payload = {
            "assignment": {
                "name": spec.name,
                "position": spec.position,
                "submission_types": spec.submission_types,
                "published": spec.published,
                "grading_type": spec.grading_type,
                "points_possible": spec.points_possible,
                "omit_from_final_grade": spec.omit_from_final_grade,
            }
        }
        data = await self._json(
            "POST", f"/api/v1/courses/{course_id}/assignments", "createAssignment", json=payload
        )
        logger.info("Created assignment %s in course %s", data.get("id"), course_id)
        return str(data["id"])

    async def create_rubric(
        self, course_id: str, assignment_id: str, metric_definition_id: str, spec: RubricSpec
    ) -> str:
        ratings = {
            str(i): {"description": r.description, "points": r.points} for i, r in enumerate(spec.ratings)
        }
        payload = {
            "rubric": {
                "title": spec.title,
                "free_form_criterion_comments": False,
                "criteria": {
                    "0": {
                        "description": spec.criterion_description,
                        "criterion_use_range": False,
                        "points": spec.points,
                        "mastery_points": spec.mastery_points,
                        "learning_outcome_id": metric_definition_id,
                        "ratings": ratings,
                    }
                },
            },
            "rubric_association": {
                "association_type": "Assignment",
                "association_id": assignment_id,
                "use_for_grading": True,
                "purpose": "grading",
                "hide_points": spec.hide_points,
            },
        }
        data = await self._json("POST", f"/api/v1/courses/{course_id}/rubrics", "createRubric", json=payload)
        rubric = data.get("rubric", data)
        logger.info("Created rubric %s on assignment %s", rubric.get("id"), assignment_id)
        return str(rubric["id"])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def submit_student_score(
        self, course_id: str, assignment_id: str, student_id: str, criterion_id: str, score: float
    ) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        payload = {
            "rubric_assessment": {str(criterion_id): {"points": score}},
            "submission": {"posted_grade": str(score), "score": score},
            "comment": {"text_comment": f"Score: {score}  Updated: {stamp}"},
        }
        await self._request(
            "PUT",
            f"/api/v1/courses/{course_id}/assignments/{assignment_id}/submissions/{student_id}",
            f"submitStudentScore:{student_id}",
            json=payload,
        )

    async def submit_override_score(self, enrollment_id: str, score: float) -> float | None:
        data = await self._json(
            "POST",
            "/api/graphql",
            "submitOverrideScore",
            json={
                "query": SET_OVERRIDE_MUTATION,
                "variables": {"enrollmentId": str(enrollment_id), "overrideScore": float(score)},
            },
        )
        if data.get("errors"):
            raise RemoteServiceError("submitOverrideScore", f"GraphQL error: {data['errors']}")
        grades = ((data.get("data") or {}).get("setOverrideScore") or {}).get("grades") or []
        return grades[0].get("overrideScore") if grades else None

    async def begin_bulk_update(
        self, course_id: str, assignment_id: str, criterion_id: str, updates: list[StudentUpdate]
    ) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        grade_data = {
            u.student_id: {
                "posted_grade": u.new_average,
                "text_comment": f"Score: {u.new_average}  Updated: {stamp}",
                "rubric_assessment": {str(criterion_id): {"points": u.new_average}},
            }
            for u in updates
        }
        data = await self._json(
            "POST",
            f"/api/v1/courses/{course_id}/assignments/{assignment_id}/submissions/update_grades",
            "beginBulkUpdate",
            json={"grade_data": grade_data},
        )
        return str(data["id"])

    async def poll_job(self, job_id: str) -> JobStatus:
        data = await self._json("GET", f"/api/v1/progress/{job_id}", "pollJob")
        return _JOB_STATES.get(data.get("workflow_state"), JobStatus.QUEUED)

    # ------------------------------------------------------------------
    # Overrides and enrollments
    # ------------------------------------------------------------------

    async def _enrollment_map(self, course_id: str) -> dict[str, str]:
        cached = self._enrollments.get(course_id)
        if cached is not None:
            return cached
        enrollments = await self._get_all_pages(
            f"/api/v1/courses/{course_id}/enrollments",
            "fetchEnrollments",
            {"type[]": "StudentEnrollment"},
        )
        mapping = {
            str(e["user_id"]): str(e["id"])
            for e in enrollments
            if e.get("user_id") is not None and e.get("id") is not None
        }
        logger.debug("Fetched %d enrollment ids for course %s", len(mapping), course_id)
        self._enrollments.set(course_id, mapping)
        return mapping

    async def resolve_enrollment_id(self, course_id: str, student_id: str) -> str | None:
        return (await self._enrollment_map(course_id)).get(str(student_id))

    async def fetch_override_scores(self, course_id: str) -> dict[str, float]:
        data = await self._json(
            "GET", f"/courses/{course_id}/gradebook/final_grade_overrides", "fetchOverrideScores"
        )
        by_enrollment: dict[str, float] = {}
        for enrollment_id, entry in (data.get("final_grade_overrides") or {}).items():
            percentage = ((entry or {}).get("course_grade") or {}).get("percentage")
            if _is_number(percentage):
                by_enrollment[str(enrollment_id)] = float(percentage)
        enrollments = await self._enrollment_map(course_id)
        return {
            student_id: by_enrollment[enrollment_id]
            for student_id, enrollment_id in enrollments.items()
            if enrollment_id in by_enrollment
        }

    async def enable_override(self, course_id: str) -> None:
        await self._request(
            "PUT",
            f"/api/v1/courses/{course_id}/settings",
            "enableOverride",
            json={"allow_final_grade_override": True},
        )
        logger.info("Final grade override enabled for course %s", course_id)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    async def fetch_course_grade(self, course_id: str, student_id: str = "self") -> CourseGradeSnapshot | None:
        """Placeholder-assignment score first, enrollment grade as fallback."""
        now = datetime.now(timezone.utc)
        assignment = await self.find_assignment(course_id, self._assignment_name)
        if assignment is not None:
            submission = await self._json(
                "GET",
                f"/api/v1/courses/{course_id}/assignments/{assignment.id}/submissions/{student_id}",
                "fetchCourseGrade:submission",
            )
            if _is_number(submission.get("score")):
                return CourseGradeSnapshot(
                    course_id=course_id,
                    score=float(submission["score"]),
                    letter_grade=submission.get("grade"),
                    source=GradeSource.ASSIGNMENT,
                    fetched_at=now,
                )

        enrollments = await self._json(
            "GET",
            f"/api/v1/courses/{course_id}/enrollments",
            "fetchCourseGrade:enrollment",
            params={"user_id": student_id, "type[]": "StudentEnrollment"},
        )
        grades = (enrollments[0].get("grades") or {}) if enrollments else {}
        if not _is_number(grades.get("current_score")):
            return None
        return CourseGradeSnapshot(
            course_id=course_id,
            score=float(grades["current_score"]),
            letter_grade=grades.get("current_grade"),
            source=GradeSource.ENROLLMENT,
            fetched_at=now,
        )
