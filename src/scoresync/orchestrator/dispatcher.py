"""Update Dispatcher: propagates StudentUpdate records per student or as one bulk job."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from scoresync.core.config import WorkflowConfig
from scoresync.core.exceptions import ArtifactStoreError, ScoreSyncError, ValidationError
from scoresync.core.protocols import IApprovalPort, IFileStore, IGradebookClient, IProgressSink
from scoresync.core.types import OverrideScale
from scoresync.models.workflow import (
    FailedUpdate,
    RetryLedger,
    StudentUpdate,
    UpdateMode,
    WorkflowContext,
)
from scoresync.orchestrator.calculator import linear_override_scale
from scoresync.orchestrator.summary import needs_summary, write_summary

logger = logging.getLogger(__name__)

EXPORT_QUESTION = "Export grade update attempt counts and failure logs to a file?"


def select_mode(pending: int, threshold: int) -> UpdateMode:
    """Per-student below the threshold, bulk at or above it."""
    return UpdateMode.PER_STUDENT if pending < threshold else UpdateMode.BULK


class PerStudentReport(BaseModel):
    """What a per-student run produced."""

    ledger: RetryLedger = Field(default_factory=RetryLedger)
    failures: list[FailedUpdate] = Field(default_factory=list)
    override_failures: int = 0

    @property
    def retried(self) -> dict[str, int]:
        return self.ledger.retried()


class BulkSubmission(BaseModel):
    job_id: str
    override_failures: int = 0


class UpdateDispatcher:
    """Writes computed averages back to the gradebook."""

    def __init__(
        self,
        *,
        config: WorkflowConfig,
        client: IGradebookClient,
        progress: IProgressSink,
        approval: IApprovalPort,
        artifact_store: IFileStore | None = None,
        override_scale: OverrideScale | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._progress = progress
        self._approval = approval
        self._store = artifact_store
        self._scale = override_scale or linear_override_scale(config.override_scale_factor)

    def choose_mode(self, context: WorkflowContext) -> UpdateMode:
        """Mode for this run. A mode already on the context is never changed."""
        if context.update_mode is not None:
            return context.update_mode
        if not self._config.enable_score_updates:
            # Override-only runs have no bulk endpoint.
            return UpdateMode.PER_STUDENT
        return select_mode(len(context.averages), self._config.per_student_threshold)

    def _require_targets(self, context: WorkflowContext) -> tuple[str, str]:
        if not context.assignment_id:
            raise ValidationError("No placeholder assignment id in context", field="assignment_id")
        if not context.rubric_criterion_id:
            raise ValidationError("No rubric criterion id in context", field="rubric_criterion_id")
        return context.assignment_id, context.rubric_criterion_id

    # ------------------------------------------------------------------
    # Override writes
    # ------------------------------------------------------------------

    async def write_override(self, course_id: str, update: StudentUpdate) -> float:
        """Write one override score. Raises on any failure."""
        enrollment_id = await self._client.resolve_enrollment_id(course_id, update.student_id)
        if not enrollment_id:
            raise ValidationError(f"No enrollment id for student {update.student_id}", field="enrollment_id")
        override = self._scale(update.new_average)
        await self._client.submit_override_score(enrollment_id, override)
        logger.debug("Override for student %s (enrollment %s): %s", update.student_id, enrollment_id, override)
        return override

    async def _best_effort_override(self, course_id: str, update: StudentUpdate) -> bool:
        try:
            await self.write_override(course_id, update)
        except ScoreSyncError as exc:
            logger.warning("Override write failed for student %s: %s", update.student_id, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Per-student mode
    # ------------------------------------------------------------------

    async def _primary_write(self, context: WorkflowContext, update: StudentUpdate) -> None:
        if not self._config.enable_score_updates:
            await self.write_override(context.course_id, update)
            return
        assignment_id, criterion_id = self._require_targets(context)
        await self._client.submit_student_score(
            context.course_id, assignment_id, update.student_id, criterion_id, update.new_average
        )

    async def _try_update(
        self, context: WorkflowContext, update: StudentUpdate, report: PerStudentReport
    ) -> ScoreSyncError | None:
        """Up to ``write_attempts`` tries. Returns the last error, or None on success."""
        last_error: ScoreSyncError | None = None
        for attempt in range(1, self._config.write_attempts + 1):
            report.ledger.record(update.student_id)
            try:
                await self._primary_write(context, update)
            except ScoreSyncError as exc:
                last_error = exc
                logger.warning("Attempt %d failed for student %s: %s", attempt, update.student_id, exc)
                continue
            if self._config.enable_score_updates and self._config.enable_override:
                if not await self._best_effort_override(context.course_id, update):
                    report.override_failures += 1
            return None
        return last_error

    async def run_per_student(self, context: WorkflowContext) -> PerStudentReport:
        """First pass over every update, then one deferred pass over the failures."""
        if self._config.enable_score_updates:
            self._require_targets(context)
        report = PerStudentReport()
        updates = context.averages
        total = len(updates)

        deferred: list[StudentUpdate] = []
        for index, update in enumerate(updates, start=1):
            if await self._try_update(context, update, report) is not None:
                deferred.append(update)
            self._progress.set_text(f'Updating "{self._config.metric_name}": {index} of {total} students processed')

        if deferred:
            logger.info("Retrying %d students...", len(deferred))
        for update in deferred:
            error = await self._try_update(context, update, report)
            if error is not None:
                report.failures.append(FailedUpdate(
                    student_id=update.student_id,
                    average=update.new_average,
                    attempts=report.ledger.attempts[update.student_id],
                    error=str(error),
                ))

        retried = report.retried
        logger.info("%d students needed more than one attempt.", len(retried))
        if report.failures:
            logger.warning(
                "Scores of %d students failed to update: %s",
                len(report.failures), [f.student_id for f in report.failures],
            )
        if report.override_failures:
            logger.warning("%d override writes failed", report.override_failures)
        return report

    async def offer_summary(self, course_id: str, report: PerStudentReport) -> str | None:
        """Offer the retry/failure CSV; write it when accepted. Returns its location."""
        if not self._config.export_summary or self._store is None:
            return None
        if not needs_summary(report.ledger, report.failures):
            return None
        if not await self._approval.request_approval(EXPORT_QUESTION):
            return None
        try:
            location = write_summary(self._store, course_id, report.ledger, report.failures)
        except ArtifactStoreError as exc:
            logger.error("Failed to write update summary for course %s: %s", course_id, exc)
            return None
        logger.info("Update summary written to %s", location)
        return location

    # ------------------------------------------------------------------
    # Bulk mode
    # ------------------------------------------------------------------

    async def submit_bulk(self, context: WorkflowContext) -> BulkSubmission:
        """Submit one bulk job, then fire per-student override writes best-effort."""
        assignment_id, criterion_id = self._require_targets(context)
        job_id = await self._client.begin_bulk_update(
            context.course_id, assignment_id, criterion_id, context.averages
        )
        logger.info("Bulk update submitted for course %s: job %s", context.course_id, job_id)

        override_failures = 0
        if self._config.enable_override:
            for update in context.averages:
                if not await self._best_effort_override(context.course_id, update):
                    override_failures += 1
        return BulkSubmission(job_id=job_id, override_failures=override_failures)
