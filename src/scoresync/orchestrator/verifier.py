"""Reconciliation Verifier: poll-compare-wait-retry against the remote gradebook."""

from __future__ import annotations

import asyncio
import logging
import time

from scoresync.core.config import WorkflowConfig
from scoresync.core.exceptions import BulkJobFailedError, PollTimeoutError, ScoreSyncError
from scoresync.core.protocols import IGradebookClient, IProgressSink
from scoresync.core.types import Clock, OverrideScale, Sleep
from scoresync.models.gradebook import JobStatus
from scoresync.models.rollup import RollupSnapshot
from scoresync.models.workflow import Mismatch, StudentUpdate, VerificationResult
from scoresync.orchestrator.calculator import linear_override_scale

logger = logging.getLogger(__name__)


def score_matches(expected: float, actual: float, tolerance: float = 0.001) -> bool:
    return abs(actual - expected) < tolerance


def override_matches(expected: float, actual: float, tolerance: float = 0.01) -> bool:
    return not abs(actual - expected) > tolerance


def find_score_mismatches(
    rollup: RollupSnapshot,
    metric_definition_id: str | None,
    expected: list[StudentUpdate],
    tolerance: float = 0.001,
) -> list[Mismatch]:
    mismatches = []
    for update in expected:
        student = rollup.student(update.student_id)
        if student is None:
            mismatches.append(Mismatch(student_id=update.student_id, expected=update.new_average,
                                       reason="No rollup found"))
            continue
        actual = student.score_for(metric_definition_id) if metric_definition_id else None
        if actual is None:
            mismatches.append(Mismatch(student_id=update.student_id, expected=update.new_average,
                                       reason="No score found"))
        elif not score_matches(update.new_average, actual, tolerance):
            mismatches.append(Mismatch(student_id=update.student_id, expected=update.new_average,
                                       actual=actual, reason="Score differs"))
    return mismatches


def find_override_mismatches(
    current: dict[str, float],
    expected: list[StudentUpdate],
    scale: OverrideScale,
    tolerance: float = 0.01,
) -> list[Mismatch]:
    mismatches = []
    for update in expected:
        want = scale(update.new_average)
        actual = current.get(update.student_id)
        if actual is None:
            mismatches.append(Mismatch(student_id=update.student_id, expected=want,
                                       reason="No override grade found"))
        elif not override_matches(want, actual, tolerance):
            mismatches.append(Mismatch(student_id=update.student_id, expected=want,
                                       actual=actual, reason="Override differs"))
    return mismatches


class ReconciliationVerifier:
    """Score verification, override verification and bulk job polling."""

    def __init__(
        self,
        *,
        config: WorkflowConfig,
        client: IGradebookClient,
        progress: IProgressSink,
        override_scale: OverrideScale | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._config = config
        self._client = client
        self._progress = progress
        self._scale = override_scale or linear_override_scale(config.override_scale_factor)
        self._sleep = sleep
        self._clock = clock

    async def verify_scores(
        self, course_id: str, metric_definition_id: str | None, expected: list[StudentUpdate]
    ) -> VerificationResult:
        """Re-fetch rollups until every expected average is visible. Exhaustion is not fatal."""
        if not expected:
            return VerificationResult(matched=True)
        attempts = self._config.score_verify_attempts
        mismatches: list[Mismatch] = []
        for attempt in range(1, attempts + 1):
            self._progress.soft_update(f"Verifying scores... (attempt {attempt}/{attempts})")
            try:
                rollup = await self._client.fetch_rollups(course_id)
            except ScoreSyncError as exc:
                logger.warning("Score verification fetch failed on attempt %d: %s", attempt, exc)
            else:
                mismatches = find_score_mismatches(
                    rollup, metric_definition_id, expected, self._config.score_tolerance
                )
                if not mismatches:
                    logger.info("All averages match remote scores (attempt %d)", attempt)
                    return VerificationResult(matched=True, attempts=attempt)
                logger.warning("%d score mismatches on attempt %d", len(mismatches), attempt)
            if attempt < attempts:
                await self._sleep(self._config.score_verify_interval)

        logger.warning(
            "Score verification gave up after %d attempts; %d mismatches remain: %s",
            attempts, len(mismatches), [m.model_dump() for m in mismatches],
        )
        return VerificationResult(matched=False, attempts=attempts, mismatches=mismatches)

    async def verify_overrides(self, course_id: str, expected: list[StudentUpdate]) -> VerificationResult:
        """Compare stored overrides to the scaled averages. Exhaustion and fetch errors are not fatal."""
        if not expected:
            return VerificationResult(matched=True)
        attempts = self._config.override_verify_attempts
        mismatches: list[Mismatch] = []
        for attempt in range(1, attempts + 1):
            self._progress.soft_update(f"Verifying grade overrides... (attempt {attempt}/{attempts})")
            try:
                current = await self._client.fetch_override_scores(course_id)
            except ScoreSyncError as exc:
                logger.warning("Override verification failed, continuing anyway: %s", exc)
                return VerificationResult(matched=False, attempts=attempt, mismatches=mismatches)
            mismatches = find_override_mismatches(current, expected, self._scale, self._config.override_tolerance)
            if not mismatches:
                logger.info("All override scores verified on attempt %d", attempt)
                return VerificationResult(matched=True, attempts=attempt)
            if attempt < attempts:
                logger.warning("%d override mismatches on attempt %d, retrying", len(mismatches), attempt)
                await self._sleep(self._config.override_verify_interval)

        logger.warning(
            "%d override mismatches after %d attempts: %s",
            len(mismatches), attempts, [m.model_dump() for m in mismatches],
        )
        return VerificationResult(matched=False, attempts=attempts, mismatches=mismatches)

    async def poll_bulk_job(self, job_id: str) -> None:
        """Poll until ``completed``. Raises BulkJobFailedError or PollTimeoutError."""
        budget = self._config.bulk_timeout
        started = self._clock()
        while self._clock() - started < budget:
            status = await self._client.poll_job(job_id)
            elapsed = int(self._clock() - started)
            logger.debug("Bulk job %s status: %s (elapsed %ds)", job_id, status, elapsed)
            if status == JobStatus.COMPLETED:
                logger.info("Bulk job %s completed", job_id)
                return
            if status == JobStatus.FAILED:
                logger.error("Bulk job %s failed", job_id)
                raise BulkJobFailedError(job_id)
            self._progress.soft_update(f"Bulk uploading status: {status.upper()}. (Elapsed time: {elapsed}s)")
            await self._sleep(self._config.bulk_poll_interval)

        raise PollTimeoutError(
            "Bulk update is taking longer than expected. In a few minutes try updating again. "
            "If there are no changes to be made the update completed.",
            budget,
        )
