"""Setup Resolver: ensures the metric definition, placeholder assignment and rubric exist.

One ``inspect`` pass reports the first missing object. Creation is followed
by a fresh check pass, since the remote objects (the metric definition in
particular) may only become visible after an asynchronous import.
"""

from __future__ import annotations

import asyncio
import logging

from scoresync.core.config import WorkflowConfig
from scoresync.core.exceptions import (
    PollTimeoutError,
    RemoteServiceError,
    UserDeclinedError,
    ValidationError,
)
from scoresync.core.protocols import IApprovalPort, IGradebookClient
from scoresync.core.types import Sleep
from scoresync.models.gradebook import (
    Assignment,
    AssignmentSpec,
    ImportStatus,
    MetricDefinitionSpec,
    RubricSpec,
)
from scoresync.models.rollup import Criterion
from scoresync.models.workflow import MissingSetup, SetupStatus

logger = logging.getLogger(__name__)


def metric_definition_spec(config: WorkflowConfig) -> MetricDefinitionSpec:
    return MetricDefinitionSpec(
        title=config.metric_name,
        description=f"Auto-generated outcome: {config.metric_name}",
        mastery_points=config.mastery_threshold,
        ratings=config.ratings,
    )


def assignment_spec(config: WorkflowConfig) -> AssignmentSpec:
    return AssignmentSpec(name=config.assignment_name, points_possible=config.max_points)


def rubric_spec(config: WorkflowConfig) -> RubricSpec:
    return RubricSpec(
        title=config.rubric_name,
        criterion_description=f"{config.metric_name} criteria was used to create this rubric",
        points=config.max_points,
        mastery_points=config.mastery_threshold,
        ratings=config.ratings,
    )


class SetupResolver:
    """Check-then-create-then-recheck over the three prerequisite objects."""

    def __init__(
        self,
        *,
        config: WorkflowConfig,
        client: IGradebookClient,
        approval: IApprovalPort,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._config = config
        self._client = client
        self._approval = approval
        self._sleep = sleep

    def object_name(self, missing: MissingSetup) -> str:
        return {
            MissingSetup.METRIC_DEFINITION: f'Outcome "{self._config.metric_name}"',
            MissingSetup.PLACEHOLDER_ASSIGNMENT: f'Assignment "{self._config.assignment_name}"',
            MissingSetup.RUBRIC: f'Rubric "{self._config.rubric_name}"',
        }[missing]

    async def inspect(self, course_id: str) -> SetupStatus:
        """Run one check pass. The rollup fetched here feeds the calculation step."""
        rollup = await self._client.fetch_rollups(course_id)
        metric = rollup.criterion_by_title(self._config.metric_name)

        if not self._config.enable_score_updates:
            # Only needed so the metric's own value is left out of the averages.
            return SetupStatus(rollup=rollup, metric_definition_id=metric.id if metric else None)

        if metric is None:
            logger.warning('Outcome "%s" not found in course %s', self._config.metric_name, course_id)
            return SetupStatus(rollup=rollup, missing=MissingSetup.METRIC_DEFINITION)

        assignment = await self._locate_assignment(course_id, metric)
        if assignment is None:
            return SetupStatus(
                rollup=rollup,
                metric_definition_id=metric.id,
                missing=MissingSetup.PLACEHOLDER_ASSIGNMENT,
            )

        if assignment.rubric_title != self._config.rubric_name or not assignment.criterion_ids:
            return SetupStatus(
                rollup=rollup,
                metric_definition_id=metric.id,
                assignment_id=assignment.id,
                missing=MissingSetup.RUBRIC,
            )

        return SetupStatus(
            rollup=rollup,
            metric_definition_id=metric.id,
            assignment_id=assignment.id,
            rubric_id=assignment.rubric_id,
            rubric_criterion_id=assignment.criterion_ids[0],
        )

    async def _locate_assignment(self, course_id: str, metric: Criterion) -> Assignment | None:
        for alignment in metric.alignments:
            if not alignment.startswith("assignment_"):
                continue
            assignment_id = alignment.split("_", 1)[1]
            try:
                assignment = await self._client.get_assignment(course_id, assignment_id)
            except RemoteServiceError as exc:
                logger.debug("Skipping alignment %s: %s", alignment, exc)
                continue
            if assignment is not None and assignment.name == self._config.assignment_name:
                return assignment

        assignment = await self._client.find_assignment(course_id, self._config.assignment_name)
        if assignment is not None:
            logger.debug("Placeholder assignment found by name: %s", assignment.id)
        return assignment

    async def approve(self, missing: MissingSetup) -> None:
        """Ask before creating. Raises UserDeclinedError on a no."""
        name = self.object_name(missing)
        approved = await self._approval.request_approval(f"{name} not found.\nWould you like to create it?")
        if not approved:
            raise UserDeclinedError(f"User declined to create missing {missing.value.replace('_', ' ')}.")

    async def create_metric_definition(self, course_id: str) -> str:
        """Import the metric definition and wait for the import to succeed."""
        import_id = await self._client.create_metric_definition(course_id, metric_definition_spec(self._config))
        attempts = self._config.import_poll_attempts
        interval = self._config.import_poll_interval
        for attempt in range(1, attempts + 1):
            await self._sleep(interval)
            status = await self._client.poll_import_status(course_id, import_id)
            logger.debug("Outcome import %s poll %d: %s", import_id, attempt, status)
            if status == ImportStatus.SUCCEEDED:
                return import_id
            if status == ImportStatus.FAILED:
                raise RemoteServiceError("createMetricDefinition", "Outcome import failed")
        raise PollTimeoutError("Timed out waiting for outcome import to complete", attempts * interval)

    async def create_placeholder_assignment(self, course_id: str) -> str:
        assignment_id = await self._client.create_assignment(course_id, assignment_spec(self._config))
        logger.info("Created placeholder assignment %s in course %s", assignment_id, course_id)
        return assignment_id

    async def create_rubric(self, course_id: str, assignment_id: str | None, metric_definition_id: str | None) -> str:
        if not assignment_id:
            raise ValidationError("Cannot create rubric without an assignment id", field="assignment_id")
        if not metric_definition_id:
            raise ValidationError("Cannot create rubric without a metric definition id", field="metric_definition_id")
        rubric_id = await self._client.create_rubric(
            course_id, assignment_id, metric_definition_id, rubric_spec(self._config)
        )
        logger.info("Created rubric %s on assignment %s", rubric_id, assignment_id)
        return rubric_id

    async def create(self, course_id: str, missing: MissingSetup, status: SetupStatus) -> None:
        if missing == MissingSetup.METRIC_DEFINITION:
            await self.create_metric_definition(course_id)
        elif missing == MissingSetup.PLACEHOLDER_ASSIGNMENT:
            await self.create_placeholder_assignment(course_id)
        else:
            await self.create_rubric(course_id, status.assignment_id, status.metric_definition_id)

    async def resolve(self, course_id: str) -> SetupStatus:
        """Loop check -> approve -> create until all three exist in the same pass."""
        for _ in range(self._config.max_setup_passes):
            status = await self.inspect(course_id)
            if status.complete:
                return status
            await self.approve(status.missing)  # type: ignore[arg-type]
            await self.create(course_id, status.missing, status)  # type: ignore[arg-type]
        raise ValidationError(
            f"Setup for course {course_id} still incomplete after {self._config.max_setup_passes} passes",
            field="setup",
        )
