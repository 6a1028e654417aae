"""Per-state handlers. Each one does a single phase and names the next state."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from scoresync.core.config import WorkflowConfig
from scoresync.core.exceptions import ScoreSyncError, ValidationError
from scoresync.core.protocols import IGradebookClient, IProgressSink
from scoresync.core.types import Clock
from scoresync.models.workflow import MissingSetup, UpdateMode, VerificationResult, WorkflowState
from scoresync.orchestrator.calculator import AverageCalculator
from scoresync.orchestrator.dispatcher import UpdateDispatcher
from scoresync.orchestrator.setup_resolver import SetupResolver
from scoresync.orchestrator.state_machine import UpdateFlowStateMachine
from scoresync.orchestrator.verifier import ReconciliationVerifier

logger = logging.getLogger(__name__)

S = WorkflowState

CREATING_STATES: dict[MissingSetup, WorkflowState] = {
    MissingSetup.METRIC_DEFINITION: S.CREATING_METRIC_DEFINITION,
    MissingSetup.PLACEHOLDER_ASSIGNMENT: S.CREATING_PLACEHOLDER_ASSIGNMENT,
    MissingSetup.RUBRIC: S.CREATING_RUBRIC,
}


class NextStep(BaseModel):
    """A handler's answer: the state to move to and the context fields to merge."""

    state: WorkflowState
    updates: dict[str, Any] = Field(default_factory=dict)


Handler = Callable[[UpdateFlowStateMachine], Awaitable[NextStep]]


class StateHandlers:
    """Handler set for a single run. Holds the run's collaborators, no workflow data."""

    def __init__(
        self,
        *,
        config: WorkflowConfig,
        client: IGradebookClient,
        progress: IProgressSink,
        resolver: SetupResolver,
        calculator: AverageCalculator,
        dispatcher: UpdateDispatcher,
        verifier: ReconciliationVerifier,
        clock: Clock = time.monotonic,
    ) -> None:
        self._config = config
        self._client = client
        self._progress = progress
        self._resolver = resolver
        self._calculator = calculator
        self._dispatcher = dispatcher
        self._verifier = verifier
        self._clock = clock
        self._setup_passes = 0
        self._override_enabled = False

    def table(self) -> dict[WorkflowState, Handler]:
        return {
            S.CHECKING_SETUP: self.checking_setup,
            S.CREATING_METRIC_DEFINITION: self.creating_metric_definition,
            S.CREATING_PLACEHOLDER_ASSIGNMENT: self.creating_placeholder_assignment,
            S.CREATING_RUBRIC: self.creating_rubric,
            S.CALCULATING: self.calculating,
            S.UPDATING_GRADES: self.updating_grades,
            S.POLLING_BULK_JOB: self.polling_bulk_job,
            S.VERIFYING_SCORES: self.verifying_scores,
            S.VERIFYING_OVERRIDES: self.verifying_overrides,
            S.COMPLETE: self.complete,
            S.ERROR: self.error,
        }

    @property
    def _target(self) -> str:
        if self._config.enable_score_updates and self._config.enable_override:
            return f'"{self._config.metric_name}" and grade overrides'
        if self._config.enable_score_updates:
            return f'"{self._config.metric_name}"'
        return "grade overrides"

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def _enable_override(self, course_id: str) -> None:
        if not self._config.enable_override or self._override_enabled:
            return
        try:
            await self._client.enable_override(course_id)
            self._override_enabled = True
        except ScoreSyncError as exc:
            logger.warning("Could not enable final grade override for course %s: %s", course_id, exc)

    async def checking_setup(self, machine: UpdateFlowStateMachine) -> NextStep:
        ctx = machine.context
        self._setup_passes += 1
        if self._setup_passes > self._config.max_setup_passes:
            raise ValidationError(
                f"Setup for course {ctx.course_id} still incomplete after "
                f"{self._config.max_setup_passes} passes",
                field="setup",
            )
        self._progress.set_text(f"Preparing to update {self._target}: checking setup...")
        await self._enable_override(ctx.course_id)

        status = await self._resolver.inspect(ctx.course_id)
        updates = {
            "rollup": status.rollup,
            "metric_definition_id": status.metric_definition_id,
            "assignment_id": status.assignment_id,
            "rubric_id": status.rubric_id,
            "rubric_criterion_id": status.rubric_criterion_id,
        }
        if status.missing is None:
            return NextStep(state=S.CALCULATING, updates=updates)

        await self._resolver.approve(status.missing)
        return NextStep(state=CREATING_STATES[status.missing], updates=updates)

    async def creating_metric_definition(self, machine: UpdateFlowStateMachine) -> NextStep:
        self._progress.set_text(f'Creating "{self._config.metric_name}" Outcome...')
        await self._resolver.create_metric_definition(machine.context.course_id)
        return NextStep(state=S.CHECKING_SETUP)

    async def creating_placeholder_assignment(self, machine: UpdateFlowStateMachine) -> NextStep:
        self._progress.set_text(f'Creating "{self._config.assignment_name}" Assignment...')
        assignment_id = await self._resolver.create_placeholder_assignment(machine.context.course_id)
        return NextStep(state=S.CHECKING_SETUP, updates={"assignment_id": assignment_id})

    async def creating_rubric(self, machine: UpdateFlowStateMachine) -> NextStep:
        ctx = machine.context
        self._progress.set_text(f'Creating "{self._config.rubric_name}" Rubric...')
        rubric_id = await self._resolver.create_rubric(ctx.course_id, ctx.assignment_id, ctx.metric_definition_id)
        return NextStep(state=S.CHECKING_SETUP, updates={"rubric_id": rubric_id})

    # ------------------------------------------------------------------
    # Calculation and writes
    # ------------------------------------------------------------------

    async def calculating(self, machine: UpdateFlowStateMachine) -> NextStep:
        ctx = machine.context
        if ctx.rollup is None:
            raise ValidationError("No rollup snapshot in workflow context", field="rollup")
        self._progress.set_text(f'Calculating "{self._config.metric_name}" scores...')
        started = self._clock()
        averages = await self._calculator.calculate(ctx.course_id, ctx.rollup, ctx.metric_definition_id)
        updates = {
            "averages": averages,
            "number_of_updates": len(averages),
            "zero_updates": not averages,
            "start_time": started,
        }
        return NextStep(state=S.UPDATING_GRADES if averages else S.COMPLETE, updates=updates)

    async def updating_grades(self, machine: UpdateFlowStateMachine) -> NextStep:
        mode = self._dispatcher.choose_mode(machine.context)
        ctx = machine.update_context(update_mode=mode)
        count = ctx.number_of_updates

        if mode == UpdateMode.PER_STUDENT:
            self._progress.hold(
                f"Detected {count} changes - updating scores one at a time for quicker processing.", 3000
            )
            report = await self._dispatcher.run_per_student(ctx)
            location = await self._dispatcher.offer_summary(ctx.course_id, report)
            return NextStep(state=S.VERIFYING_SCORES, updates={
                "retry_ledger": report.ledger,
                "failures": report.failures,
                "override_failures": report.override_failures,
                "retry_count": len(report.retried),
                "summary_location": location,
            })

        self._progress.hold(f"Detected {count} changes - using bulk update for error prevention", 3000)
        submission = await self._dispatcher.submit_bulk(ctx)
        return NextStep(state=S.POLLING_BULK_JOB, updates={
            "bulk_job_id": submission.job_id,
            "override_failures": submission.override_failures,
        })

    async def polling_bulk_job(self, machine: UpdateFlowStateMachine) -> NextStep:
        job_id = machine.context.bulk_job_id
        if not job_id:
            raise ValidationError("No bulk job id in workflow context", field="bulk_job_id")
        await self._verifier.poll_bulk_job(job_id)
        return NextStep(state=S.VERIFYING_SCORES)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def verifying_scores(self, machine: UpdateFlowStateMachine) -> NextStep:
        ctx = machine.context
        if not self._config.enable_score_updates:
            logger.debug("Score updates disabled, skipping score verification")
            result = VerificationResult(matched=True, skipped=True)
        else:
            result = await self._verifier.verify_scores(ctx.course_id, ctx.metric_definition_id, ctx.averages)
        return NextStep(state=S.VERIFYING_OVERRIDES, updates={"score_verification": result})

    async def verifying_overrides(self, machine: UpdateFlowStateMachine) -> NextStep:
        ctx = machine.context
        if not self._config.enable_override:
            logger.debug("Grade override disabled, skipping override verification")
            result = VerificationResult(matched=True, skipped=True)
        else:
            result = await self._verifier.verify_overrides(ctx.course_id, ctx.averages)
        return NextStep(state=S.COMPLETE, updates={"override_verification": result})

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    async def complete(self, machine: UpdateFlowStateMachine) -> NextStep:
        ctx = machine.context
        elapsed = self._clock() - ctx.start_time if ctx.start_time is not None else 0.0
        if ctx.zero_updates or ctx.number_of_updates == 0:
            self._progress.set_text(f"No changes to {self._target} found.")
        else:
            self._progress.set_text(
                f"{ctx.number_of_updates} student scores updated successfully! "
                f"(elapsed time: {int(elapsed)}s)"
            )
        logger.info("Update for course %s complete: %d updates in %.1fs",
                    ctx.course_id, ctx.number_of_updates, elapsed)
        return NextStep(state=S.IDLE, updates={"elapsed_seconds": elapsed})

    async def error(self, machine: UpdateFlowStateMachine) -> NextStep:
        ctx = machine.context
        logger.error("Update flow error for course %s: %s", ctx.course_id, ctx.error)
        self._progress.set_text(f"Error: {ctx.error_message or ctx.error}")
        return NextStep(state=S.IDLE)
