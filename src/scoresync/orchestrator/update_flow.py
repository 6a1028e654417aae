"""UpdateFlow: runs one course's score update from CHECKING_SETUP back to IDLE."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Sequence

from scoresync.core.config import WorkflowConfig
from scoresync.core.exceptions import IllegalTransitionError, RunInProgressError, ValidationError, user_message
from scoresync.core.protocols import IApprovalPort, IFileStore, IGradebookClient, IProgressSink, IRunLock
from scoresync.core.types import Clock, OverrideScale, Sleep
from scoresync.models.workflow import RunResult, WorkflowState
from scoresync.orchestrator.calculator import AverageCalculator
from scoresync.orchestrator.dispatcher import UpdateDispatcher
from scoresync.orchestrator.handlers import StateHandlers
from scoresync.orchestrator.progress import LoggingProgressSink
from scoresync.orchestrator.setup_resolver import SetupResolver
from scoresync.orchestrator.state_machine import StateChangeSubscriber, UpdateFlowStateMachine
from scoresync.orchestrator.verifier import ReconciliationVerifier

logger = logging.getLogger(__name__)


def build_result(machine: UpdateFlowStateMachine) -> RunResult:
    """Summarize a finished machine. ``state`` is the terminal state reached before IDLE."""
    ctx = machine.context
    history = machine.history
    terminal = next(
        (s for s in reversed(history) if s in (WorkflowState.COMPLETE, WorkflowState.ERROR)),
        machine.state,
    )
    return RunResult(
        course_id=ctx.course_id,
        state=terminal,
        update_mode=ctx.update_mode,
        number_of_updates=ctx.number_of_updates,
        zero_updates=ctx.zero_updates,
        averages=ctx.averages,
        retries=ctx.retry_ledger.retried(),
        failures=ctx.failures,
        override_failures=ctx.override_failures,
        error=ctx.error,
        error_message=ctx.error_message,
        history=history,
        summary_location=ctx.summary_location,
        score_verification=ctx.score_verification,
        override_verification=ctx.override_verification,
        elapsed_seconds=ctx.elapsed_seconds,
    )


class UpdateFlow:
    """Entry point for score update runs.

    Each ``run`` gets a fresh state machine and handler set. Any exception
    raised by a handler sends the run to ERROR, whose handler reports it and
    returns to IDLE; ``run`` itself only raises for a missing course id or a
    run already in progress for the same course.
    """

    def __init__(
        self,
        *,
        config: WorkflowConfig,
        client: IGradebookClient,
        approval: IApprovalPort,
        progress: IProgressSink | None = None,
        artifact_store: IFileStore | None = None,
        run_lock: IRunLock | None = None,
        override_scale: OverrideScale | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
        subscribers: Sequence[StateChangeSubscriber] = (),
    ) -> None:
        self._config = config
        self._client = client
        self._approval = approval
        self._progress = progress or LoggingProgressSink(clock=clock)
        self._store = artifact_store
        self._lock = run_lock
        self._scale = override_scale
        self._sleep = sleep
        self._clock = clock
        self._subscribers = list(subscribers)

    def _handlers(self) -> StateHandlers:
        return StateHandlers(
            config=self._config,
            client=self._client,
            progress=self._progress,
            resolver=SetupResolver(
                config=self._config, client=self._client, approval=self._approval, sleep=self._sleep
            ),
            calculator=AverageCalculator(config=self._config, client=self._client, override_scale=self._scale),
            dispatcher=UpdateDispatcher(
                config=self._config,
                client=self._client,
                progress=self._progress,
                approval=self._approval,
                artifact_store=self._store,
                override_scale=self._scale,
            ),
            verifier=ReconciliationVerifier(
                config=self._config,
                client=self._client,
                progress=self._progress,
                override_scale=self._scale,
                sleep=self._sleep,
                clock=self._clock,
            ),
            clock=self._clock,
        )

    async def run(self, course_id: str) -> RunResult:
        if not course_id:
            raise ValidationError("A course id is required to run an update", field="course_id")
        if self._lock is not None and not self._lock.acquire(course_id):
            raise RunInProgressError(course_id)
        try:
            machine = UpdateFlowStateMachine(course_id)
            for callback in self._subscribers:
                machine.subscribe(callback)
            logger.info("Starting score update for course %s", course_id)
            machine.transition(WorkflowState.CHECKING_SETUP)
            await self._drive(machine, self._handlers())
            result = build_result(machine)
            logger.info("Score update for course %s finished in %s", course_id, result.state)
            return result
        finally:
            if self._lock is not None:
                self._lock.release(course_id)

    async def _drive(self, machine: UpdateFlowStateMachine, handlers: StateHandlers) -> None:
        table = handlers.table()
        while machine.state != WorkflowState.IDLE:
            state = machine.state
            try:
                step = await table[state](machine)
            except IllegalTransitionError:
                raise
            except Exception as exc:
                if not machine.can_transition(WorkflowState.ERROR):
                    # COMPLETE and ERROR can only go back to IDLE
                    logger.exception("%s handler failed for course %s", state, machine.context.course_id)
                    if state != WorkflowState.ERROR:
                        machine.update_context(error=str(exc), error_message=user_message(exc))
                    machine.transition(WorkflowState.IDLE)
                    continue
                logger.debug("Handler for %s raised", state, exc_info=True)
                machine.transition(WorkflowState.ERROR, error=str(exc), error_message=user_message(exc))
                continue
            machine.transition(step.state, **step.updates)
