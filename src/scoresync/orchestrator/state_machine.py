"""Update Flow State Machine: current state, workflow context, legal transitions."""

from __future__ import annotations

import logging
from typing import Any, Callable

from scoresync.core.exceptions import IllegalTransitionError
from scoresync.models.workflow import TRANSITIONS, StateChange, WorkflowContext, WorkflowState

logger = logging.getLogger(__name__)

StateChangeSubscriber = Callable[[StateChange], None]
ResetSubscriber = Callable[[WorkflowContext], None]


class UpdateFlowStateMachine:
    """Owns one run's state and context.

    Every transition is checked against ``TRANSITIONS``; a rejected request
    leaves both state and context untouched. Subscribers are called
    synchronously after each applied transition.
    """

    def __init__(self, course_id: str, initial_state: WorkflowState = WorkflowState.IDLE) -> None:
        self._state = initial_state
        self._context = WorkflowContext(course_id=course_id)
        self._history: list[WorkflowState] = [initial_state]
        self._subscribers: list[StateChangeSubscriber] = []
        self._reset_subscribers: list[ResetSubscriber] = []

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def context(self) -> WorkflowContext:
        return self._context

    @property
    def history(self) -> list[WorkflowState]:
        return list(self._history)

    def valid_transitions(self) -> list[WorkflowState]:
        return sorted(TRANSITIONS.get(self._state, frozenset()))

    def can_transition(self, target: WorkflowState) -> bool:
        return target in TRANSITIONS.get(self._state, frozenset())

    def subscribe(self, callback: StateChangeSubscriber) -> None:
        self._subscribers.append(callback)

    def on_reset(self, callback: ResetSubscriber) -> None:
        self._reset_subscribers.append(callback)

    def _merged(self, updates: dict[str, Any]) -> WorkflowContext:
        unknown = sorted(set(updates) - set(WorkflowContext.model_fields))
        if unknown:
            raise ValueError(f"Unknown workflow context fields: {', '.join(unknown)}")
        return self._context.model_copy(update=updates)

    def update_context(self, **updates: Any) -> WorkflowContext:
        """Merge ``updates`` into the context without changing state."""
        self._context = self._merged(updates)
        return self._context

    def transition(self, target: WorkflowState, **updates: Any) -> StateChange:
        if not self.can_transition(target):
            raise IllegalTransitionError(self._state, target, self.valid_transitions())
        context = self._merged(updates)

        event = StateChange(from_state=self._state, to_state=target, context=context)
        self._state = target
        self._context = context
        self._history.append(target)
        logger.debug("State transition: %s -> %s", event.from_state, target)

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception("State change subscriber failed on %s -> %s", event.from_state, target)
        return event

    def reset(self) -> None:
        """Return to IDLE with a fresh context, keeping only the course id."""
        self._state = WorkflowState.IDLE
        self._context = WorkflowContext(course_id=self._context.course_id)
        self._history = [WorkflowState.IDLE]
        logger.debug("State machine reset to IDLE")
        for callback in list(self._reset_subscribers):
            try:
                callback(self._context)
            except Exception:
                logger.exception("Reset subscriber failed")
