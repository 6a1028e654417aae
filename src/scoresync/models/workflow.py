"""Update flow states, transition table, workflow context and run outputs."""

from __future__ import annotations

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from scoresync.models.rollup import RollupSnapshot


class WorkflowState(StrEnum):
    IDLE = "IDLE"
    CHECKING_SETUP = "CHECKING_SETUP"
    CREATING_METRIC_DEFINITION = "CREATING_METRIC_DEFINITION"
    CREATING_PLACEHOLDER_ASSIGNMENT = "CREATING_PLACEHOLDER_ASSIGNMENT"
    CREATING_RUBRIC = "CREATING_RUBRIC"
    CALCULATING = "CALCULATING"
    UPDATING_GRADES = "UPDATING_GRADES"
    POLLING_BULK_JOB = "POLLING_BULK_JOB"
    VERIFYING_SCORES = "VERIFYING_SCORES"
    VERIFYING_OVERRIDES = "VERIFYING_OVERRIDES"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"


_S = WorkflowState

TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    _S.IDLE: frozenset({_S.CHECKING_SETUP}),
    _S.CHECKING_SETUP: frozenset({
        _S.CREATING_METRIC_DEFINITION,
        _S.CREATING_PLACEHOLDER_ASSIGNMENT,
        _S.CREATING_RUBRIC,
        _S.CALCULATING,
        _S.ERROR,
    }),
    _S.CREATING_METRIC_DEFINITION: frozenset({_S.CHECKING_SETUP, _S.ERROR}),
    _S.CREATING_PLACEHOLDER_ASSIGNMENT: frozenset({_S.CHECKING_SETUP, _S.ERROR}),
    _S.CREATING_RUBRIC: frozenset({_S.CHECKING_SETUP, _S.ERROR}),
    _S.CALCULATING: frozenset({_S.UPDATING_GRADES, _S.COMPLETE, _S.ERROR}),
    _S.UPDATING_GRADES: frozenset({_S.VERIFYING_SCORES, _S.POLLING_BULK_JOB, _S.ERROR}),
    _S.POLLING_BULK_JOB: frozenset({_S.VERIFYING_SCORES, _S.ERROR}),
    _S.VERIFYING_SCORES: frozenset({_S.VERIFYING_OVERRIDES, _S.ERROR}),
    _S.VERIFYING_OVERRIDES: frozenset({_S.COMPLETE, _S.ERROR}),
    _S.COMPLETE: frozenset({_S.IDLE}),
    _S.ERROR: frozenset({_S.IDLE}),
}


class UpdateMode(StrEnum):
    PER_STUDENT = "per-student"
    BULK = "bulk"


class StudentUpdate(BaseModel):
    """A student whose aggregate score needs to be written."""

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    student_id: str
    new_average: float


class Mismatch(BaseModel):
    """A remote value that did not match the expected value within tolerance."""

    student_id: str
    expected: float
    actual: Optional[float] = None
    reason: str = ""


class FailedUpdate(BaseModel):
    """A write that still failed after the deferred retry pass."""

    student_id: str
    average: float
    attempts: int
    error: str


class RetryLedger(BaseModel):
    """Student id -> total write attempts across both passes of a run."""

    attempts: dict[str, int] = Field(default_factory=dict)

    def record(self, student_id: str, count: int = 1) -> int:
        self.attempts[student_id] = self.attempts.get(student_id, 0) + count
        return self.attempts[student_id]

    def retried(self) -> dict[str, int]:
        return {sid: n for sid, n in self.attempts.items() if n > 1}


class VerificationResult(BaseModel):
    """Outcome of one reconciliation loop."""

    matched: bool
    attempts: int = 0
    mismatches: list[Mismatch] = Field(default_factory=list)
    skipped: bool = False


class WorkflowContext(BaseModel):
    """Mutable record owned by a single update run."""

    course_id: str
    metric_definition_id: Optional[str] = None
    assignment_id: Optional[str] = None
    rubric_id: Optional[str] = None
    rubric_criterion_id: Optional[str] = None
    rollup: Optional[RollupSnapshot] = None
    averages: list[StudentUpdate] = Field(default_factory=list)
    bulk_job_id: Optional[str] = None
    start_time: Optional[float] = None
    number_of_updates: int = 0
    zero_updates: bool = False
    update_mode: Optional[UpdateMode] = None
    error: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = 0

    retry_ledger: RetryLedger = Field(default_factory=RetryLedger)
    failures: list[FailedUpdate] = Field(default_factory=list)
    override_failures: int = 0
    score_verification: Optional[VerificationResult] = None
    override_verification: Optional[VerificationResult] = None
    summary_location: Optional[str] = None
    elapsed_seconds: Optional[float] = None


class StateChange(BaseModel):
    """Event delivered to state machine subscribers after each transition."""

    from_state: WorkflowState
    to_state: WorkflowState
    context: WorkflowContext


class RunResult(BaseModel):
    """Final report of one update run."""

    course_id: str
    state: WorkflowState
    update_mode: Optional[UpdateMode] = None
    number_of_updates: int = 0
    zero_updates: bool = False
    averages: list[StudentUpdate] = Field(default_factory=list)
    retries: dict[str, int] = Field(default_factory=dict)
    failures: list[FailedUpdate] = Field(default_factory=list)
    override_failures: int = 0
    error: Optional[str] = None
    error_message: Optional[str] = None
    history: list[WorkflowState] = Field(default_factory=list)
    summary_location: Optional[str] = None
    score_verification: Optional[VerificationResult] = None
    override_verification: Optional[VerificationResult] = None
    elapsed_seconds: Optional[float] = None


class MissingSetup(StrEnum):
    METRIC_DEFINITION = "metric_definition"
    PLACEHOLDER_ASSIGNMENT = "placeholder_assignment"
    RUBRIC = "rubric"


class SetupStatus(BaseModel):
    """Result of one setup check pass. ``missing`` is None when all three exist."""

    rollup: RollupSnapshot
    metric_definition_id: Optional[str] = None
    assignment_id: Optional[str] = None
    rubric_id: Optional[str] = None
    rubric_criterion_id: Optional[str] = None
    missing: Optional[MissingSetup] = None

    @property
    def complete(self) -> bool:
        return self.missing is None
