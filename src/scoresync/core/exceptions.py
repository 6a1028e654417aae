"""scoresync exception hierarchy."""

from __future__ import annotations


class ScoreSyncError(Exception):
    """Base exception for all scoresync errors."""


class RemoteServiceError(ScoreSyncError):
    """Non-2xx response or network failure talking to the remote gradebook."""

    def __init__(self, context: str, message: str, status: int | None = None, body: str = "") -> None:
        self.context = context
        self.status = status
        self.body = body
        super().__init__(f"[{context}] {message}")


class PollTimeoutError(ScoreSyncError, TimeoutError):
    """A polling loop ran out of its time or attempt budget."""

    def __init__(self, message: str, budget_seconds: float) -> None:
        self.budget_seconds = budget_seconds
        super().__init__(message)


class BulkJobFailedError(ScoreSyncError):
    """The remote bulk write job reported ``failed``."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Bulk update job {job_id} failed.")


class ValidationError(ScoreSyncError):
    """A required identifier or precondition is missing."""

    def __init__(self, message: str, field: str = "") -> None:
        self.field = field
        super().__init__(message)


class UserDeclinedError(ScoreSyncError):
    """The user answered no to a setup-creation prompt."""


class IllegalTransitionError(ScoreSyncError):
    """A state transition outside the transition table was requested."""

    def __init__(self, from_state: str, to_state: str, allowed: list[str]) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed
        super().__init__(
            f"Invalid transition from {from_state} to {to_state}. "
            f"Valid transitions: {', '.join(allowed) or 'none'}"
        )


class RunInProgressError(ScoreSyncError):
    """Another update run already holds the lock for this course."""

    def __init__(self, course_id: str) -> None:
        self.course_id = course_id
        super().__init__(f"An update is already running for course {course_id}")


class CacheError(ScoreSyncError):
    """Redis cache operation failed."""


class ArtifactStoreError(ScoreSyncError):
    """Writing or reading an exported artifact failed."""


def user_message(exc: BaseException) -> str:
    """Return a user-facing message for an error that ended a run."""
    if isinstance(exc, UserDeclinedError):
        return str(exc) or "Operation cancelled."
    if isinstance(exc, PollTimeoutError):
        return "The operation took too long and timed out. Please try again."
    if isinstance(exc, ValidationError):
        return str(exc)
    if isinstance(exc, RemoteServiceError):
        if exc.status in (401, 403):
            return "You don't have permission to perform this action."
        if exc.status == 404:
            return "The requested resource was not found."
        if exc.status is not None and exc.status >= 500:
            return "Gradebook server error. Please try again later."
        return f"Gradebook API error: {exc}"
    if isinstance(exc, ScoreSyncError):
        return str(exc)
    return "An unexpected error occurred. Please try again or contact support."
