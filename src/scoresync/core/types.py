"""Type aliases used across scoresync."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

JsonDict = dict[str, Any]
CourseId = str
StudentId = str
EnrollmentId = str

# Maps a computed average to the override percentage written to the gradebook.
OverrideScale = Callable[[float], float]
Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]
