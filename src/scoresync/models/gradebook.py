"""Remote gradebook object models: assignments, creation specs, job statuses."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from scoresync.core.config import Rating


class ImportStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class JobStatus(StrEnum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class GradeSource(StrEnum):
    ASSIGNMENT = "assignment"
    ENROLLMENT = "enrollment"


class Assignment(BaseModel):
    """The parts of a remote assignment the setup check needs."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    name: str
    rubric_id: Optional[str] = None
    rubric_title: Optional[str] = None
    criterion_ids: list[str] = Field(default_factory=list)


class MetricDefinitionSpec(BaseModel):
    """Fields used to import the aggregate metric definition."""

    title: str
    description: str = ""
    calculation_method: str = "latest"
    mastery_points: float = 3
    ratings: list[Rating] = Field(default_factory=list)


class AssignmentSpec(BaseModel):
    """Fields used to create the placeholder assignment."""

    name: str
    points_possible: float = 4
    grading_type: str = "gpa_scale"
    submission_types: list[str] = Field(default_factory=lambda: ["none"])
    published: bool = True
    omit_from_final_grade: bool = True
    position: int = 1


class RubricSpec(BaseModel):
    """Fields used to create the single-criterion rubric."""

    title: str
    criterion_description: str = ""
    points: float = 4
    mastery_points: float = 3
    ratings: list[Rating] = Field(default_factory=list)
    hide_points: bool = True


class CourseGradeSnapshot(BaseModel):
    """A course grade as displayed on the read path."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    course_id: str
    score: Optional[float] = None
    letter_grade: Optional[str] = None
    source: GradeSource = GradeSource.ASSIGNMENT
    fetched_at: Optional[datetime] = None
