"""Rollup snapshot models: per-student criterion scores as held by the gradebook."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Criterion(BaseModel):
    """A tracked criterion (learning outcome) linked into the rollup."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    title: str = ""
    alignments: list[str] = Field(default_factory=list)  # e.g. "assignment_42"


class CriterionScore(BaseModel):
    """One student's score on one criterion. ``score`` is None when unscored."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    criterion_id: str
    score: Optional[float] = None


class StudentRollup(BaseModel):
    """All criterion scores recorded for a single student."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    student_id: str
    scores: list[CriterionScore] = Field(default_factory=list)

    def score_for(self, criterion_id: str) -> Optional[float]:
        for entry in self.scores:
            if entry.criterion_id == str(criterion_id):
                return entry.score
        return None


class RollupSnapshot(BaseModel):
    """Snapshot of every student's criterion scores plus criterion metadata."""

    students: list[StudentRollup] = Field(default_factory=list)
    criteria: list[Criterion] = Field(default_factory=list)

    def criterion_by_title(self, title: str) -> Optional[Criterion]:
        return next((c for c in self.criteria if c.title == title), None)

    def titles(self) -> dict[str, str]:
        return {c.id: c.title for c in self.criteria}

    def student(self, student_id: str) -> Optional[StudentRollup]:
        return next((s for s in self.students if s.student_id == str(student_id)), None)
