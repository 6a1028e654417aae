"""Average Calculator: per-student aggregate scores and the update-needed decision."""

from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from scoresync.core.config import WorkflowConfig
from scoresync.core.exceptions import ScoreSyncError
from scoresync.core.protocols import IGradebookClient
from scoresync.core.types import OverrideScale
from scoresync.models.rollup import RollupSnapshot
from scoresync.models.workflow import StudentUpdate

logger = logging.getLogger(__name__)

OVERRIDE_TOLERANCE = 0.01
_CENTS = Decimal("0.01")


def round_half_up(value: float) -> float:
    """Round to 2 places, halves away from zero, on the float's shortest repr."""
    return float(Decimal(repr(value)).quantize(_CENTS, rounding=ROUND_HALF_UP))


def linear_override_scale(factor: float = 25.0) -> OverrideScale:
    """Return ``average -> round(average * factor, 2)`` (0-4 onto 0-100 by default)."""

    def scale(average: float) -> float:
        return round_half_up(average * factor)

    return scale


def is_excluded(title: str, keywords: Iterable[str]) -> bool:
    lowered = title.lower()
    return any(k.lower() in lowered for k in keywords if k)


def override_needs_update(expected: float, current: float | None, tolerance: float = OVERRIDE_TOLERANCE) -> bool:
    if current is None:
        return True
    return abs(current - expected) > tolerance


def calculate_updates(
    rollup: RollupSnapshot,
    metric_definition_id: str | None,
    *,
    excluded_keywords: Iterable[str] = (),
    check_scores: bool = True,
    check_overrides: bool = False,
    override_scale: OverrideScale | None = None,
    current_overrides: dict[str, float] | None = None,
) -> list[StudentUpdate]:
    """Compute the students whose stored score or override needs rewriting.

    Pure function: no I/O, no clock. Output follows rollup order. A
    ``current_overrides`` of None disables the override comparison.
    """
    keywords = list(excluded_keywords)
    titles = rollup.titles()
    metric_id = str(metric_definition_id) if metric_definition_id is not None else None
    scale = override_scale or linear_override_scale()
    compare_overrides = check_overrides and current_overrides is not None

    updates: list[StudentUpdate] = []
    for student in rollup.students:
        old_average = student.score_for(metric_id) if metric_id is not None else None
        relevant = [
            s.score
            for s in student.scores
            if s.score is not None
            and s.criterion_id != metric_id
            and not is_excluded(titles.get(s.criterion_id, ""), keywords)
        ]
        if not relevant:
            continue

        new_average = round_half_up(sum(relevant) / len(relevant))
        score_update = check_scores and old_average != new_average
        override_update = compare_overrides and override_needs_update(
            scale(new_average), current_overrides.get(student.student_id)  # type: ignore[union-attr]
        )
        logger.debug(
            "Student %s: %d scores, old=%s new=%s score_update=%s override_update=%s",
            student.student_id, len(relevant), old_average, new_average, score_update, override_update,
        )
        if score_update or override_update:
            updates.append(StudentUpdate(student_id=student.student_id, new_average=new_average))
    return updates


class AverageCalculator:
    """Wraps ``calculate_updates`` with the optional override pre-fetch."""

    def __init__(
        self,
        *,
        config: WorkflowConfig,
        client: IGradebookClient,
        override_scale: OverrideScale | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._scale = override_scale or linear_override_scale(config.override_scale_factor)

    async def calculate(
        self, course_id: str, rollup: RollupSnapshot, metric_definition_id: str | None
    ) -> list[StudentUpdate]:
        current_overrides: dict[str, float] | None = None
        if self._config.enable_override:
            try:
                current_overrides = await self._client.fetch_override_scores(course_id)
            except ScoreSyncError:
                logger.warning(
                    "Failed to fetch override scores for course %s, skipping override check",
                    course_id, exc_info=True,
                )

        updates = calculate_updates(
            rollup,
            metric_definition_id,
            excluded_keywords=self._config.excluded_keywords,
            check_scores=self._config.enable_score_updates,
            check_overrides=self._config.enable_override,
            override_scale=self._scale,
            current_overrides=current_overrides,
        )
        logger.info("Calculation complete for course %s: %d students need updates", course_id, len(updates))
        return updates
