"""Approval ports for setup creation and summary export prompts."""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class StaticApproval:
    """Answers every question the same way. Used by the API and the CLI."""

    def __init__(self, answer: bool) -> None:
        self._answer = answer
        self.questions: list[str] = []

    async def request_approval(self, question: str) -> bool:
        self.questions.append(question)
        logger.info("Approval requested (%s): %s", "yes" if self._answer else "no", question.replace("\n", " "))
        return self._answer


class ScriptedApproval:
    """Replays a fixed list of answers, then falls back to ``default``."""

    def __init__(self, answers: list[bool] | None = None, default: bool = True) -> None:
        self._answers = list(answers or [])
        self._default = default
        self.questions: list[str] = []

    async def request_approval(self, question: str) -> bool:
        self.questions.append(question)
        return self._answers.pop(0) if self._answers else self._default
