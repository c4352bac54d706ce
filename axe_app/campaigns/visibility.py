"""Conditional display of questions based on earlier answers."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

from .schema import FlatQuestion, Question

logger = logging.getLogger(__name__)


def is_visible(question: Question | FlatQuestion, answers: Mapping[str, Any]) -> bool:
    """Return whether ``question`` should be shown given ``answers``.

    Questions without a dependency are always visible. A multi-valued stored
    answer matches when it contains the dependency value; anything else is
    compared as strings. An absent answer means not visible. Never raises.
    """
    if isinstance(question, FlatQuestion):
        question = question.question
    dependency = getattr(question, "depends_on", None)
    if dependency is None:
        return True
    try:
        if dependency.question_id not in answers:
            return False
        stored = answers[dependency.question_id]
        if stored is None:
            return False
        if isinstance(stored, (list, tuple, set, frozenset)):
            return str(dependency.value) in {str(v) for v in stored}
        return str(stored) == str(dependency.value)
    except Exception:
        logger.debug(
            "Visibility check failed for question %s", getattr(question, "id", "?"),
            exc_info=True,
        )
        return False


def next_visible_index(
    questions: Sequence[FlatQuestion], answers: Mapping[str, Any], start: int
) -> int | None:
    """First index ``j >= start`` whose question is visible, else ``None``."""
    for j in range(max(start, 0), len(questions)):
        if is_visible(questions[j], answers):
            return j
    return None


def previous_visible_index(
    questions: Sequence[FlatQuestion], answers: Mapping[str, Any], start: int
) -> int | None:
    """Last index ``j <= start`` whose question is visible, else ``None``."""
    for j in range(min(start, len(questions) - 1), -1, -1):
        if is_visible(questions[j], answers):
            return j
    return None
