"""Lexical importance scoring for conversation turns.

A pure function: same turn in, same score out. The score decides
truncation priority and is persisted alongside each turn.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chat_memory.memory.models import Turn

BASE_SCORE = 0.5
QUESTION_BONUS = 0.20
CODE_BONUS = 0.15
PROBLEM_BONUS = 0.10
LENGTH_BONUS = 0.10
ASSISTANT_BONUS = 0.05

LONG_TEXT_CHARS = 200

_INTERROGATIVE = re.compile(r"(what|how|why|when|who)\b")
_CODE_MARKERS = ("```", "function", "class")
_PROBLEM_WORDS = ("error", "problem", "issue")


def _is_question(text: str) -> bool:
    return "?" in text or _INTERROGATIVE.match(text.lstrip()) is not None


def score_importance(turn: Turn) -> float:
    """Score a turn between 0.0 and 1.0 from lexical heuristics."""
    text = turn.text.lower()
    score = BASE_SCORE

    if _is_question(text):
        score += QUESTION_BONUS
    if any(marker in text for marker in _CODE_MARKERS):
        score += CODE_BONUS
    if any(word in text for word in _PROBLEM_WORDS):
        score += PROBLEM_BONUS
    if len(text) > LONG_TEXT_CHARS:
        score += LENGTH_BONUS
    if turn.role == "assistant":
        score += ASSISTANT_BONUS

    return min(round(score, 4), 1.0)
