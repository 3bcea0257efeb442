"""Pure grade arithmetic shared by the aggregation engine and the maintenance scripts.

Every function derives its output from the values passed in; nothing here
touches the store, so recomputing with the same children always yields the
same numbers.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Tuple

GRADED = "graded"
NEEDS_REVIEW = "needs_review"
PENDING = "pending"
ESSAY_STATUSES = (PENDING, GRADED, NEEDS_REVIEW)


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def round_percent(value: float) -> int:
    """Round half-up and clamp to the 0..100 range."""
    return max(0, min(100, round_half_up(value)))


def percent_of(score: float, total: float) -> int:
    if not total:
        return 0
    return round_percent(score / total * 100)


def _as_number(value: Any) -> float:
    return value if is_number(value) else 0


def combine_attempt(
    auto_score: Any,
    auto_total: Any,
    graded_score: float,
    graded_total: float,
) -> Dict[str, Any]:
    """Derived percentage fields for one attempt."""
    auto_score = _as_number(auto_score)
    auto_total = _as_number(auto_total)
    return {
        "autoPercent": percent_of(auto_score, auto_total),
        "gradedScore": graded_score,
        "gradedTotal": graded_total,
        "gradedPercent": percent_of(graded_score, graded_total),
        "percent": percent_of(auto_score + graded_score, auto_total + graded_total),
    }


def sum_graded_essays(essays: Iterable[Mapping[str, Any]], default_max: float = 10) -> Tuple[float, float]:
    """
    Total score and max score over essays whose status is ``graded``.

    Essays without a numeric score are ignored; a missing or non-numeric
    ``maxScore`` counts as ``default_max``.
    """
    score: float = 0
    total: float = 0
    for essay in essays:
        if essay.get("status") != GRADED or not is_number(essay.get("score")):
            continue
        score += essay["score"]
        max_score = essay.get("maxScore")
        total += max_score if is_number(max_score) else default_max
    return score, total


def latest_attempt(attempts: List[Mapping[str, Any]]) -> Mapping[str, Any] | None:
    """Most recently submitted attempt; attempts without ``submittedAt`` lose, ids break ties."""
    if not attempts:
        return None
    dated = [a for a in attempts if isinstance(a.get("submittedAt"), datetime)]
    if dated:
        return max(dated, key=lambda a: (a["submittedAt"], str(a.get("id") or "")))
    return max(attempts, key=lambda a: str(a.get("id") or ""))


def last_score(attempt: Mapping[str, Any]) -> Dict[str, Any]:
    score = _as_number(attempt.get("autoScore")) + _as_number(attempt.get("gradedScore"))
    total = _as_number(attempt.get("autoTotal")) + _as_number(attempt.get("gradedTotal"))
    percent = attempt.get("percent")
    if not is_number(percent):
        percent = percent_of(score, total)
    return {"score": score, "total": total, "percent": percent}


def summarize_attempts(attempts: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Quiz summary fields over every attempt of one (user, quiz) pair.

    ``bestPercent`` takes each attempt's combined ``percent`` (or its
    ``autoPercent`` when it has not been recomputed yet); ``bestGradedPercent``
    takes ``gradedPercent``. Both start at 0.
    """
    attempts = list(attempts)
    best_percent = 0
    best_graded = 0
    for attempt in attempts:
        percent = attempt.get("percent")
        if not is_number(percent):
            percent = attempt.get("autoPercent")
        if is_number(percent) and percent > best_percent:
            best_percent = percent
        graded = attempt.get("gradedPercent")
        if is_number(graded) and graded > best_graded:
            best_graded = graded
    summary: Dict[str, Any] = {
        "attemptsUsed": len(attempts),
        "bestPercent": best_percent,
        "bestGradedPercent": best_graded,
    }
    latest = latest_attempt(attempts)
    if latest is not None:
        summary["lastScore"] = last_score(latest)
    return summary


def summary_score(summary: Mapping[str, Any]) -> float | None:
    """``bestGradedPercent``, else ``bestPercent``, else ``lastScore.percent``."""
    for key in ("bestGradedPercent", "bestPercent"):
        if is_number(summary.get(key)):
            return summary[key]
    last = summary.get("lastScore")
    if isinstance(last, Mapping) and is_number(last.get("percent")):
        return last["percent"]
    return None


def average_quiz_score(summaries: Iterable[Mapping[str, Any]]) -> int:
    scores = [score for score in (summary_score(s) for s in summaries) if score is not None]
    if not scores:
        return 0
    return round_percent(sum(scores) / len(scores))


def average_assignment_grade(grades: Iterable[Mapping[str, Any]]) -> Tuple[int, int]:
    """Number of numerically graded assignments and their half-up rounded mean grade."""
    values = [grade["grade"] for grade in grades if is_number(grade.get("grade"))]
    if not values:
        return 0, 0
    return len(values), round_half_up(sum(values) / len(values))


__all__ = [
    "ESSAY_STATUSES",
    "GRADED",
    "NEEDS_REVIEW",
    "PENDING",
    "average_assignment_grade",
    "average_quiz_score",
    "combine_attempt",
    "is_number",
    "last_score",
    "latest_attempt",
    "percent_of",
    "round_half_up",
    "round_percent",
    "summarize_attempts",
    "summary_score",
    "sum_graded_essays",
]
