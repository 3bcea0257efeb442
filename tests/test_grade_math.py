from datetime import datetime, timezone

import pytest

from lmsync.services import grade_math


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.5, 1), (1.5, 2), (2.5, 3), (74.5, 75), (74.49, 74), (-3, 0), (130, 100)],
)
def test_round_percent_is_half_up_and_clamped(value: float, expected: int) -> None:
    assert grade_math.round_percent(value) == expected


def test_percent_of_zero_denominator() -> None:
    assert grade_math.percent_of(5, 0) == 0
    assert grade_math.percent_of(1, 3) == 33


def test_combine_attempt_matches_worked_example() -> None:
    fields = grade_math.combine_attempt(8, 10, 7, 10)
    assert fields == {
        "autoPercent": 80,
        "gradedScore": 7,
        "gradedTotal": 10,
        "gradedPercent": 70,
        "percent": 75,
    }


def test_combine_attempt_percent_bounds() -> None:
    fields = grade_math.combine_attempt(None, "n/a", 0, 0)
    assert fields["percent"] == 0
    assert fields["autoPercent"] == 0
    over = grade_math.combine_attempt(15, 10, 12, 10)
    assert 0 <= over["percent"] <= 100
    assert over["gradedPercent"] == 100


def test_sum_graded_essays_only_counts_graded_numeric_scores() -> None:
    essays = [
        {"status": "graded", "score": 7, "maxScore": 10},
        {"status": "graded", "score": 3},
        {"status": "needs_review", "score": 9, "maxScore": 10},
        {"status": "graded", "score": "8", "maxScore": 10},
        {"status": "graded", "score": True, "maxScore": 10},
        {"status": "pending"},
    ]
    assert grade_math.sum_graded_essays(essays) == (10, 20)
    assert grade_math.sum_graded_essays(essays[1:2], default_max=5) == (3, 5)


def test_summarize_attempts_best_and_last() -> None:
    early = datetime(2026, 9, 1, tzinfo=timezone.utc)
    late = datetime(2026, 9, 2, tzinfo=timezone.utc)
    attempts = [
        {"id": "a1", "percent": 90, "gradedPercent": 40, "submittedAt": early,
         "autoScore": 9, "autoTotal": 10, "gradedScore": 0, "gradedTotal": 0},
        {"id": "a2", "autoPercent": 60, "submittedAt": late, "autoScore": 6, "autoTotal": 10},
        {"id": "a3", "percent": 50, "gradedPercent": 80},
    ]
    summary = grade_math.summarize_attempts(attempts)
    assert summary["attemptsUsed"] == 3
    assert summary["bestPercent"] == 90
    assert summary["bestGradedPercent"] == 80
    assert summary["lastScore"] == {"score": 6, "total": 10, "percent": 60}


def test_summarize_attempts_is_order_independent() -> None:
    at = datetime(2026, 9, 1, tzinfo=timezone.utc)
    attempts = [
        {"id": "a1", "percent": 70, "submittedAt": at, "autoScore": 7, "autoTotal": 10},
        {"id": "a2", "percent": 40, "submittedAt": at, "autoScore": 4, "autoTotal": 10},
    ]
    assert grade_math.summarize_attempts(attempts) == grade_math.summarize_attempts(list(reversed(attempts)))
    assert grade_math.summarize_attempts([]) == {"attemptsUsed": 0, "bestPercent": 0, "bestGradedPercent": 0}


def test_average_quiz_score_fallback_chain() -> None:
    summaries = [
        {"bestGradedPercent": 60, "bestPercent": 90},
        {"bestPercent": 80},
        {"lastScore": {"percent": 71}},
        {"note": "no scores yet"},
    ]
    assert grade_math.average_quiz_score(summaries) == 70
    assert grade_math.average_quiz_score([]) == 0


def test_average_assignment_grade_counts_numeric_grades() -> None:
    grades = [{"grade": 90}, {"grade": 85}, {"grade": None}, {"grade": "A"}]
    assert grade_math.average_assignment_grade(grades) == (2, 88)
    assert grade_math.average_assignment_grade([]) == (0, 0)
