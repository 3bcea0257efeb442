import json
import tempfile
import unittest
from pathlib import Path

import pytest

from docstore import SqliteDocumentStore
from lmsync.core.audit import AuditLogger
from lmsync.core.errors import InvalidGrade, NotFound
from lmsync.core.strategy import build_write_strategy
from lmsync.services.grading import (
    ATTEMPT_MISSING,
    MISSING_ATTEMPT_WARNING,
    MISSING_USER_WARNING,
    UNCHANGED,
    UPDATED,
    GradeAggregationEngine,
)
from tests.mocks.lms_seed import at, seed_assignment, seed_attempt, seed_essay
from tests.mocks.stores import read_rows

STRATEGIES = ("last_write_wins", "optimistic", "transactional")


class AttemptRecomputeTests(unittest.TestCase):
    strategy_name = "optimistic"

    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.tmp = Path(tmpdir.name)
        self.store = SqliteDocumentStore(self.tmp / "store.sqlite")
        self.engine = GradeAggregationEngine(
            self.store,
            strategy=build_write_strategy(self.strategy_name),
            audit=AuditLogger(self.tmp / "audit.jsonl"),
        )
        self.attempt = seed_attempt(self.store, "u1", "q1", "t1", auto_score=8, auto_total=10)

    def test_worked_example_attempt_fields(self) -> None:
        seed_essay(self.store, "e1", self.attempt, status="graded", score=7, maxScore=10)

        outcome = self.engine.recompute_attempt(self.attempt)

        self.assertEqual(outcome.status, UPDATED)
        attempt = self.store.get(self.attempt)
        self.assertEqual(attempt.get("percent"), 75)
        self.assertEqual(attempt.get("gradedPercent"), 70)
        self.assertEqual(attempt.get("autoPercent"), 80)
        summary = self.store.get("users/u1/quizAttempts/q1")
        self.assertEqual(summary.get("attemptsUsed"), 1)
        self.assertEqual(summary.get("bestPercent"), 75)
        self.assertEqual(summary.get("bestGradedPercent"), 70)
        self.assertEqual(summary.get("lastScore"), {"score": 15, "total": 20, "percent": 75})
        self.assertEqual(self.store.get("users/u1").get("averageQuizScore"), 70)

    def test_second_recompute_is_byte_identical(self) -> None:
        seed_essay(self.store, "e1", self.attempt, status="graded", score=7, maxScore=10)
        self.engine.recompute_attempt(self.attempt)
        before = read_rows(self.store)

        outcome = self.engine.recompute_attempt(self.attempt)

        self.assertEqual(outcome.status, UNCHANGED)
        self.assertEqual(read_rows(self.store), before)

    def test_ungraded_and_review_essays_do_not_count(self) -> None:
        seed_essay(self.store, "e1", self.attempt, status="needs_review", score=2, maxScore=10)
        seed_essay(self.store, "e2", self.attempt, status="pending")
        self.engine.recompute_attempt(self.attempt)
        attempt = self.store.get(self.attempt)
        self.assertEqual(attempt.get("percent"), 80)
        self.assertEqual(attempt.get("gradedTotal"), 0)
        self.assertEqual(attempt.get("gradedPercent"), 0)

    def test_missing_attempt_is_a_warning_not_a_write(self) -> None:
        before = read_rows(self.store)
        outcome = self.engine.recompute_attempt("users/u1/quizAttempts/q1/attempts/ghost")
        self.assertEqual(outcome.status, ATTEMPT_MISSING)
        self.assertEqual(outcome.warnings, [MISSING_ATTEMPT_WARNING])
        self.assertEqual(read_rows(self.store), before)

    def test_malformed_attempt_path(self) -> None:
        with self.assertRaises(ValueError):
            self.engine.recompute_attempt("users/u1/quizAttempts/q1")

    def test_essay_order_does_not_change_final_aggregates(self) -> None:
        other_store = SqliteDocumentStore(self.tmp / "other.sqlite")
        other = GradeAggregationEngine(other_store, strategy=build_write_strategy(self.strategy_name))
        other_attempt = seed_attempt(other_store, "u1", "q1", "t1", auto_score=8, auto_total=10)
        for store, path in ((self.store, self.attempt), (other_store, other_attempt)):
            seed_essay(store, "e1", path)
            seed_essay(store, "e2", path)

        self.engine.grade_essay("e1", 4, 10)
        self.engine.grade_essay("e2", 9, 10)
        other.grade_essay("e2", 9, 10)
        other.grade_essay("e1", 4, 10)

        for path in (self.attempt, "users/u1/quizAttempts/q1", "users/u1"):
            mine = self.store.get(path)
            theirs = other_store.get(path)
            for key in ("percent", "bestPercent", "averageQuizScore"):
                self.assertEqual(mine.get(key), theirs.get(key), (path, key))
        self.assertEqual(self.store.get(self.attempt).get("percent"), 70)

    def test_audit_records_recompute(self) -> None:
        seed_essay(self.store, "e1", self.attempt, status="graded", score=7, maxScore=10)
        self.engine.recompute_attempt(self.attempt)
        lines = (self.tmp / "audit.jsonl").read_text().splitlines()
        self.assertEqual(json.loads(lines[-1])["operation"], "recompute_attempt")


class LastWriteWinsRecomputeTests(AttemptRecomputeTests):
    strategy_name = "last_write_wins"


class TransactionalRecomputeTests(AttemptRecomputeTests):
    strategy_name = "transactional"


@pytest.fixture(params=STRATEGIES)
def engine(request: pytest.FixtureRequest, tmp_path: Path) -> GradeAggregationEngine:
    store = SqliteDocumentStore(tmp_path / "store.sqlite")
    return GradeAggregationEngine(store, strategy=build_write_strategy(request.param))


def _set_summary(store: SqliteDocumentStore, user_id: str, quiz_id: str, **fields) -> None:
    store.set(f"users/{user_id}/quizAttempts/{quiz_id}", {"quizId": quiz_id, **fields})


def test_quiz_average_over_summaries_any_trigger_order(engine: GradeAggregationEngine) -> None:
    store = engine.store
    first = seed_attempt(store, "u1", "qa", "t1", auto_score=0, auto_total=0)
    second = seed_attempt(store, "u1", "qb", "t1", auto_score=0, auto_total=0)
    seed_essay(store, "ea", first, status="graded", score=6, maxScore=10)
    seed_essay(store, "eb", second, status="graded", score=8, maxScore=10)

    engine.recompute_attempt(second)
    engine.recompute_attempt(first)
    assert store.get("users/u1/quizAttempts/qa").get("bestGradedPercent") == 60
    assert store.get("users/u1/quizAttempts/qb").get("bestGradedPercent") == 80
    assert store.get("users/u1").get("averageQuizScore") == 70

    engine.recompute_attempt(first)
    engine.recompute_attempt(second)
    assert store.get("users/u1").get("averageQuizScore") == 70


def test_quiz_average_prefers_graded_then_best_then_last(engine: GradeAggregationEngine) -> None:
    store = engine.store
    store.set("users/u2", {"role": "student"})
    _set_summary(store, "u2", "q1", bestGradedPercent=50, bestPercent=95)
    _set_summary(store, "u2", "q2", bestPercent=90)
    _set_summary(store, "u2", "q3", lastScore={"score": 4, "total": 10, "percent": 40})
    engine.recompute_quiz_average("u2")
    assert store.get("users/u2").get("averageQuizScore") == 60


def test_best_percent_takes_the_strongest_attempt(engine: GradeAggregationEngine) -> None:
    store = engine.store
    weak = seed_attempt(store, "u1", "q1", "t1", auto_score=3, auto_total=10, submitted_at=at(1))
    strong = seed_attempt(store, "u1", "q1", "t2", auto_score=9, auto_total=10, submitted_at=at(0))
    engine.recompute_attempt(strong)
    engine.recompute_attempt(weak)
    summary = store.get("users/u1/quizAttempts/q1")
    assert summary.get("attemptsUsed") == 2
    assert summary.get("bestPercent") == 90
    assert summary.get("lastScore") == {"score": 3, "total": 10, "percent": 30}


def test_legacy_summary_location(engine: GradeAggregationEngine) -> None:
    store = engine.store
    attempt = seed_attempt(store, "u1", "quiz-7", "t1", auto_score=5, auto_total=10, summary_id="legacy123")
    outcome = engine.recompute_attempt(attempt)
    assert outcome.summary["quizId"] == "quiz-7"
    assert store.get("users/u1/quizAttempts/legacy123").get("bestPercent") == 50
    assert not store.get("users/u1/quizAttempts/quiz-7").exists

    written = engine.recompute_quiz_summary("u1", "quiz-7")
    assert written.path == "users/u1/quizAttempts/legacy123"
    assert written.written is False


def test_grade_essay_validation(engine: GradeAggregationEngine) -> None:
    store = engine.store
    attempt = seed_attempt(store, "u1", "q1", "t1", auto_score=1, auto_total=1)
    seed_essay(store, "e1", attempt)
    for score, max_score, status in ((-1, 10, "graded"), (5, 0, "graded"), ("7", 10, "graded"), (5, 10, "pending")):
        result = engine.grade_essay("e1", score, max_score, status=status)
        assert isinstance(result.error, InvalidGrade)
    assert store.get("quizEssaySubmissions/e1").get("status") == "pending"
    assert isinstance(engine.grade_essay("nope", 5, 10).error, NotFound)


def test_grade_essay_saves_grade_and_recomputes(engine: GradeAggregationEngine) -> None:
    store = engine.store
    attempt = seed_attempt(store, "u1", "q1", "t1", auto_score=8, auto_total=10)
    seed_essay(store, "e1", attempt)

    result = engine.grade_essay("e1", 7, 10, feedback="Good", grader_id="teacher-1")

    assert result.ok
    assert not result.has_warnings
    essay = store.get("quizEssaySubmissions/e1")
    assert essay.get("status") == "graded"
    assert essay.get("feedback") == "Good"
    assert essay.get("gradedAt") is not None
    assert result.value["recompute"]["attempt"]["percent"] == 75


def test_grade_essay_with_missing_attempt_warns(engine: GradeAggregationEngine) -> None:
    store = engine.store
    seed_essay(store, "e1", "users/u1/quizAttempts/q1/attempts/deleted")
    seed_essay(store, "e2", "not/an/attempt")

    result = engine.grade_essay("e1", 7, 10)
    assert result.ok
    assert result.warnings == [MISSING_ATTEMPT_WARNING]
    assert store.get("quizEssaySubmissions/e1").get("score") == 7
    assert not store.get("users/u1").exists

    assert engine.grade_essay("e2", 3, 10).warnings == [MISSING_ATTEMPT_WARNING]


def test_grade_assignment_writes_submission_mirror_and_average(engine: GradeAggregationEngine) -> None:
    store = engine.store
    store.set("users/s1", {"role": "student"})
    seed_assignment(store, "a1", "c1", "m1", title="Essay 1", points=100, dueAt=at(48))
    seed_assignment(store, "a2", "c1", "m1", title="Essay 2")
    store.set("assignments/a1/submissions/s1", {"submittedAt": at(2), "graded": False, "grade": None})

    assert engine.grade_assignment("a1", "s1", 90, "Nice").ok
    result = engine.grade_assignment("a2", "s1", 85)

    assert result.ok
    submission = store.get("assignments/a1/submissions/s1")
    assert submission.get("grade") == 90
    assert submission.get("graded") is True
    mirror = store.get("users/s1/assignmentGrades/a1").to_dict()
    assert mirror["assignmentTitle"] == "Essay 1"
    assert mirror["points"] == 100
    assert mirror["submittedAt"] == at(2)
    assert mirror["dueAt"] == at(48)
    assert mirror["feedback"] == "Nice"
    user = store.get("users/s1")
    assert user.get("gradedAssignmentsCount") == 2
    assert user.get("averageAssignmentGrade") == 88
    assert user.get("lastAssignmentGrade.assignmentId") == "a2"
    assert user.get("lastAssignmentGrade.grade") == 85


def test_grade_assignment_feedback_only_keeps_grade(engine: GradeAggregationEngine) -> None:
    store = engine.store
    store.set("users/s1", {})
    seed_assignment(store, "a1", "c1")
    engine.grade_assignment("a1", "s1", 70)
    result = engine.grade_assignment("a1", "s1", feedback="Revised comments")
    assert result.value["grade"] == 70
    assert store.get("users/s1/assignmentGrades/a1").get("feedback") == "Revised comments"


def test_grade_assignment_errors_before_writing(engine: GradeAggregationEngine) -> None:
    store = engine.store
    assert isinstance(engine.grade_assignment("missing", "s1", 50).error, NotFound)
    assert not store.get("assignments/missing/submissions/s1").exists
    seed_assignment(store, "a1", "c1")
    assert isinstance(engine.grade_assignment("a1", "s1", -5).error, InvalidGrade)

    result = engine.grade_assignment("a1", "s1", 50)
    assert result.ok
    assert result.warnings == [MISSING_USER_WARNING]
    assert not store.get("users/s1/assignmentGrades/a1").exists


def test_remove_submission_recomputes_average(engine: GradeAggregationEngine) -> None:
    store = engine.store
    store.set("users/s1", {})
    seed_assignment(store, "a1", "c1")
    seed_assignment(store, "a2", "c1")
    engine.grade_assignment("a1", "s1", 60)
    engine.grade_assignment("a2", "s1", 100)
    assert store.get("users/s1").get("averageAssignmentGrade") == 80

    result = engine.remove_assignment_submission("a2", "s1")

    assert result.ok
    assert not store.get("assignments/a2/submissions/s1").exists
    assert not store.get("users/s1/assignmentGrades/a2").exists
    assert store.get("users/s1").get("averageAssignmentGrade") == 60
    assert store.get("users/s1").get("gradedAssignmentsCount") == 1
    assert isinstance(engine.remove_assignment_submission("a2", "s1").error, NotFound)


def test_recompute_user_rebuilds_everything(engine: GradeAggregationEngine) -> None:
    store = engine.store
    first = seed_attempt(store, "u1", "q1", "t1", auto_score=8, auto_total=10)
    seed_attempt(store, "u1", "q2", "t1", auto_score=4, auto_total=10)
    seed_essay(store, "e1", first, status="graded", score=7, maxScore=10)
    store.set("users/u1/assignmentGrades/a1", {"grade": 91})
    store.set("users/u1/assignmentGrades/a2", {"grade": 80})

    result = engine.recompute_user("u1")

    assert result["quizSummaries"] == 2
    assert result["attemptsUpdated"] == 2
    # q1: graded 70; q2: no essays, graded 0.
    assert result["averageQuizScore"] == 35
    assert result["averageAssignmentGrade"] == 86
    assert result["gradedAssignmentsCount"] == 2

    again = engine.recompute_user("u1")
    assert again["attemptsUpdated"] == 0
    assert again["summariesUpdated"] == 0
