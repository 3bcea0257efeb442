"""Interleaved grading of two essays on the same attempt."""

from pathlib import Path

import pytest

from docstore import SqliteDocumentStore
from lmsync.core.errors import ConcurrentUpdateError
from lmsync.core.strategy import LastWriteWins, OptimisticVersioned
from lmsync.services.grading import STALE_AGGREGATE_WARNING, GradeAggregationEngine
from tests.mocks.lms_seed import seed_attempt, seed_essay
from tests.mocks.stores import HookedStore

ATTEMPT = "users/u1/quizAttempts/q1/attempts/t1"


@pytest.fixture()
def stores(tmp_path: Path) -> tuple[HookedStore, SqliteDocumentStore]:
    db_path = tmp_path / "store.sqlite"
    hooked = HookedStore(db_path)
    seed_attempt(hooked, "u1", "q1", "t1", auto_score=8, auto_total=10)
    seed_essay(hooked, "e1", ATTEMPT)
    seed_essay(hooked, "e2", ATTEMPT)
    return hooked, SqliteDocumentStore(db_path)


def _competing_grade(store: SqliteDocumentStore, essay_id: str, score: float):
    def run() -> None:
        result = GradeAggregationEngine(store, strategy=LastWriteWins()).grade_essay(essay_id, score, 10)
        assert result.ok

    return run


def test_last_write_wins_can_leave_stale_aggregates_until_next_trigger(stores) -> None:
    hooked, plain = stores
    engine = GradeAggregationEngine(hooked, strategy=LastWriteWins())
    hooked.before_write(ATTEMPT, _competing_grade(plain, "e2", 9))

    assert engine.grade_essay("e1", 4, 10).ok

    # The competing request wrote 70; this request then overwrote it with its older read.
    assert hooked.get(ATTEMPT).get("percent") == 60
    assert hooked.get("users/u1/quizAttempts/q1").get("bestPercent") == 60

    outcome = engine.recompute_attempt(ATTEMPT)
    assert outcome.status == "updated"
    assert hooked.get(ATTEMPT).get("percent") == 70
    assert hooked.get("users/u1/quizAttempts/q1").get("bestPercent") == 70
    assert hooked.get("users/u1").get("averageQuizScore") == 65


def test_optimistic_strategy_retries_with_fresh_reads(stores) -> None:
    hooked, plain = stores
    engine = GradeAggregationEngine(hooked, strategy=OptimisticVersioned(max_retries=3))
    hooked.before_write(ATTEMPT, _competing_grade(plain, "e2", 9))

    result = engine.grade_essay("e1", 4, 10)

    assert result.ok
    attempt = hooked.get(ATTEMPT)
    assert attempt.get("percent") == 70
    assert attempt.get("gradedScore") == 13
    assert hooked.get("users/u1/quizAttempts/q1").get("bestPercent") == 70


def test_optimistic_strategy_gives_up_after_max_retries(stores) -> None:
    hooked, plain = stores
    engine = GradeAggregationEngine(hooked, strategy=OptimisticVersioned(max_retries=1))
    hooked.before_write(ATTEMPT, _competing_grade(plain, "e2", 9))

    result = engine.grade_essay("e1", 4, 10)

    assert not result.ok
    assert isinstance(result.error, ConcurrentUpdateError)
    assert result.warnings == [STALE_AGGREGATE_WARNING]
    # The grade itself was saved and the competing recompute already saw it.
    assert hooked.get("quizEssaySubmissions/e1").get("score") == 4
    assert hooked.get(ATTEMPT).get("percent") == 70
