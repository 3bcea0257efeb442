from pathlib import Path

import pytest

from docstore import DocumentStoreError, SqliteDocumentStore
from lmsync.core.errors import FanoutLimitExceeded
from lmsync.services.fanout import (
    chunk,
    commit_in_chunks,
    get_by_ids,
    query_in_chunks,
    with_scan_fallback,
)
from tests.mocks.stores import FlakyStore


def test_chunk_dedupes_and_splits() -> None:
    ids = [f"id{i}" for i in range(23)] + ["id0", "", None]
    groups = chunk(ids, 10)
    assert [len(group) for group in groups] == [10, 10, 3]
    assert groups[0][0] == "id0"
    assert chunk([], 10) == []
    with pytest.raises(ValueError):
        chunk(["a"], 0)


def test_query_in_chunks_merges_every_group(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "store.sqlite")
    for index in range(25):
        store.set(f"assignments/a{index}", {"courseId": f"c{index}"})
    course_ids = [f"c{i}" for i in range(25)] + ["missing"]

    results = query_in_chunks(store, "assignments", "courseId", course_ids)

    assert sorted(snap.id for snap in results) == sorted(f"a{i}" for i in range(25))
    assert len(store.queries) == 3
    assert all(len(q.filters[-1].value) <= 10 for q in store.queries)


def test_query_in_chunks_empty_input_issues_no_query(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "store.sqlite")
    assert query_in_chunks(store, "assignments", "courseId", []) == []
    assert store.queries == []


def test_array_contains_any_results_are_deduplicated(tmp_path: Path) -> None:
    store = SqliteDocumentStore(tmp_path / "store.sqlite")
    store.set("courses/c1", {"assignedClasses": [f"k{i}" for i in range(15)]})
    class_ids = [f"k{i}" for i in range(15)]
    results = query_in_chunks(store, "courses", "assignedClasses", class_ids, op="array-contains-any")
    assert [snap.id for snap in results] == ["c1"]


def test_oversized_chunk_is_rejected_before_dispatch(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "store.sqlite")
    with pytest.raises(FanoutLimitExceeded) as excinfo:
        query_in_chunks(store, "assignments", "courseId", ["c1"], size=11)
    assert excinfo.value.limit == 10
    assert store.queries == []


def test_sub_query_failure_propagates(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "store.sqlite")
    store.fail_query_ops = {"in"}
    with pytest.raises(DocumentStoreError):
        query_in_chunks(store, "assignments", "courseId", ["c1"])


def test_get_by_ids_skips_missing(tmp_path: Path) -> None:
    store = SqliteDocumentStore(tmp_path / "store.sqlite")
    store.set("classes/k1", {"archived": False})
    store.set("classes/k2", {"archived": True})
    found = get_by_ids(store, "classes", ["k1", "k2", "k3"])
    assert set(found) == {"k1", "k2"}


def test_with_scan_fallback(caplog: pytest.LogCaptureFixture) -> None:
    def broken() -> list:
        raise DocumentStoreError("index missing")

    assert with_scan_fallback(broken, lambda: ["scan"], label="courses") == ["scan"]
    assert "falling back" in caplog.text
    with pytest.raises(DocumentStoreError):
        with_scan_fallback(broken, lambda: ["scan"], label="courses", enabled=False)


def test_commit_in_chunks_respects_batch_ceiling(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "store.sqlite", max_batch_ops=4)
    writes = [("set", f"quizzes/q{i}", {"n": i}) for i in range(10)]
    progress: list[int] = []

    applied = commit_in_chunks(store, writes, on_commit=progress.append)

    assert applied == 10
    assert store.batch_sizes == [4, 4, 2]
    assert progress == [4, 8, 10]
    assert len(store.collection("quizzes").get()) == 10


def test_commit_in_chunks_stops_at_failed_batch(tmp_path: Path) -> None:
    store = FlakyStore(tmp_path / "store.sqlite", max_batch_ops=2)
    store.fail_batches = {2}
    writes = [("merge", f"quizzes/q{i}", {"n": i}) for i in range(5)]
    with pytest.raises(DocumentStoreError):
        commit_in_chunks(store, writes)
    assert sorted(s.id for s in store.collection("quizzes").get()) == ["q0", "q1"]
