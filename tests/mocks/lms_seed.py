"""Helpers that seed a small school into a document store."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable

from docstore import SqliteDocumentStore

BASE_TIME = datetime(2026, 9, 1, 8, 0, tzinfo=timezone.utc)


def at(hours: int) -> datetime:
    return BASE_TIME + timedelta(hours=hours)


def put(store: SqliteDocumentStore, path: str, **fields: Any) -> str:
    store.set(path, fields)
    return path


def seed_course(store, course_id: str, *, classes: Iterable[str] = (), archived: bool = False, **extra: Any) -> str:
    return put(store, f"courses/{course_id}", assignedClasses=list(classes), archived=archived, **extra)


def seed_module(
    store, module_id: str, course_id: str, number: int, *, classes: Iterable[str] = (), archived: bool = False
) -> str:
    return put(
        store,
        f"modules/{module_id}",
        courseId=course_id,
        moduleNumber=number,
        archived=archived,
        assignedClasses=list(classes),
    )


def seed_assignment(store, assignment_id: str, course_id: str, module_id: str | None = None, **extra: Any) -> str:
    fields: Dict[str, Any] = {
        "courseId": course_id,
        "title": extra.pop("title", assignment_id.upper()),
        "classIds": extra.pop("classIds", []),
        "archived": extra.pop("archived", False),
        "publishAt": extra.pop("publishAt", BASE_TIME),
    }
    if module_id is not None:
        fields["moduleId"] = module_id
    fields.update(extra)
    return put(store, f"assignments/{assignment_id}", **fields)


def seed_quiz(store, quiz_id: str, course_id: str, module_id: str | None = None, **extra: Any) -> str:
    fields: Dict[str, Any] = {"courseId": course_id, "title": quiz_id.upper(), "archived": extra.pop("archived", False)}
    if module_id is not None:
        fields["moduleId"] = module_id
    fields.update(extra)
    return put(store, f"quizzes/{quiz_id}", **fields)


def seed_class(store, class_id: str, *, archived: bool = False) -> str:
    return put(store, f"classes/{class_id}", name=class_id.upper(), archived=archived)


def enroll(store, user_id: str, *class_ids: str) -> None:
    if not store.get(f"users/{user_id}").exists:
        put(store, f"users/{user_id}", role="student")
    for class_id in class_ids:
        put(store, f"users/{user_id}/enrollments/{class_id}", classId=class_id)


def seed_attempt(
    store,
    user_id: str,
    quiz_id: str,
    attempt_id: str,
    *,
    auto_score: float,
    auto_total: float,
    submitted_at: datetime | None = None,
    summary_id: str | None = None,
) -> str:
    summary_id = summary_id or quiz_id
    if not store.get(f"users/{user_id}").exists:
        put(store, f"users/{user_id}", role="student")
    summary = f"users/{user_id}/quizAttempts/{summary_id}"
    if not store.get(summary).exists:
        put(store, summary, quizId=quiz_id)
    return put(
        store,
        f"{summary}/attempts/{attempt_id}",
        autoScore=auto_score,
        autoTotal=auto_total,
        submittedAt=submitted_at or BASE_TIME,
    )


def seed_essay(store, essay_id: str, attempt_path: str, *, course_id: str = "c1", **extra: Any) -> str:
    fields: Dict[str, Any] = {"attemptRefPath": attempt_path, "courseId": course_id, "status": "pending"}
    fields.update(extra)
    return put(store, f"quizEssaySubmissions/{essay_id}", **fields)
