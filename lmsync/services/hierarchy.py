"""Read-only model of the course hierarchy and its storage paths.

Course → Module → {Assignment, Quiz} → Submission / Attempt, with
Course↔Class and Assignment↔Class targeting held as id lists on the owning
document. Nothing here writes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from docstore import DocumentSnapshot, join_path
from docstore.documents import split_path
from docstore.storage import DocumentStore

from .fanout import get_by_ids, query_in_chunks, unique_ids

LOGGER = logging.getLogger(__name__)

COURSES = "courses"
MODULES = "modules"
ASSIGNMENTS = "assignments"
QUIZZES = "quizzes"
CLASSES = "classes"
USERS = "users"
SUBMISSIONS = "submissions"
ENROLLMENTS = "enrollments"
QUIZ_ATTEMPTS = "quizAttempts"
ATTEMPTS = "attempts"
ASSIGNMENT_GRADES = "assignmentGrades"
ESSAY_SUBMISSIONS = "quizEssaySubmissions"
CLASS_MODULE_INDEX = "modules"
PENDING_CASCADES = "pendingCascades"


# ----------------------------------------------------------------------
# Records


def _id_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    return unique_ids(value)


def _timestamp_or_none(value: Any) -> Optional[datetime]:
    """
    Best-effort timestamp for loosely typed documents.

    Numbers are epoch milliseconds and ``{"seconds": ...}`` maps are stored
    timestamps. Anything unparseable becomes ``None`` so one bad document
    cannot fail a whole listing.
    """
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str) and not value.strip():
        return None
    try:
        if isinstance(value, dict):
            return datetime.fromtimestamp(value.get("_seconds", value.get("seconds")), tz=timezone.utc)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        if isinstance(value, str):
            text = value.strip()
            parsed = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        pass
    LOGGER.debug("Ignoring unparseable timestamp %r", value)
    return None


class _Record(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str

    @classmethod
    def from_snapshot(cls, snap: DocumentSnapshot):
        return cls.model_validate({**snap.to_dict(), "id": snap.id})


class Course(_Record):
    archived: bool = False
    archivedAt: Optional[datetime] = None
    assignedClasses: List[str] = Field(default_factory=list)

    @field_validator("archivedAt", mode="before")
    @classmethod
    def loose_timestamp(cls, value: Any) -> Optional[datetime]:
        return _timestamp_or_none(value)

    @field_validator("assignedClasses", mode="before")
    @classmethod
    def normalize_classes(cls, value: Any) -> List[str]:
        return _id_list(value)

    @field_validator("archived", mode="before")
    @classmethod
    def strict_archived(cls, value: Any) -> bool:
        return value is True


class Module(_Record):
    courseId: Optional[str] = None
    moduleNumber: Optional[int] = None
    archived: bool = False
    assignedClasses: List[str] = Field(default_factory=list)

    @field_validator("assignedClasses", mode="before")
    @classmethod
    def normalize_classes(cls, value: Any) -> List[str]:
        return _id_list(value)

    @field_validator("archived", mode="before")
    @classmethod
    def strict_archived(cls, value: Any) -> bool:
        return value is True


class CourseItem(_Record):
    """Fields shared by assignments and quizzes."""

    courseId: Optional[str] = None
    moduleId: Optional[str] = None
    classIds: List[str] = Field(default_factory=list)
    archived: bool = False
    publishAt: Optional[datetime] = None
    dueAt: Optional[datetime] = None

    @field_validator("classIds", mode="before")
    @classmethod
    def normalize_classes(cls, value: Any) -> List[str]:
        return _id_list(value)

    @field_validator("archived", mode="before")
    @classmethod
    def strict_archived(cls, value: Any) -> bool:
        return value is True

    @field_validator("moduleId", "courseId", mode="before")
    @classmethod
    def blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("publishAt", "dueAt", mode="before")
    @classmethod
    def loose_timestamp(cls, value: Any) -> Optional[datetime]:
        return _timestamp_or_none(value)


def _number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


class Assignment(CourseItem):
    title: Optional[str] = None
    points: Optional[float] = None

    @field_validator("points", mode="before")
    @classmethod
    def numeric_points(cls, value: Any) -> Optional[float]:
        return _number_or_none(value)


class Quiz(CourseItem):
    title: Optional[str] = None


class SchoolClass(_Record):
    archived: bool = False

    @field_validator("archived", mode="before")
    @classmethod
    def strict_archived(cls, value: Any) -> bool:
        return value is True


class Submission(_Record):
    grade: Optional[float] = None
    graded: bool = False
    feedback: Optional[str] = None
    submittedAt: Optional[datetime] = None

    @field_validator("grade", mode="before")
    @classmethod
    def numeric_grade(cls, value: Any) -> Optional[float]:
        return _number_or_none(value)

    @field_validator("graded", mode="before")
    @classmethod
    def strict_graded(cls, value: Any) -> bool:
        return value is True

    @field_validator("submittedAt", mode="before")
    @classmethod
    def loose_timestamp(cls, value: Any) -> Optional[datetime]:
        return _timestamp_or_none(value)


# ----------------------------------------------------------------------
# Paths


def course_path(course_id: str) -> str:
    return join_path(COURSES, course_id)


def module_path(module_id: str) -> str:
    return join_path(MODULES, module_id)


def assignment_path(assignment_id: str) -> str:
    return join_path(ASSIGNMENTS, assignment_id)


def submission_path(assignment_id: str, student_id: str) -> str:
    return join_path(ASSIGNMENTS, assignment_id, SUBMISSIONS, student_id)


def quiz_path(quiz_id: str) -> str:
    return join_path(QUIZZES, quiz_id)


def class_path(class_id: str) -> str:
    return join_path(CLASSES, class_id)


def class_module_index_path(class_id: str, module_id: str) -> str:
    return join_path(CLASSES, class_id, CLASS_MODULE_INDEX, module_id)


def user_path(user_id: str) -> str:
    return join_path(USERS, user_id)


def assignment_grade_path(user_id: str, assignment_id: str) -> str:
    return join_path(USERS, user_id, ASSIGNMENT_GRADES, assignment_id)


def essay_path(essay_id: str) -> str:
    return join_path(ESSAY_SUBMISSIONS, essay_id)


def pending_cascade_path(module_id: str) -> str:
    return join_path(PENDING_CASCADES, module_id)


@dataclass(frozen=True)
class AttemptPath:
    """Location of one attempt: ``users/{uid}/quizAttempts/{root}/attempts/{attempt}``."""

    user_id: str
    summary_id: str
    attempt_id: str

    @classmethod
    def parse(cls, path: str) -> "AttemptPath":
        parts = split_path(path)
        if len(parts) != 6 or parts[0] != USERS or parts[2] != QUIZ_ATTEMPTS or parts[4] != ATTEMPTS:
            raise ValueError(f"Not an attempt path: {path}")
        return cls(user_id=parts[1], summary_id=parts[3], attempt_id=parts[5])

    @property
    def path(self) -> str:
        return join_path(USERS, self.user_id, QUIZ_ATTEMPTS, self.summary_id, ATTEMPTS, self.attempt_id)

    @property
    def summary_path(self) -> str:
        return join_path(USERS, self.user_id, QUIZ_ATTEMPTS, self.summary_id)

    @property
    def attempts_collection(self) -> str:
        return join_path(USERS, self.user_id, QUIZ_ATTEMPTS, self.summary_id, ATTEMPTS)

    @property
    def user_path(self) -> str:
        return user_path(self.user_id)

    @property
    def summaries_collection(self) -> str:
        return join_path(USERS, self.user_id, QUIZ_ATTEMPTS)


# ----------------------------------------------------------------------
# Reader


@dataclass
class HierarchyReader:
    """
    Accessors over the hierarchy for a single request.

    Looked-up documents are memoised on the instance, so build one reader per
    request and drop it afterwards.
    """

    store: DocumentStore
    _memo: Dict[str, DocumentSnapshot] = field(default_factory=dict, repr=False)

    def _get(self, path: str) -> DocumentSnapshot:
        if path not in self._memo:
            self._memo[path] = self.store.get(path)
        return self._memo[path]

    def _remember(self, snaps: Iterable[DocumentSnapshot]) -> None:
        for snap in snaps:
            self._memo[snap.path] = snap

    # -- single documents ----------------------------------------------

    def course(self, course_id: str) -> Course | None:
        snap = self._get(course_path(course_id))
        return Course.from_snapshot(snap) if snap.exists else None

    def module(self, module_id: str) -> Module | None:
        snap = self._get(module_path(module_id))
        return Module.from_snapshot(snap) if snap.exists else None

    def assignment(self, assignment_id: str) -> Assignment | None:
        snap = self._get(assignment_path(assignment_id))
        return Assignment.from_snapshot(snap) if snap.exists else None

    def quiz(self, quiz_id: str) -> Quiz | None:
        snap = self._get(quiz_path(quiz_id))
        return Quiz.from_snapshot(snap) if snap.exists else None

    def submission(self, assignment_id: str, student_id: str) -> Submission | None:
        snap = self.store.get(submission_path(assignment_id, student_id))
        return Submission.from_snapshot(snap) if snap.exists else None

    # -- tree edges ----------------------------------------------------

    def modules_for_course(self, course_id: str) -> List[Module]:
        snaps = self.store.collection(MODULES).where("courseId", "==", course_id).get()
        self._remember(snaps)
        modules = [Module.from_snapshot(snap) for snap in snaps]
        return sorted(modules, key=lambda m: (m.moduleNumber is None, m.moduleNumber or 0, m.id))

    def module_dependents(self, module_id: str) -> Dict[str, List[DocumentSnapshot]]:
        """Assignments and quizzes owned by ``module_id``."""
        return {
            ASSIGNMENTS: self.store.collection(ASSIGNMENTS).where("moduleId", "==", module_id).get(),
            QUIZZES: self.store.collection(QUIZZES).where("moduleId", "==", module_id).get(),
        }

    def assignments_for_courses(self, course_ids: Iterable[str]) -> List[Assignment]:
        snaps = query_in_chunks(self.store, ASSIGNMENTS, "courseId", course_ids)
        self._remember(snaps)
        return [Assignment.from_snapshot(snap) for snap in snaps]

    def modules_by_id(self, module_ids: Iterable[str]) -> Dict[str, Module]:
        found = get_by_ids(self.store, MODULES, module_ids)
        self._remember(found.values())
        return {module_id: Module.from_snapshot(snap) for module_id, snap in found.items()}

    # -- targeting edges -----------------------------------------------

    def enrolled_class_ids(self, student_id: str) -> List[str]:
        snaps = self.store.collection(join_path(USERS, student_id, ENROLLMENTS)).get()
        return unique_ids(snap.id for snap in snaps)

    def split_class_ids_by_archived(self, class_ids: Iterable[str]) -> Dict[str, List[str]]:
        """Partition class ids into ``active``, ``archived`` and ``missing``."""
        ids = unique_ids(class_ids)
        found = get_by_ids(self.store, CLASSES, ids)
        self._remember(found.values())
        split: Dict[str, List[str]] = {"active": [], "archived": [], "missing": []}
        for class_id in ids:
            snap = found.get(class_id)
            if snap is None:
                split["missing"].append(class_id)
            elif SchoolClass.from_snapshot(snap).archived:
                split["archived"].append(class_id)
            else:
                split["active"].append(class_id)
        return split

    def courses_for_classes(self, class_ids: Iterable[str]) -> List[Course]:
        snaps = query_in_chunks(self.store, COURSES, "assignedClasses", class_ids, op="array-contains-any")
        self._remember(snaps)
        return [Course.from_snapshot(snap) for snap in snaps]

    def all_courses(self) -> List[Course]:
        snaps = self.store.collection(COURSES).get()
        self._remember(snaps)
        return [Course.from_snapshot(snap) for snap in snaps]

    # -- quiz attempts -------------------------------------------------

    def locate_summary_path(self, user_id: str, quiz_id: str) -> str:
        """Summary doc for (user, quiz): doc id = quiz id, else a legacy doc carrying ``quizId``."""
        direct = join_path(USERS, user_id, QUIZ_ATTEMPTS, quiz_id)
        if self._get(direct).exists:
            return direct
        legacy = (
            self.store.collection(join_path(USERS, user_id, QUIZ_ATTEMPTS))
            .where("quizId", "==", quiz_id)
            .limit(1)
            .get()
        )
        if legacy:
            return legacy[0].path
        return direct


__all__ = [
    "ASSIGNMENTS",
    "ASSIGNMENT_GRADES",
    "ATTEMPTS",
    "Assignment",
    "AttemptPath",
    "CLASSES",
    "COURSES",
    "Course",
    "CourseItem",
    "ENROLLMENTS",
    "ESSAY_SUBMISSIONS",
    "HierarchyReader",
    "MODULES",
    "Module",
    "PENDING_CASCADES",
    "QUIZZES",
    "QUIZ_ATTEMPTS",
    "Quiz",
    "SUBMISSIONS",
    "SchoolClass",
    "Submission",
    "USERS",
    "assignment_grade_path",
    "assignment_path",
    "class_module_index_path",
    "class_path",
    "course_path",
    "essay_path",
    "module_path",
    "pending_cascade_path",
    "quiz_path",
    "submission_path",
    "user_path",
]
