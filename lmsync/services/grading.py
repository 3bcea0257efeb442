"""
Grade roll-ups: attempt → quiz summary → user, and assignment grades → user.

Every aggregate is derived from scratch from its children and written through
the configured :class:`~lmsync.core.strategy.WriteStrategy`. Nothing is ever
incremented, so running a recompute again with unchanged children leaves the
documents untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from docstore import SERVER_TIMESTAMP, DocumentSnapshot
from docstore.storage import DocumentStore

from lmsync.core.audit import AuditLogger, record
from lmsync.core.errors import ConcurrentUpdateError, InvalidGrade, NotFound
from lmsync.core.results import OperationResult
from lmsync.core.strategy import OptimisticVersioned, WriteOutcome, WriteStrategy

from . import grade_math
from .hierarchy import (
    ASSIGNMENT_GRADES,
    ATTEMPTS,
    ESSAY_SUBMISSIONS,
    QUIZ_ATTEMPTS,
    AttemptPath,
    HierarchyReader,
    assignment_grade_path,
    essay_path,
    submission_path,
    user_path,
)

LOGGER = logging.getLogger(__name__)

MISSING_ATTEMPT_WARNING = "grade saved, but attempt summary could not be updated"
STALE_AGGREGATE_WARNING = "grade saved, but aggregates could not be updated"
MISSING_USER_WARNING = "grade saved, but the student's grade record could not be updated"

UPDATED = "updated"
UNCHANGED = "unchanged"
ATTEMPT_MISSING = "attempt_missing"


@dataclass
class RecomputeOutcome:
    """What a recompute derived and whether it had to write anything."""

    attempt_path: str
    status: str
    attempt: Optional[Dict[str, Any]] = None
    summary: Optional[Dict[str, Any]] = None
    user: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attemptPath": self.attempt_path,
            "status": self.status,
            "attempt": self.attempt,
            "summary": self.summary,
            "user": self.user,
            "warnings": list(self.warnings),
        }


def _with_id(snap: DocumentSnapshot) -> Dict[str, Any]:
    return {**snap.to_dict(), "id": snap.id}


class GradeAggregationEngine:
    def __init__(
        self,
        store: DocumentStore,
        *,
        strategy: WriteStrategy | None = None,
        default_essay_max_score: float = 10,
        audit: AuditLogger | None = None,
    ) -> None:
        self.store = store
        self.strategy = strategy or OptimisticVersioned()
        self.default_essay_max_score = default_essay_max_score
        self.audit = audit

    # -- derive functions ----------------------------------------------

    def _derive_attempt(self, attempt_path: str):
        def derive(reader: DocumentStore, snap: DocumentSnapshot) -> Optional[Dict[str, Any]]:
            if not snap.exists:
                return None
            essays = reader.collection(ESSAY_SUBMISSIONS).where("attemptRefPath", "==", attempt_path).get()
            score, total = grade_math.sum_graded_essays(
                (essay.to_dict() for essay in essays), default_max=self.default_essay_max_score
            )
            return grade_math.combine_attempt(snap.get("autoScore"), snap.get("autoTotal"), score, total)

        return derive

    @staticmethod
    def _derive_summary(attempts_collection: str, quiz_id: str):
        def derive(reader: DocumentStore, snap: DocumentSnapshot) -> Optional[Dict[str, Any]]:
            attempts = [_with_id(a) for a in reader.collection(attempts_collection).get()]
            if not attempts and not snap.exists:
                return None
            fields = grade_math.summarize_attempts(attempts)
            fields["quizId"] = snap.get("quizId") or quiz_id
            return fields

        return derive

    @staticmethod
    def _derive_quiz_average(summaries_collection: str):
        def derive(reader: DocumentStore, snap: DocumentSnapshot) -> Optional[Dict[str, Any]]:
            summaries = [s.to_dict() for s in reader.collection(summaries_collection).get()]
            return {"averageQuizScore": grade_math.average_quiz_score(summaries)}

        return derive

    @staticmethod
    def _derive_assignment_average(grades_collection: str):
        def derive(reader: DocumentStore, snap: DocumentSnapshot) -> Optional[Dict[str, Any]]:
            grades = [g.to_dict() for g in reader.collection(grades_collection).get()]
            count, average = grade_math.average_assignment_grade(grades)
            return {"gradedAssignmentsCount": count, "averageAssignmentGrade": average}

        return derive

    # -- recomputes ----------------------------------------------------

    def recompute_attempt(self, attempt_path: str) -> RecomputeOutcome:
        """
        Re-derive an attempt's percentages from its graded essays, then its quiz
        summary and the user's quiz average.

        A missing attempt is not an error: nothing is written and the outcome
        carries ``attempt_missing`` plus a warning for the grader.
        """
        location = AttemptPath.parse(attempt_path)
        path = location.path
        attempt = self.strategy.merge_derived(self.store, path, self._derive_attempt(path))
        if attempt.fields is None:
            LOGGER.warning("Attempt %s not found; summary and averages left unchanged", path)
            return RecomputeOutcome(path, ATTEMPT_MISSING, warnings=[MISSING_ATTEMPT_WARNING])

        summary = self.strategy.merge_derived(
            self.store,
            location.summary_path,
            self._derive_summary(location.attempts_collection, location.summary_id),
        )
        user = self.recompute_quiz_average(location.user_id)

        written = attempt.written or summary.written or user.written
        outcome = RecomputeOutcome(
            path,
            UPDATED if written else UNCHANGED,
            attempt=attempt.fields,
            summary=summary.fields,
            user=user.fields,
        )
        LOGGER.debug("Recomputed %s (%s)", path, outcome.status)
        if written:
            record(
                self.audit,
                "recompute_attempt",
                f"Recomputed attempt {path}",
                subject=path,
                percent=attempt.fields.get("percent"),
                averageQuizScore=(user.fields or {}).get("averageQuizScore"),
            )
        return outcome

    def recompute_quiz_summary(self, user_id: str, quiz_id: str) -> WriteOutcome:
        """Re-derive the (user, quiz) summary from its attempts, wherever the summary lives."""
        summary_path = HierarchyReader(self.store).locate_summary_path(user_id, quiz_id)
        attempts_collection = f"{summary_path}/{ATTEMPTS}"
        return self.strategy.merge_derived(
            self.store, summary_path, self._derive_summary(attempts_collection, quiz_id)
        )

    def recompute_quiz_average(self, user_id: str) -> WriteOutcome:
        summaries = f"{user_path(user_id)}/{QUIZ_ATTEMPTS}"
        return self.strategy.merge_derived(self.store, user_path(user_id), self._derive_quiz_average(summaries))

    def recompute_assignment_grade_average(self, user_id: str) -> WriteOutcome:
        """gradedAssignmentsCount and averageAssignmentGrade over the user's assignment grades."""
        grades = f"{user_path(user_id)}/{ASSIGNMENT_GRADES}"
        return self.strategy.merge_derived(
            self.store, user_path(user_id), self._derive_assignment_average(grades)
        )

    def recompute_user(self, user_id: str) -> Dict[str, Any]:
        """Rebuild every derived grade field of one user: attempts, summaries, and both averages."""
        summaries = self.store.collection(f"{user_path(user_id)}/{QUIZ_ATTEMPTS}").get()
        attempts_updated = 0
        summaries_updated = 0
        for summary in summaries:
            attempts_collection = f"{summary.path}/{ATTEMPTS}"
            for attempt in self.store.collection(attempts_collection).get():
                outcome = self.strategy.merge_derived(self.store, attempt.path, self._derive_attempt(attempt.path))
                attempts_updated += int(outcome.written)
            outcome = self.strategy.merge_derived(
                self.store,
                summary.path,
                self._derive_summary(attempts_collection, summary.id),
            )
            summaries_updated += int(outcome.written)
        quiz = self.recompute_quiz_average(user_id)
        assignments = self.recompute_assignment_grade_average(user_id)
        result = {
            "userId": user_id,
            "quizSummaries": len(summaries),
            "attemptsUpdated": attempts_updated,
            "summariesUpdated": summaries_updated,
            "averageQuizScore": (quiz.fields or {}).get("averageQuizScore"),
            "averageAssignmentGrade": (assignments.fields or {}).get("averageAssignmentGrade"),
            "gradedAssignmentsCount": (assignments.fields or {}).get("gradedAssignmentsCount"),
        }
        if attempts_updated or summaries_updated or quiz.written or assignments.written:
            record(
                self.audit,
                "recompute_user",
                f"Recomputed grades of user {user_id}",
                subject=user_path(user_id),
                **result,
            )
        return result

    # -- grading triggers ----------------------------------------------

    def grade_essay(
        self,
        essay_id: str,
        score: Any,
        max_score: Any,
        feedback: str = "",
        status: str = grade_math.GRADED,
        grader_id: str | None = None,
    ) -> OperationResult:
        """Save a teacher's essay grade and roll it up into the attempt, summary and user."""
        if not grade_math.is_number(score) or score < 0:
            return OperationResult.failure(InvalidGrade("score must be a number >= 0"))
        if not grade_math.is_number(max_score) or max_score <= 0:
            return OperationResult.failure(InvalidGrade("maxScore must be a number > 0"))
        if status not in (grade_math.GRADED, grade_math.NEEDS_REVIEW):
            return OperationResult.failure(InvalidGrade("status must be 'graded' or 'needs_review'"))

        path = essay_path(essay_id)
        essay = self.store.get(path)
        if not essay.exists:
            return OperationResult.failure(NotFound("essay", essay_id))

        self.store.set(
            path,
            {
                "score": score,
                "maxScore": max_score,
                "feedback": feedback or "",
                "status": status,
                "gradedBy": grader_id,
                "gradedAt": SERVER_TIMESTAMP,
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )
        value: Dict[str, Any] = {"essayId": essay_id, "status": status, "recompute": None}
        location: AttemptPath | None = None
        attempt_ref = essay.get("attemptRefPath")
        if isinstance(attempt_ref, str):
            try:
                location = AttemptPath.parse(attempt_ref)
            except ValueError:
                location = None
        if location is None:
            LOGGER.warning("Essay %s has no usable attemptRefPath; nothing to recompute", essay_id)
            result = OperationResult.success(value, warnings=[MISSING_ATTEMPT_WARNING])
            return self._audit_essay(essay_id, result, score)

        try:
            outcome = self.recompute_attempt(location.path)
        except ConcurrentUpdateError as exc:
            LOGGER.error("Essay %s graded but aggregates not updated: %s", essay_id, exc)
            result = OperationResult.failure(exc, warnings=[STALE_AGGREGATE_WARNING])
            return self._audit_essay(essay_id, result, score)
        value["recompute"] = outcome.to_dict()
        return self._audit_essay(essay_id, OperationResult.success(value, warnings=outcome.warnings), score)

    def _audit_essay(self, essay_id: str, result: OperationResult, score: Any) -> OperationResult:
        record(
            self.audit,
            "grade_essay",
            f"Graded essay {essay_id}",
            subject=essay_path(essay_id),
            result=result,
            score=score,
        )
        return result

    def grade_assignment(
        self,
        assignment_id: str,
        student_id: str,
        grade: Any = None,
        feedback: str | None = None,
    ) -> OperationResult:
        """Grade a submission, mirror it onto the student, and refresh the assignment average."""
        if grade is not None and (not grade_math.is_number(grade) or grade < 0):
            return OperationResult.failure(InvalidGrade("grade must be a number >= 0"))

        reader = HierarchyReader(self.store)
        assignment = reader.assignment(assignment_id)
        if assignment is None:
            return OperationResult.failure(NotFound("assignment", assignment_id))

        updates: Dict[str, Any] = {"updatedAt": SERVER_TIMESTAMP}
        if grade is not None:
            updates["grade"] = grade
            updates["graded"] = True
        if feedback is not None:
            updates["feedback"] = str(feedback)
        sub_path = submission_path(assignment_id, student_id)
        self.store.set(sub_path, updates, merge=True)
        submission = reader.submission(assignment_id, student_id)

        final_grade = grade if grade is not None else (submission.grade if submission else None)
        final_feedback = feedback if feedback is not None else (submission.feedback if submission else None)
        value: Dict[str, Any] = {"assignmentId": assignment_id, "studentId": student_id, "grade": final_grade}

        if not self.store.get(user_path(student_id)).exists:
            LOGGER.warning("User %s not found; assignment grade mirror skipped", student_id)
            result = OperationResult.success(value, warnings=[MISSING_USER_WARNING])
            return self._audit_grade(sub_path, result, final_grade)

        self.store.set(
            assignment_grade_path(student_id, assignment_id),
            {
                "assignmentId": assignment_id,
                "courseId": assignment.courseId,
                "moduleId": assignment.moduleId,
                "assignmentTitle": assignment.title or "Untitled",
                "points": assignment.points,
                "dueAt": assignment.dueAt,
                "submittedAt": submission.submittedAt if submission else None,
                "gradedAt": SERVER_TIMESTAMP,
                "grade": final_grade,
                "feedback": final_feedback,
            },
            merge=True,
        )
        self.store.set(
            user_path(student_id),
            {"lastAssignmentGrade": {"assignmentId": assignment_id, "grade": final_grade, "at": SERVER_TIMESTAMP}},
            merge=True,
        )
        try:
            outcome = self.recompute_assignment_grade_average(student_id)
        except ConcurrentUpdateError as exc:
            LOGGER.error("Assignment %s graded for %s but average not updated: %s", assignment_id, student_id, exc)
            result = OperationResult.failure(exc, warnings=[STALE_AGGREGATE_WARNING])
            return self._audit_grade(sub_path, result, final_grade)
        value.update(outcome.fields or {})
        return self._audit_grade(sub_path, OperationResult.success(value), final_grade)

    def _audit_grade(self, sub_path: str, result: OperationResult, grade: Any) -> OperationResult:
        record(self.audit, "grade_assignment", f"Graded {sub_path}", subject=sub_path, result=result, grade=grade)
        return result

    def remove_assignment_submission(self, assignment_id: str, student_id: str) -> OperationResult:
        """Delete a submission and its grade mirror, then refresh the student's assignment average."""
        sub_path = submission_path(assignment_id, student_id)
        if not self.store.get(sub_path).exists:
            return OperationResult.failure(NotFound("submission", f"{assignment_id}/{student_id}"))
        self.store.delete(sub_path)
        self.store.delete(assignment_grade_path(student_id, assignment_id))
        value: Dict[str, Any] = {"assignmentId": assignment_id, "studentId": student_id}
        if self.store.get(user_path(student_id)).exists:
            value.update(self.recompute_assignment_grade_average(student_id).fields or {})
        record(
            self.audit,
            "remove_assignment_submission",
            f"Removed submission of {student_id} for assignment {assignment_id}",
            subject=sub_path,
        )
        return OperationResult.success(value)


__all__ = [
    "ATTEMPT_MISSING",
    "GradeAggregationEngine",
    "MISSING_ATTEMPT_WARNING",
    "MISSING_USER_WARNING",
    "RecomputeOutcome",
    "STALE_AGGREGATE_WARNING",
    "UNCHANGED",
    "UPDATED",
]
