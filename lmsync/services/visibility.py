"""Which assignments a student can see, evaluated transitively through the hierarchy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Set

from docstore import DocumentStoreError
from docstore.storage import DocumentStore

from .fanout import with_scan_fallback
from .hierarchy import Assignment, Course, HierarchyReader, Module, Submission

LOGGER = logging.getLogger(__name__)


@dataclass
class VisibleAssignment:
    assignment: Assignment
    my_submission: Submission | None = None

    def to_dict(self) -> Dict[str, Any]:
        payload = self.assignment.model_dump(mode="json")
        payload["mySubmission"] = self.my_submission.model_dump(mode="json") if self.my_submission else None
        return payload


def assignment_visible(
    assignment: Assignment,
    course: Course | None,
    module: Module | None,
    active_classes: Iterable[str],
) -> bool:
    """
    True when nothing above the assignment is archived and it targets one of ``active_classes``.

    A missing module counts as active; a missing course does not.
    """
    if course is None or course.archived or assignment.archived:
        return False
    if module is not None and module.archived:
        return False
    if assignment.classIds:
        return bool(set(assignment.classIds) & set(active_classes))
    return True


def _publish_sort_key(item: VisibleAssignment):
    publish_at: datetime | None = item.assignment.publishAt
    return (publish_at is not None, publish_at.timestamp() if publish_at else 0.0)


def sort_by_publish_desc(items: List[VisibleAssignment]) -> List[VisibleAssignment]:
    """Newest ``publishAt`` first, undated last, ties by id."""
    ordered = sorted(items, key=lambda item: item.assignment.id)
    return sorted(ordered, key=_publish_sort_key, reverse=True)


class VisibilityFilter:
    """Read-only queries consumed by assignment-listing collaborators."""

    def __init__(self, store: DocumentStore, *, scan_fallback: bool = True) -> None:
        self.store = store
        self.scan_fallback = scan_fallback

    def active_class_ids(self, student_id: str, reader: HierarchyReader | None = None) -> List[str]:
        """Enrolled classes that are not archived; a missing class document counts as active."""
        reader = reader or HierarchyReader(self.store)
        split = reader.split_class_ids_by_archived(reader.enrolled_class_ids(student_id))
        if split["missing"]:
            LOGGER.debug("Student %s enrolled in unknown classes %s", student_id, split["missing"])
        return split["active"] + split["missing"]

    def _courses_for(self, reader: HierarchyReader, class_ids: List[str]) -> List[Course]:
        wanted: Set[str] = set(class_ids)

        def scan() -> List[Course]:
            return [course for course in reader.all_courses() if wanted & set(course.assignedClasses)]

        courses = with_scan_fallback(
            lambda: reader.courses_for_classes(class_ids),
            scan,
            label="courses by assignedClasses",
            enabled=self.scan_fallback,
        )
        return [course for course in courses if not course.archived]

    def visible_courses_for_student(self, student_id: str, reader: HierarchyReader | None = None) -> List[Course]:
        reader = reader or HierarchyReader(self.store)
        class_ids = self.active_class_ids(student_id, reader)
        if not class_ids:
            return []
        return sorted(self._courses_for(reader, class_ids), key=lambda course: course.id)

    def visible_assignments_for_student(self, student_id: str) -> List[VisibleAssignment]:
        reader = HierarchyReader(self.store)
        class_ids = self.active_class_ids(student_id, reader)
        if not class_ids:
            return []
        courses: Mapping[str, Course] = {course.id: course for course in self._courses_for(reader, class_ids)}
        if not courses:
            return []

        assignments = reader.assignments_for_courses(courses.keys())
        modules = reader.modules_by_id(a.moduleId for a in assignments if a.moduleId)

        visible: List[VisibleAssignment] = []
        for assignment in assignments:
            course = courses.get(assignment.courseId or "")
            module = modules.get(assignment.moduleId) if assignment.moduleId else None
            if not assignment_visible(assignment, course, module, class_ids):
                continue
            visible.append(VisibleAssignment(assignment, self._my_submission(reader, assignment.id, student_id)))
        return sort_by_publish_desc(visible)

    def _my_submission(self, reader: HierarchyReader, assignment_id: str, student_id: str) -> Submission | None:
        try:
            return reader.submission(assignment_id, student_id)
        except (DocumentStoreError, ValueError) as exc:
            LOGGER.warning("Could not load submission of %s for assignment %s: %s", student_id, assignment_id, exc)
            return None


__all__ = ["VisibilityFilter", "VisibleAssignment", "assignment_visible", "sort_by_publish_desc"]
