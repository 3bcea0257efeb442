"""Archive propagation down the Course → Module → {Assignment, Quiz} hierarchy.

Archiving a module writes the module first and then cascades the flag onto
its dependents in chunked batches. There is no transaction spanning the two
steps; when the cascade fails part-way the drift is persisted as a
``pendingCascades/{moduleId}`` record that a later call (or
``retry_pending_cascades``) resolves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from docstore import SERVER_TIMESTAMP, DocumentStoreError
from docstore.storage import DocumentStore

from lmsync.core.audit import AuditLogger, record
from lmsync.core.errors import AncestorArchived, Archived, NotFound, PartialCascadeFailure
from lmsync.core.results import OperationResult

from .fanout import Write, commit_in_chunks
from .hierarchy import (
    ASSIGNMENTS,
    ESSAY_SUBMISSIONS,
    MODULES,
    PENDING_CASCADES,
    QUIZZES,
    HierarchyReader,
    Module,
    class_module_index_path,
    course_path,
    module_path,
    pending_cascade_path,
)

LOGGER = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingCascade:
    module_id: str
    archived: bool
    reason: str
    expires_at: datetime | None

    def expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "moduleId": self.module_id,
            "archived": self.archived,
            "reason": self.reason,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


class ArchiveService:
    """Archive, unarchive and delete operations over the content hierarchy."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        audit: AuditLogger | None = None,
        cascade_class_index: bool = True,
        pending_ttl: timedelta = timedelta(hours=72),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.cascade_class_index = cascade_class_index
        self.pending_ttl = pending_ttl
        self._clock = clock or _utcnow

    def _reader(self) -> HierarchyReader:
        return HierarchyReader(self.store)

    # -- module archive ------------------------------------------------

    def set_module_archived(self, module_id: str, archived: bool) -> OperationResult:
        """Set ``archived`` on the module and on every assignment and quiz it owns."""
        archived = bool(archived)
        module = self._reader().module(module_id)
        if module is None:
            return OperationResult.failure(NotFound("module", module_id))

        self.store.set(module_path(module_id), {"archived": archived, "updatedAt": SERVER_TIMESTAMP}, merge=True)

        applied = 0

        def _track(count: int) -> None:
            nonlocal applied
            applied = count

        try:
            writes, counts = self._cascade_writes(module, archived)
            commit_in_chunks(self.store, writes, on_commit=_track)
        except DocumentStoreError as exc:
            return self._partial_failure(module_id, archived, exc, applied)

        self._clear_pending(module_id)
        counts["moduleId"] = module_id
        counts["archived"] = archived
        LOGGER.info(
            "Module %s %s: %s assignments, %s quizzes updated",
            module_id,
            "archived" if archived else "unarchived",
            counts[ASSIGNMENTS],
            counts[QUIZZES],
        )
        result = OperationResult.success(counts)
        record(
            self.audit,
            "set_module_archived",
            f"Module {module_id} archived={archived}",
            subject=module_path(module_id),
            result=result,
            **counts,
        )
        return result

    def _cascade_writes(self, module: Module, archived: bool) -> tuple[List[Write], Dict[str, Any]]:
        dependents = self._reader().module_dependents(module.id)
        fields = {"archived": archived, "updatedAt": SERVER_TIMESTAMP}
        writes: List[Write] = []
        for collection in (ASSIGNMENTS, QUIZZES):
            writes.extend(("merge", snap.path, dict(fields)) for snap in dependents[collection])
        index_paths: List[str] = []
        if self.cascade_class_index:
            index_paths = [class_module_index_path(class_id, module.id) for class_id in module.assignedClasses]
            writes.extend(("merge", path, dict(fields)) for path in index_paths)
        counts = {
            ASSIGNMENTS: len(dependents[ASSIGNMENTS]),
            QUIZZES: len(dependents[QUIZZES]),
            "classIndexes": len(index_paths),
        }
        return writes, counts

    def _partial_failure(self, module_id: str, archived: bool, exc: DocumentStoreError, applied: int) -> OperationResult:
        pending_path: str | None = None
        try:
            pending_path = self._record_pending(module_id, archived, str(exc))
        except DocumentStoreError:
            LOGGER.exception("Could not persist pending cascade for module %s", module_id)
        error = PartialCascadeFailure(module_id, archived, exc, pending_path=pending_path, applied_ops=applied)
        LOGGER.error("%s", error)
        result = OperationResult.failure(error)
        record(
            self.audit,
            "set_module_archived",
            str(error),
            subject=module_path(module_id),
            result=result,
            moduleId=module_id,
            archived=archived,
            appliedOps=applied,
            pendingPath=pending_path,
        )
        return result

    # -- pending cascades ----------------------------------------------

    def _record_pending(self, module_id: str, archived: bool, reason: str) -> str:
        path = pending_cascade_path(module_id)
        self.store.set(
            path,
            {
                "moduleId": module_id,
                "archived": archived,
                "reason": reason,
                "createdAt": SERVER_TIMESTAMP,
                "expiresAt": self._clock() + self.pending_ttl,
            },
        )
        return path

    def _clear_pending(self, module_id: str) -> None:
        path = pending_cascade_path(module_id)
        if self.store.get(path).exists:
            self.store.delete(path)
            LOGGER.info("Cleared pending cascade for module %s", module_id)

    def list_pending_cascades(self) -> List[PendingCascade]:
        pending = []
        for snap in self.store.collection(PENDING_CASCADES).get():
            expires_at = snap.get("expiresAt")
            pending.append(
                PendingCascade(
                    module_id=snap.get("moduleId") or snap.id,
                    archived=snap.get("archived") is True,
                    reason=snap.get("reason") or "",
                    expires_at=expires_at if isinstance(expires_at, datetime) else None,
                )
            )
        return pending

    def retry_pending_cascades(self, now: datetime | None = None) -> Dict[str, Any]:
        """
        Re-run every unexpired pending cascade and drop the expired ones.

        The retry applies the module's current ``archived`` flag, which is the
        state the dependents have to converge on.
        """
        now = now or self._clock()
        results: Dict[str, OperationResult] = {}
        expired: List[str] = []
        for pending in self.list_pending_cascades():
            if pending.expired(now):
                self.store.delete(pending_cascade_path(pending.module_id))
                LOGGER.warning("Dropped expired pending cascade for module %s", pending.module_id)
                expired.append(pending.module_id)
                continue
            module = self._reader().module(pending.module_id)
            if module is None:
                self.store.delete(pending_cascade_path(pending.module_id))
                results[pending.module_id] = OperationResult.failure(NotFound("module", pending.module_id))
                continue
            results[pending.module_id] = self.set_module_archived(module.id, module.archived)
        record(
            self.audit,
            "retry_pending_cascades",
            f"Retried {len(results)} pending cascades, dropped {len(expired)} expired",
            retried=sorted(results),
            expired=expired,
        )
        return {"results": results, "expired": expired}

    # -- course archive ------------------------------------------------

    def set_course_archived(self, course_id: str, archived: bool) -> OperationResult:
        """Toggle the course flag only; readers evaluate course archive state transitively."""
        archived = bool(archived)
        if self._reader().course(course_id) is None:
            return OperationResult.failure(NotFound("course", course_id))
        self.store.set(
            course_path(course_id),
            {
                "archived": archived,
                "archivedAt": SERVER_TIMESTAMP if archived else None,
                "updatedAt": SERVER_TIMESTAMP,
            },
            merge=True,
        )
        record(
            self.audit,
            "set_course_archived",
            f"Course {course_id} archived={archived}",
            subject=course_path(course_id),
            courseId=course_id,
        )
        return OperationResult.success({"courseId": course_id, "archived": archived})

    # -- deletes -------------------------------------------------------

    def delete_module(self, module_id: str) -> OperationResult:
        """Delete the module and its class index documents, then renumber the course's modules 1..N."""
        reader = self._reader()
        module = reader.module(module_id)
        if module is None:
            return OperationResult.failure(NotFound("module", module_id))

        writes: List[Write] = [
            ("delete", class_module_index_path(class_id, module_id), None) for class_id in module.assignedClasses
        ]
        writes.append(("delete", module_path(module_id), None))
        commit_in_chunks(self.store, writes)

        renumbered = 0
        if module.courseId:
            renumber: List[Write] = []
            remaining = [m for m in reader.modules_for_course(module.courseId) if m.id != module_id]
            for number, sibling in enumerate(remaining, start=1):
                if sibling.moduleNumber != number:
                    renumber.append(("merge", module_path(sibling.id), {"moduleNumber": number}))
            renumbered = commit_in_chunks(self.store, renumber)

        LOGGER.info("Deleted module %s; renumbered %s sibling modules", module_id, renumbered)
        record(
            self.audit,
            "delete_module",
            f"Deleted module {module_id}",
            subject=module_path(module_id),
            renumbered=renumbered,
        )
        return OperationResult.success({"moduleId": module_id, "renumbered": renumbered})

    def _tree(self, path: str) -> List[str]:
        return self.store.list_descendants(path) + [path]

    def delete_course(self, course_id: str) -> OperationResult:
        """Delete a course and everything that references it."""
        reader = self._reader()
        if reader.course(course_id) is None:
            return OperationResult.failure(NotFound("course", course_id))

        paths: List[str] = []
        counts: Dict[str, int] = {}
        for collection in (MODULES, QUIZZES, ASSIGNMENTS, ESSAY_SUBMISSIONS):
            snaps = self.store.collection(collection).where("courseId", "==", course_id).get()
            counts[collection] = len(snaps)
            for snap in snaps:
                if collection == MODULES:
                    module = Module.from_snapshot(snap)
                    paths.extend(class_module_index_path(cid, module.id) for cid in module.assignedClasses)
                paths.extend(self._tree(snap.path))
        paths.extend(self._tree(course_path(course_id)))

        # A path can be reached twice (e.g. a class index listed by two modules).
        unique = list(dict.fromkeys(paths))
        deleted = commit_in_chunks(self.store, [("delete", path, None) for path in unique])
        counts["documents"] = deleted
        LOGGER.info("Deleted course %s (%s documents)", course_id, deleted)
        record(self.audit, "delete_course", f"Deleted course {course_id}", subject=course_path(course_id), **counts)
        return OperationResult.success({"courseId": course_id, **counts})

    # -- guards --------------------------------------------------------

    def check_assignment_open(self, assignment_id: str) -> OperationResult:
        """Ok with the assignment when it accepts submissions, else Archived/AncestorArchived."""
        reader = self._reader()
        assignment = reader.assignment(assignment_id)
        if assignment is None:
            return OperationResult.failure(NotFound("assignment", assignment_id))
        if assignment.archived:
            return OperationResult.failure(Archived("assignment", assignment_id))
        if assignment.moduleId:
            module = reader.module(assignment.moduleId)
            if module is not None and module.archived:
                return OperationResult.failure(AncestorArchived("assignment", assignment_id, "module", module.id))
        # A missing course closes the assignment; visibility hides it too.
        course = reader.course(assignment.courseId) if assignment.courseId else None
        if course is None:
            return OperationResult.failure(NotFound("course", assignment.courseId or ""))
        if course.archived:
            return OperationResult.failure(AncestorArchived("assignment", assignment_id, "course", course.id))
        return OperationResult.success(assignment)


__all__ = ["ArchiveService", "PendingCascade"]
