"""Error taxonomy for archive and grade consistency operations."""

from __future__ import annotations


class LmsError(Exception):
    """Base class for domain failures reported by the consistency services."""

    code = "error"


class NotFound(LmsError):
    code = "not_found"

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"{kind.capitalize()} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class Archived(LmsError):
    """The targeted entity is archived."""

    code = "archived"

    def __init__(self, kind: str, identifier: str, message: str | None = None) -> None:
        super().__init__(message or f"{kind.capitalize()} {identifier} is archived")
        self.kind = kind
        self.identifier = identifier


class AncestorArchived(Archived):
    """A parent in the hierarchy is archived, which blocks the operation."""

    code = "ancestor_archived"

    def __init__(self, kind: str, identifier: str, ancestor_kind: str, ancestor_id: str) -> None:
        super().__init__(
            kind,
            identifier,
            f"{kind.capitalize()} {identifier} is blocked: {ancestor_kind} {ancestor_id} is archived",
        )
        self.ancestor_kind = ancestor_kind
        self.ancestor_id = ancestor_id


class FanoutLimitExceeded(LmsError, ValueError):
    """An id group would exceed the store's per-query value limit."""

    code = "fanout_limit_exceeded"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Fan-out group of {size} ids exceeds the per-query limit of {limit}")
        self.size = size
        self.limit = limit


class PartialCascadeFailure(LmsError):
    """The owning document was written but its dependents were not (all) updated."""

    code = "partial_cascade_failure"

    def __init__(
        self,
        module_id: str,
        archived: bool,
        cause: BaseException,
        pending_path: str | None = None,
        applied_ops: int = 0,
    ) -> None:
        state = "archive" if archived else "unarchive"
        super().__init__(f"Module {module_id} {state} cascade incomplete after {applied_ops} writes: {cause}")
        self.module_id = module_id
        self.archived = archived
        self.cause = cause
        self.pending_path = pending_path
        self.applied_ops = applied_ops


class ConcurrentUpdateError(LmsError):
    """Optimistic writes kept losing to concurrent writers."""

    code = "concurrent_update"

    def __init__(self, path: str, attempts: int) -> None:
        super().__init__(f"Gave up writing {path} after {attempts} version conflicts")
        self.path = path
        self.attempts = attempts


class InvalidGrade(LmsError, ValueError):
    code = "invalid_grade"


__all__ = [
    "AncestorArchived",
    "Archived",
    "ConcurrentUpdateError",
    "FanoutLimitExceeded",
    "InvalidGrade",
    "LmsError",
    "NotFound",
    "PartialCascadeFailure",
]
