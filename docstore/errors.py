"""Exceptions raised by the document store."""

from __future__ import annotations


class DocumentStoreError(RuntimeError):
    """Base class for every failure reported by the store."""


class QueryLimitError(DocumentStoreError):
    """Raised when a query filter carries more values than the store accepts."""


class BatchLimitExceeded(DocumentStoreError):
    """Raised when a write batch holds more operations than the store ceiling."""

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Batch of {size} operations exceeds the limit of {limit}")
        self.size = size
        self.limit = limit


class VersionConflict(DocumentStoreError):
    """Raised when a write precondition on the document version fails."""

    def __init__(self, path: str, expected: int, actual: int) -> None:
        super().__init__(f"Version conflict on {path}: expected {expected}, found {actual}")
        self.path = path
        self.expected = expected
        self.actual = actual


class StoreUnavailable(DocumentStoreError):
    """Raised when SQLite itself fails, e.g. a lock timeout or a disk error."""

    def __init__(self, action: str, cause: BaseException) -> None:
        super().__init__(f"Store failure during {action}: {cause}")
        self.action = action
        self.cause = cause


class DocumentNotFound(DocumentStoreError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Document not found: {path}")
        self.path = path


__all__ = [
    "BatchLimitExceeded",
    "DocumentNotFound",
    "DocumentStoreError",
    "QueryLimitError",
    "StoreUnavailable",
    "VersionConflict",
]
