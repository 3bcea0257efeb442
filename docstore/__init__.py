"""Schema-less document store used as the persistence collaborator."""

from .documents import DOCUMENT_ID, SERVER_TIMESTAMP, DocumentSnapshot, join_path
from .errors import (
    BatchLimitExceeded,
    DocumentNotFound,
    DocumentStoreError,
    QueryLimitError,
    StoreUnavailable,
    VersionConflict,
)
from .storage import DocumentStore, Query, SqliteDocumentStore, WriteBatch

__all__ = [
    "BatchLimitExceeded",
    "DOCUMENT_ID",
    "DocumentNotFound",
    "DocumentSnapshot",
    "DocumentStore",
    "DocumentStoreError",
    "Query",
    "QueryLimitError",
    "SERVER_TIMESTAMP",
    "SqliteDocumentStore",
    "StoreUnavailable",
    "VersionConflict",
    "WriteBatch",
    "join_path",
]
