"""SQLite-backed document store with the query surface of a hosted schema-less store."""

from __future__ import annotations

import copy
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Protocol, Sequence, Tuple

from .documents import (
    DOCUMENT_ID,
    DocumentSnapshot,
    decode_document,
    deep_merge,
    document_id,
    encode_document,
    get_field,
    has_field,
    is_document_path,
    parent_collection,
    resolve_sentinels,
    split_path,
)
from .errors import (
    BatchLimitExceeded,
    DocumentNotFound,
    DocumentStoreError,
    QueryLimitError,
    StoreUnavailable,
    VersionConflict,
)

DEFAULT_MAX_BATCH_OPS = 500
DEFAULT_MAX_IN_VALUES = 10

COMPARISON_OPERATORS = ("==", "!=", "<", "<=", ">", ">=")
LIST_OPERATORS = ("in", "not-in", "array-contains-any")
OPERATORS = COMPARISON_OPERATORS + LIST_OPERATORS + ("array-contains",)

_ID_LOCK = threading.Lock()
_LAST_ID_STAMP = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _monotonic_stamp() -> int:
    global _LAST_ID_STAMP
    with _ID_LOCK:
        stamp = max(time.time_ns(), _LAST_ID_STAMP + 1)
        _LAST_ID_STAMP = stamp
    return stamp


@contextmanager
def sqlite_errors(action: str) -> Iterator[None]:
    """Re-raise driver errors as store errors so callers only handle one family."""
    try:
        yield
    except sqlite3.Error as exc:
        raise StoreUnavailable(action, exc) from exc


# ----------------------------------------------------------------------
# Value comparison


def _type_rank(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return 1
    if isinstance(value, (int, float)):
        return 2
    if isinstance(value, datetime):
        return 3
    if isinstance(value, str):
        return 4
    if isinstance(value, (list, tuple)):
        return 5
    return 6


def _values_equal(left: Any, right: Any) -> bool:
    if _type_rank(left) != _type_rank(right):
        return False
    return left == right


def _compare(left: Any, op: str, right: Any) -> bool:
    if op == "==":
        return _values_equal(left, right)
    if op == "!=":
        return not _values_equal(left, right)
    if _type_rank(left) != _type_rank(right) or _type_rank(left) in (0, 5, 6):
        return False
    if op == "<":
        return left < right
    if op == "<=":
        return left <= right
    if op == ">":
        return left > right
    if op == ">=":
        return left >= right
    raise ValueError(f"Unsupported comparison operator: {op}")


def _sort_key(value: Any) -> Tuple[int, Any]:
    rank = _type_rank(value)
    if rank in (0, 5, 6):
        return (rank, repr(value))
    return (rank, value)


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any

    def _resolve(self, snap: DocumentSnapshot) -> Tuple[bool, Any]:
        if self.field == DOCUMENT_ID:
            return True, snap.id
        if not has_field(snap.data, self.field):
            return False, None
        return True, get_field(snap.data, self.field)

    def matches(self, snap: DocumentSnapshot) -> bool:
        present, actual = self._resolve(snap)
        if not present:
            return False
        if self.op in COMPARISON_OPERATORS:
            return _compare(actual, self.op, self.value)
        if self.op == "in":
            return any(_values_equal(actual, candidate) for candidate in self.value)
        if self.op == "not-in":
            return not any(_values_equal(actual, candidate) for candidate in self.value)
        if not isinstance(actual, (list, tuple)):
            return False
        if self.op == "array-contains":
            return any(_values_equal(item, self.value) for item in actual)
        if self.op == "array-contains-any":
            return any(_values_equal(item, candidate) for item in actual for candidate in self.value)
        raise ValueError(f"Unsupported operator: {self.op}")


# ----------------------------------------------------------------------
# Queries and batches


class DocumentStore(Protocol):
    """The collaborator surface the consistency services depend on."""

    max_batch_ops: int
    max_in_values: int

    def get(self, path: str) -> DocumentSnapshot: ...

    def set(
        self,
        path: str,
        fields: Mapping[str, Any],
        *,
        merge: bool = False,
        expected_version: int | None = None,
    ) -> int: ...

    def delete(self, path: str) -> None: ...

    def collection(self, path: str) -> "Query": ...

    def batch(self) -> "WriteBatch": ...

    def new_id(self) -> str: ...

    def list_descendants(self, path: str) -> List[str]: ...


class Query:
    """Immutable query builder; every refinement returns a new query."""

    def __init__(
        self,
        store: "SqliteDocumentStore",
        collection: str,
        *,
        filters: Sequence[FieldFilter] = (),
        orders: Sequence[Tuple[str, str]] = (),
        limit_to: int | None = None,
    ) -> None:
        self._store = store
        self.collection_path = collection
        self.filters: Tuple[FieldFilter, ...] = tuple(filters)
        self.orders: Tuple[Tuple[str, str], ...] = tuple(orders)
        self.limit_to = limit_to

    def _copy(self, **changes: Any) -> "Query":
        payload = {
            "filters": self.filters,
            "orders": self.orders,
            "limit_to": self.limit_to,
        }
        payload.update(changes)
        return Query(self._store, self.collection_path, **payload)

    def where(self, field_path: str, op: str, value: Any) -> "Query":
        if op not in OPERATORS:
            raise ValueError(f"Unsupported operator '{op}'. Valid operators: {', '.join(OPERATORS)}")
        if op in LIST_OPERATORS:
            if not isinstance(value, (list, tuple, set, frozenset)):
                raise QueryLimitError(f"'{op}' filter on {field_path} requires a list of values")
            value = list(value)
            if not value:
                raise QueryLimitError(f"'{op}' filter on {field_path} requires a non-empty list")
            if len(value) > self._store.max_in_values:
                raise QueryLimitError(
                    f"'{op}' filter on {field_path} has {len(value)} values; "
                    f"the store accepts at most {self._store.max_in_values}"
                )
        return self._copy(filters=self.filters + (FieldFilter(field_path, op, value),))

    def order_by(self, field_path: str, direction: str = "asc") -> "Query":
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise ValueError("direction must be 'asc' or 'desc'")
        return self._copy(orders=self.orders + ((field_path, direction),))

    def limit(self, count: int) -> "Query":
        if count < 1:
            raise ValueError("limit must be positive")
        return self._copy(limit_to=count)

    def get(self) -> List[DocumentSnapshot]:
        with sqlite_errors(f"query on {self.collection_path}"):
            return self._store._execute(self)

    def stream(self) -> Iterator[DocumentSnapshot]:
        yield from self.get()

    def apply(self, snapshots: Sequence[DocumentSnapshot]) -> List[DocumentSnapshot]:
        """Evaluate filters, ordering, and limit against already-loaded documents."""

        matched = [snap for snap in snapshots if all(flt.matches(snap) for flt in self.filters)]
        if self.orders:
            # Documents lacking an ordered field are excluded, like the hosted store does.
            matched = [
                snap
                for snap in matched
                if all(name == DOCUMENT_ID or has_field(snap.data, name) for name, _ in self.orders)
            ]
            matched.sort(key=lambda snap: snap.id)
            for name, direction in reversed(self.orders):
                matched.sort(
                    key=lambda snap, name=name: _sort_key(snap.id if name == DOCUMENT_ID else snap.get(name)),
                    reverse=direction == "desc",
                )
        if self.limit_to is not None:
            matched = matched[: self.limit_to]
        return matched

    def __repr__(self) -> str:
        return f"Query({self.collection_path!r}, filters={list(self.filters)!r}, orders={list(self.orders)!r})"


@dataclass
class WriteOp:
    kind: str
    path: str
    fields: Dict[str, Any] = field(default_factory=dict)
    merge: bool = False


class WriteBatch:
    """Collects writes and commits them atomically, bounded by the store ceiling."""

    def __init__(self, store: "SqliteDocumentStore") -> None:
        self._store = store
        self.ops: List[WriteOp] = []
        self.committed = False

    def set(self, path: str, fields: Mapping[str, Any], *, merge: bool = False) -> "WriteBatch":
        self.ops.append(WriteOp("set", path, dict(fields), merge))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self.ops.append(WriteOp("delete", path))
        return self

    def __len__(self) -> int:
        return len(self.ops)

    def commit(self) -> int:
        if self.committed:
            raise DocumentStoreError("Batch already committed")
        with sqlite_errors("batch commit"):
            self._store._commit_batch(self.ops)
        self.committed = True
        return len(self.ops)


# ----------------------------------------------------------------------
# Store


class SqliteDocumentStore:
    """Schema-less documents addressed by slash-separated paths, persisted in SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        max_batch_ops: int = DEFAULT_MAX_BATCH_OPS,
        max_in_values: int = DEFAULT_MAX_IN_VALUES,
        busy_timeout: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_batch_ops < 1:
            raise ValueError("max_batch_ops must be positive")
        if max_in_values < 1:
            raise ValueError("max_in_values must be positive")
        self.db_path = Path(db_path)
        self.max_batch_ops = max_batch_ops
        self.max_in_values = max_in_values
        self.busy_timeout = busy_timeout
        self._clock = clock or _utcnow
        self._txn_con: sqlite3.Connection | None = None
        self._ensure_schema()

    # -- connections ---------------------------------------------------

    def _open(self) -> sqlite3.Connection:
        """Create a connection, ensuring the parent directory exists."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)

    @contextmanager
    def _session(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        if self._txn_con is not None:
            yield self._txn_con
            return
        with sqlite_errors("write" if write else "read"):
            con = self._open()
            try:
                if write:
                    con.execute("BEGIN IMMEDIATE")
                yield con
                if write:
                    con.execute("COMMIT")
            except BaseException:
                if write and con.in_transaction:
                    con.execute("ROLLBACK")
                raise
            finally:
                con.close()

    def _ensure_schema(self) -> None:
        schema_sql = Path(__file__).with_name("schema.sql").read_text(encoding="utf-8")
        con = self._open()
        try:
            con.executescript(schema_sql)
        finally:
            con.close()

    @contextmanager
    def transaction(self) -> Iterator["SqliteDocumentStore"]:
        """Yield a view of the store whose reads and writes share one database transaction."""

        if self._txn_con is not None:
            raise DocumentStoreError("Nested transactions are not supported")
        with sqlite_errors("transaction"):
            con = self._open()
            try:
                con.execute("BEGIN IMMEDIATE")
                view = copy.copy(self)
                view._txn_con = con
                yield view
                con.execute("COMMIT")
            except BaseException:
                if con.in_transaction:
                    con.execute("ROLLBACK")
                raise
            finally:
                con.close()

    # -- helpers -------------------------------------------------------

    @staticmethod
    def _require_document_path(path: str) -> str:
        normalized = "/".join(split_path(path))
        if not is_document_path(normalized):
            raise ValueError(f"Not a document path: {path}")
        return normalized

    def _row_to_snapshot(self, path: str, raw: str, version: int) -> DocumentSnapshot:
        return DocumentSnapshot(path=path, data=decode_document(raw), version=int(version))

    def _read_row(self, con: sqlite3.Connection, path: str) -> Tuple[str, int] | None:
        row = con.execute("SELECT data, version FROM documents WHERE path = ?", (path,)).fetchone()
        if row is None:
            return None
        return row[0], int(row[1])

    def _write(
        self,
        con: sqlite3.Connection,
        path: str,
        fields: Mapping[str, Any],
        *,
        merge: bool,
        expected_version: int | None = None,
    ) -> int:
        row = self._read_row(con, path)
        current_version = row[1] if row else 0
        if expected_version is not None and expected_version != current_version:
            raise VersionConflict(path, expected_version, current_version)
        resolved = resolve_sentinels(fields, self._clock())
        data = deep_merge(decode_document(row[0]), resolved) if (merge and row) else resolved
        version = current_version + 1
        con.execute(
            """
            INSERT INTO documents(path, collection, doc_id, data, version)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                data = excluded.data,
                version = excluded.version,
                updated_at = CURRENT_TIMESTAMP
            """,
            (path, parent_collection(path), document_id(path), encode_document(data), version),
        )
        return version

    # -- public API ----------------------------------------------------

    def new_id(self) -> str:
        """Return an id that sorts after every id previously issued by this process."""

        return f"{_monotonic_stamp():019x}{secrets.token_hex(4)}"

    def get(self, path: str) -> DocumentSnapshot:
        path = self._require_document_path(path)
        with self._session() as con:
            row = self._read_row(con, path)
        if row is None:
            return DocumentSnapshot(path=path)
        return self._row_to_snapshot(path, row[0], row[1])

    def set(
        self,
        path: str,
        fields: Mapping[str, Any],
        *,
        merge: bool = False,
        expected_version: int | None = None,
    ) -> int:
        """Write a document and return its new version.

        ``expected_version`` turns the write into a compare-and-set: ``0`` means
        "must not exist yet", any other value must equal the stored version.
        """

        path = self._require_document_path(path)
        with self._session(write=True) as con:
            return self._write(con, path, fields, merge=merge, expected_version=expected_version)

    def update(self, path: str, fields: Mapping[str, Any]) -> int:
        path = self._require_document_path(path)
        with self._session(write=True) as con:
            if self._read_row(con, path) is None:
                raise DocumentNotFound(path)
            return self._write(con, path, fields, merge=True)

    def delete(self, path: str) -> None:
        path = self._require_document_path(path)
        with self._session(write=True) as con:
            con.execute("DELETE FROM documents WHERE path = ?", (path,))

    def collection(self, path: str) -> Query:
        parts = split_path(path)
        if len(parts) % 2 != 1:
            raise ValueError(f"Not a collection path: {path}")
        return Query(self, "/".join(parts))

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    def list_descendants(self, path: str) -> List[str]:
        """Return the paths of every document nested in subcollections of ``path``, deepest first."""

        path = self._require_document_path(path)
        prefix = f"{path}/"
        with self._session() as con:
            rows = con.execute(
                "SELECT path FROM documents WHERE substr(path, 1, ?) = ?",
                (len(prefix), prefix),
            ).fetchall()
        return sorted((row[0] for row in rows), key=lambda p: (-p.count("/"), p))

    # -- internals used by Query / WriteBatch --------------------------

    def _load_collection(self, collection: str) -> List[DocumentSnapshot]:
        with self._session() as con:
            rows = con.execute(
                "SELECT path, data, version FROM documents WHERE collection = ? ORDER BY doc_id",
                (collection,),
            ).fetchall()
        return [self._row_to_snapshot(row[0], row[1], row[2]) for row in rows]

    def _execute(self, query: Query) -> List[DocumentSnapshot]:
        return query.apply(self._load_collection(query.collection_path))

    def _commit_batch(self, ops: Sequence[WriteOp]) -> None:
        if len(ops) > self.max_batch_ops:
            raise BatchLimitExceeded(len(ops), self.max_batch_ops)
        if not ops:
            return
        with self._session(write=True) as con:
            for op in ops:
                path = self._require_document_path(op.path)
                if op.kind == "delete":
                    con.execute("DELETE FROM documents WHERE path = ?", (path,))
                else:
                    self._write(con, path, op.fields, merge=op.merge)


__all__ = [
    "COMPARISON_OPERATORS",
    "DEFAULT_MAX_BATCH_OPS",
    "DEFAULT_MAX_IN_VALUES",
    "DocumentStore",
    "FieldFilter",
    "LIST_OPERATORS",
    "OPERATORS",
    "Query",
    "SqliteDocumentStore",
    "WriteBatch",
    "WriteOp",
    "sqlite_errors",
]
