"""Chunked fan-out over the store's bounded ``in``-style filters, and chunked batch writes."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple, TypeVar

from docstore import DOCUMENT_ID, DocumentSnapshot, DocumentStoreError
from docstore.storage import DocumentStore

from lmsync.core.errors import FanoutLimitExceeded

LOGGER = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 10

T = TypeVar("T")
Filter = Tuple[str, str, Any]
Write = Tuple[str, str, Dict[str, Any] | None]


def unique_ids(ids: Iterable[Any]) -> List[str]:
    """De-duplicate ids, keeping first occurrences and dropping empty values."""
    seen: set[str] = set()
    ordered: List[str] = []
    for raw in ids:
        if raw is None:
            continue
        value = str(raw).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def chunk(ids: Iterable[Any], size: int = DEFAULT_CHUNK_SIZE) -> List[List[str]]:
    if size < 1:
        raise ValueError("chunk size must be positive")
    values = unique_ids(ids)
    return [values[i : i + size] for i in range(0, len(values), size)]


def _resolve_chunk_size(store: DocumentStore, size: int | None) -> int:
    limit = getattr(store, "max_in_values", DEFAULT_CHUNK_SIZE)
    resolved = limit if size is None else size
    if resolved > limit:
        raise FanoutLimitExceeded(resolved, limit)
    return resolved


def query_in_chunks(
    store: DocumentStore,
    collection: str,
    field: str,
    ids: Iterable[Any],
    *,
    op: str = "in",
    filters: Sequence[Filter] = (),
    size: int | None = None,
) -> List[DocumentSnapshot]:
    """
    Run ``field <op> group`` for each group of at most ``size`` ids and merge the results.

    An empty id list returns ``[]`` without touching the store. Results are
    de-duplicated by document path; no ordering is implied across groups.
    Store errors from any sub-query propagate unchanged.
    """
    chunk_size = _resolve_chunk_size(store, size)
    groups = chunk(ids, chunk_size)
    if not groups:
        return []

    merged: Dict[str, DocumentSnapshot] = {}
    for group in groups:
        query = store.collection(collection)
        for filter_field, filter_op, filter_value in filters:
            query = query.where(filter_field, filter_op, filter_value)
        for snap in query.where(field, op, group).get():
            merged.setdefault(snap.path, snap)
    return list(merged.values())


def get_by_ids(
    store: DocumentStore,
    collection: str,
    ids: Iterable[Any],
    *,
    size: int | None = None,
) -> Dict[str, DocumentSnapshot]:
    """Fetch documents by id with document-id ``in`` lookups; missing ids are absent from the map."""
    snaps = query_in_chunks(store, collection, DOCUMENT_ID, ids, size=size)
    return {snap.id: snap for snap in snaps}


def with_scan_fallback(
    primary: Callable[[], T],
    fallback: Callable[[], T],
    *,
    label: str,
    enabled: bool = True,
) -> T:
    """Run ``primary``; when it fails with a store error and fallback is enabled, run the unfiltered scan."""
    if not enabled:
        return primary()
    try:
        return primary()
    except DocumentStoreError as exc:
        LOGGER.warning("Chunked query for %s failed (%s); falling back to a full scan", label, exc)
        return fallback()


def commit_in_chunks(
    store: DocumentStore,
    writes: Sequence[Write],
    *,
    size: int | None = None,
    on_commit: Callable[[int], None] | None = None,
) -> int:
    """
    Commit ``writes`` in batches no larger than the store's per-batch ceiling.

    Each write is ``("merge", path, fields)``, ``("set", path, fields)`` or
    ``("delete", path, None)``. Batches are committed in order; a failure
    stops at the failing batch and propagates. ``on_commit`` receives the
    running count of applied writes after each batch.
    """
    ceiling = getattr(store, "max_batch_ops", len(writes) or 1)
    batch_size = min(size or ceiling, ceiling)
    applied = 0
    for start in range(0, len(writes), batch_size):
        batch = store.batch()
        for kind, path, fields in writes[start : start + batch_size]:
            if kind == "delete":
                batch.delete(path)
            elif kind in ("merge", "set"):
                batch.set(path, fields or {}, merge=kind == "merge")
            else:
                raise ValueError(f"Unknown write kind: {kind}")
        applied += batch.commit()
        if on_commit is not None:
            on_commit(applied)
    return applied


__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "chunk",
    "commit_in_chunks",
    "get_by_ids",
    "query_in_chunks",
    "unique_ids",
    "with_scan_fallback",
]
