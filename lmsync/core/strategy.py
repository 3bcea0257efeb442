"""Pluggable ways of writing a derived aggregate onto its document.

Each strategy runs the same read → derive → merge-write cycle; they differ in
how they guard the window between the read and the write:

- ``last_write_wins``: plain merge-write; a concurrent writer may be overwritten.
- ``optimistic``: the write is conditional on the document version seen at read
  time; on conflict the whole cycle is re-run with fresh reads.
- ``transactional``: the cycle runs inside a store transaction.

A derive function receives the reader to query through (the store, or the
transaction view) and the current snapshot, and returns the fields to merge or
``None`` to leave the document alone. Writes whose derived fields already match
the stored values are skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from docstore import SERVER_TIMESTAMP, DocumentSnapshot, VersionConflict
from docstore.storage import DocumentStore

from .errors import ConcurrentUpdateError

LOGGER = logging.getLogger(__name__)

DeriveFn = Callable[[DocumentStore, DocumentSnapshot], Optional[Dict[str, Any]]]


@dataclass
class WriteOutcome:
    path: str
    fields: Dict[str, Any] | None
    written: bool
    attempts: int = 1


def fields_match(snapshot: DocumentSnapshot, fields: Mapping[str, Any]) -> bool:
    """True when every derived field already holds the same value on the document."""
    if not snapshot.exists:
        return False
    marker = object()
    for key, value in fields.items():
        current = snapshot.data.get(key, marker) if snapshot.data else marker
        if current is marker or current != value or type(current) is not type(value):
            return False
    return True


class WriteStrategy:
    name = "base"

    def __init__(self, touch_field: str | None = "updatedAt") -> None:
        self.touch_field = touch_field

    def _payload(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        payload = dict(fields)
        if self.touch_field:
            payload[self.touch_field] = SERVER_TIMESTAMP
        return payload

    def merge_derived(self, store: DocumentStore, path: str, derive: DeriveFn) -> WriteOutcome:
        raise NotImplementedError


class LastWriteWins(WriteStrategy):
    name = "last_write_wins"

    def merge_derived(self, store: DocumentStore, path: str, derive: DeriveFn) -> WriteOutcome:
        snapshot = store.get(path)
        fields = derive(store, snapshot)
        if fields is None or fields_match(snapshot, fields):
            return WriteOutcome(path, fields, written=False)
        store.set(path, self._payload(fields), merge=True)
        return WriteOutcome(path, fields, written=True)


class OptimisticVersioned(WriteStrategy):
    name = "optimistic"

    def __init__(self, max_retries: int = 5, touch_field: str | None = "updatedAt") -> None:
        super().__init__(touch_field)
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.max_retries = max_retries

    def merge_derived(self, store: DocumentStore, path: str, derive: DeriveFn) -> WriteOutcome:
        for attempt in range(1, self.max_retries + 1):
            snapshot = store.get(path)
            fields = derive(store, snapshot)
            if fields is None or fields_match(snapshot, fields):
                return WriteOutcome(path, fields, written=False, attempts=attempt)
            try:
                store.set(path, self._payload(fields), merge=True, expected_version=snapshot.version)
            except VersionConflict as exc:
                LOGGER.debug("Version conflict on %s (attempt %s): %s", path, attempt, exc)
                continue
            return WriteOutcome(path, fields, written=True, attempts=attempt)
        raise ConcurrentUpdateError(path, self.max_retries)


class Transactional(WriteStrategy):
    name = "transactional"

    def merge_derived(self, store: DocumentStore, path: str, derive: DeriveFn) -> WriteOutcome:
        begin = getattr(store, "transaction", None)
        if begin is None:
            raise TypeError(f"{type(store).__name__} does not support transactions")
        with begin() as txn:
            snapshot = txn.get(path)
            fields = derive(txn, snapshot)
            if fields is None or fields_match(snapshot, fields):
                return WriteOutcome(path, fields, written=False)
            txn.set(path, self._payload(fields), merge=True)
        return WriteOutcome(path, fields, written=True)


def build_write_strategy(name: str, *, max_retries: int = 5) -> WriteStrategy:
    """Instantiate the strategy registered under ``name``."""
    normalized = name.strip().lower().replace("-", "_")
    if normalized == LastWriteWins.name:
        return LastWriteWins()
    if normalized == OptimisticVersioned.name:
        return OptimisticVersioned(max_retries=max_retries)
    if normalized == Transactional.name:
        return Transactional()
    valid = ", ".join((LastWriteWins.name, OptimisticVersioned.name, Transactional.name))
    raise ValueError(f"Unknown write strategy '{name}'. Valid options: {valid}")


__all__ = [
    "DeriveFn",
    "LastWriteWins",
    "OptimisticVersioned",
    "Transactional",
    "WriteOutcome",
    "WriteStrategy",
    "build_write_strategy",
    "fields_match",
]
