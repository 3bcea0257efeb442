"""Document paths, snapshots, and the JSON codec used by the document store."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping

DOCUMENT_ID = "__name__"
_DATETIME_KEY = "__datetime__"


class _ServerTimestamp:
    """Sentinel replaced by the store's clock when a write is applied."""

    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __deepcopy__(self, memo: dict) -> "_ServerTimestamp":
        return self


SERVER_TIMESTAMP = _ServerTimestamp()


# ----------------------------------------------------------------------
# Paths


def join_path(*segments: str) -> str:
    """Join path segments, rejecting empty ids and embedded slashes."""

    cleaned = []
    for segment in segments:
        text = str(segment).strip().strip("/")
        if not text:
            raise ValueError(f"Empty path segment in {segments!r}")
        cleaned.append(text)
    return "/".join(cleaned)


def split_path(path: str) -> list[str]:
    parts = [part for part in str(path).split("/") if part]
    if not parts:
        raise ValueError("Path must not be empty")
    return parts


def is_document_path(path: str) -> bool:
    return len(split_path(path)) % 2 == 0


def parent_collection(path: str) -> str:
    """Return the collection path that holds the document at ``path``."""

    parts = split_path(path)
    if len(parts) % 2 != 0:
        raise ValueError(f"Not a document path: {path}")
    return "/".join(parts[:-1])


def document_id(path: str) -> str:
    return split_path(path)[-1]


# ----------------------------------------------------------------------
# Field helpers


def get_field(data: Mapping[str, Any] | None, field_path: str, default: Any = None) -> Any:
    """Resolve a dotted field path (``lastScore.percent``) inside a document."""

    if data is None:
        return default
    current: Any = data
    for key in field_path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current


def has_field(data: Mapping[str, Any] | None, field_path: str) -> bool:
    marker = object()
    return get_field(data, field_path, marker) is not marker


def resolve_sentinels(fields: Mapping[str, Any], now: datetime) -> Dict[str, Any]:
    resolved: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is SERVER_TIMESTAMP:
            resolved[key] = now
        elif isinstance(value, Mapping):
            resolved[key] = resolve_sentinels(value, now)
        else:
            resolved[key] = copy.deepcopy(value)
    return resolved


def deep_merge(base: Mapping[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``updates`` into ``base`` the way a merge-write does: nested maps merge, other values replace."""

    merged = dict(base)
    for key, value in updates.items():
        existing = merged.get(key)
        if isinstance(value, Mapping) and isinstance(existing, Mapping):
            merged[key] = deep_merge(existing, value)
        else:
            merged[key] = value
    return merged


# ----------------------------------------------------------------------
# JSON codec


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return {_DATETIME_KEY: value.isoformat()}
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not storable")


def _decode_hook(payload: Dict[str, Any]) -> Any:
    if len(payload) == 1 and _DATETIME_KEY in payload:
        return datetime.fromisoformat(payload[_DATETIME_KEY])
    return payload


def encode_document(data: Mapping[str, Any]) -> str:
    return json.dumps(data, default=_encode_default, sort_keys=True, ensure_ascii=False)


def decode_document(raw: str) -> Dict[str, Any]:
    return json.loads(raw, object_hook=_decode_hook)


# ----------------------------------------------------------------------
# Snapshots


@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time view of a single document."""

    path: str
    data: Dict[str, Any] | None = None
    version: int = 0
    update_time: datetime | None = field(default=None, compare=False)

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def id(self) -> str:
        return document_id(self.path)

    @property
    def collection(self) -> str:
        return parent_collection(self.path)

    def get(self, field_path: str, default: Any = None) -> Any:
        return get_field(self.data, field_path, default)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data) if self.data is not None else {}


def snapshot_ids(snapshots: Iterable[DocumentSnapshot]) -> list[str]:
    return [snap.id for snap in snapshots]


__all__ = [
    "DOCUMENT_ID",
    "DocumentSnapshot",
    "SERVER_TIMESTAMP",
    "decode_document",
    "deep_merge",
    "document_id",
    "encode_document",
    "get_field",
    "has_field",
    "is_document_path",
    "join_path",
    "parent_collection",
    "resolve_sentinels",
    "snapshot_ids",
    "split_path",
]
