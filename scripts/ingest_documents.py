"""Load a JSON or YAML fixture of ``{path: fields}`` documents into a document store."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping

import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.append(str(PROJECT_ROOT))

from docstore import SqliteDocumentStore  # noqa: E402
from docstore.documents import is_document_path, split_path  # noqa: E402
from lmsync.services.fanout import commit_in_chunks  # noqa: E402

LOGGER = logging.getLogger("ingest_documents")


def _load_fixture(source: Path) -> Dict[str, Any]:
    with source.open("r", encoding="utf-8") as handle:
        if source.suffix.lower() == ".json":
            data = json.load(handle)
        else:
            data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a mapping of document paths in {source}, received {type(data).__name__}")
    return data


def _coerce_timestamps(fields: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn ISO strings held by ``...At`` fields into timezone-aware datetimes."""
    coerced: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, Mapping):
            value = _coerce_timestamps(value)
        elif key.endswith("At") and isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                LOGGER.debug("Leaving %s=%r as text", key, value)
        if isinstance(value, datetime) and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        coerced[key] = value
    return coerced


def ingest(source: Path, dest: Path, *, reset: bool = False, max_batch_ops: int = 500) -> Dict[str, int]:
    """Write every fixture document into the store at ``dest`` and return counts per root collection."""

    source = source.resolve()
    if not source.exists():
        raise FileNotFoundError(f"Fixture {source} does not exist")

    dest = dest.resolve()
    if reset and dest.exists():
        dest.unlink()

    documents = _load_fixture(source)
    writes: List[tuple] = []
    counts: Counter[str] = Counter()
    for path, fields in documents.items():
        if not is_document_path(path):
            raise ValueError(f"Fixture key {path!r} is not a document path")
        if not isinstance(fields, Mapping):
            raise ValueError(f"Fixture document {path!r} must be a mapping")
        writes.append(("set", path, _coerce_timestamps(fields)))
        counts[split_path(path)[0]] += 1

    store = SqliteDocumentStore(dest, max_batch_ops=max_batch_ops)
    written = commit_in_chunks(store, writes)
    summary = dict(sorted(counts.items()))
    summary["documents"] = written
    return summary


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Load LMS fixture documents into a SQLite document store")
    parser.add_argument("source", type=Path, help="JSON or YAML file mapping document paths to fields")
    parser.add_argument("dest", type=Path, help="Destination SQLite file (e.g., outputs/lmsync/store.sqlite)")
    parser.add_argument("--reset", action="store_true", help="Delete the destination store before loading")
    parser.add_argument("--max-batch-ops", type=int, default=500, help="Writes per committed batch")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    summary = ingest(args.source, args.dest, reset=args.reset, max_batch_ops=args.max_batch_ops)
    LOGGER.info("Ingestion summary: %s", summary)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
