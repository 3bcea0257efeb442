"""Consistency services over the course hierarchy."""

from .archive import ArchiveService, PendingCascade
from .fanout import chunk, commit_in_chunks, get_by_ids, query_in_chunks, with_scan_fallback
from .grading import GradeAggregationEngine, RecomputeOutcome
from .hierarchy import AttemptPath, HierarchyReader
from .visibility import VisibilityFilter, VisibleAssignment, assignment_visible

__all__ = [
    "ArchiveService",
    "AttemptPath",
    "GradeAggregationEngine",
    "HierarchyReader",
    "PendingCascade",
    "RecomputeOutcome",
    "VisibilityFilter",
    "VisibleAssignment",
    "assignment_visible",
    "chunk",
    "commit_in_chunks",
    "get_by_ids",
    "query_in_chunks",
    "with_scan_fallback",
]
