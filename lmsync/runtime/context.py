"""Shared runtime context for route handlers and maintenance scripts."""

from __future__ import annotations

from datetime import timedelta
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from docstore import SqliteDocumentStore
from lmsync.core.audit import AuditLogger
from lmsync.core.config import LmsConfig
from lmsync.core.strategy import WriteStrategy
from lmsync.services.archive import ArchiveService
from lmsync.services.grading import GradeAggregationEngine
from lmsync.services.visibility import VisibilityFilter


class ServiceContext(BaseModel):
    """Configured store and write strategy; builds a fresh service per request."""

    config: LmsConfig
    store: SqliteDocumentStore
    strategy: WriteStrategy
    audit: Optional[AuditLogger] = None
    env: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    def archive(self) -> ArchiveService:
        return ArchiveService(
            self.store,
            audit=self.audit,
            cascade_class_index=self.config.archive.cascade_class_index,
            pending_ttl=timedelta(hours=self.config.archive.pending_ttl_hours),
        )

    def visibility(self) -> VisibilityFilter:
        return VisibilityFilter(self.store, scan_fallback=self.config.archive.scan_fallback)

    def grading(self) -> GradeAggregationEngine:
        return GradeAggregationEngine(
            self.store,
            strategy=self.strategy,
            default_essay_max_score=self.config.grading.default_essay_max_score,
            audit=self.audit,
        )
