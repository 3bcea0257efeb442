"""
Configuration, error taxonomy, results, audit trail, and write strategies.

Everything here is independent of the services so that callers (route
handlers, maintenance scripts) can depend on it without pulling in the store.
"""

from .audit import AuditEvent, AuditLogger
from .config import LmsConfig, load_lms_config
from .errors import (
    AncestorArchived,
    Archived,
    ConcurrentUpdateError,
    FanoutLimitExceeded,
    InvalidGrade,
    LmsError,
    NotFound,
    PartialCascadeFailure,
)
from .results import OperationResult
from .strategy import WriteStrategy, build_write_strategy

__all__ = [
    "AncestorArchived",
    "Archived",
    "AuditEvent",
    "AuditLogger",
    "ConcurrentUpdateError",
    "FanoutLimitExceeded",
    "InvalidGrade",
    "LmsConfig",
    "LmsError",
    "NotFound",
    "OperationResult",
    "PartialCascadeFailure",
    "WriteStrategy",
    "build_write_strategy",
    "load_lms_config",
]
