"""Append-only JSONL audit trail for cascade and grading events.

Each event names the document it acted on (``subject``) and how the operation
ended, so an operator can replay the history of one module or attempt and spot
cascades or aggregates that were left behind.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from .results import OperationResult

Outcome = Literal["ok", "warning", "failed"]


class AuditEvent(BaseModel):
    """Structured record of one consistency operation."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    operation: str = Field(..., description="Operation name, e.g. 'set_module_archived' or 'recompute_attempt'.")
    message: str = Field(..., description="Human-readable description of the event.")
    subject: Optional[str] = Field(default=None, description="Document path the operation acted on.")
    outcome: Outcome = "ok"
    error_code: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
    actor: str = Field(default="system")
    payload: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_result(
        cls,
        operation: str,
        message: str,
        result: OperationResult,
        *,
        subject: str | None = None,
        **payload: Any,
    ) -> "AuditEvent":
        if not result.ok:
            outcome: Outcome = "failed"
        elif result.has_warnings:
            outcome = "warning"
        else:
            outcome = "ok"
        return cls(
            operation=operation,
            message=message,
            subject=subject,
            outcome=outcome,
            error_code=None if result.ok else result.code,
            warnings=list(result.warnings),
            payload=payload,
        )


class AuditLogger:
    """Append-only JSONL logger for operator review."""

    def __init__(self, output_path: Path):
        self.output_path = output_path
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, event: AuditEvent | Dict[str, Any]) -> AuditEvent:
        """Write a single event to disk and return the normalized object."""
        if not isinstance(event, AuditEvent):
            event = AuditEvent(**event)
        with self.output_path.open("a", encoding="utf-8") as handle:
            handle.write(event.model_dump_json() + "\n")
        return event

    def extend(self, events: Iterable[AuditEvent | Dict[str, Any]]) -> None:
        for event in events:
            self.log(event)

    def read(self, *, operation: str | None = None, subject: str | None = None) -> List[AuditEvent]:
        """Events in write order, optionally narrowed to one operation or one subject path."""
        if not self.output_path.exists():
            return []
        events: List[AuditEvent] = []
        with self.output_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                if not line.strip():
                    continue
                event = AuditEvent.model_validate(json.loads(line))
                if operation is not None and event.operation != operation:
                    continue
                if subject is not None and event.subject != subject:
                    continue
                events.append(event)
        return events

    def unresolved(self, operation: str) -> List[AuditEvent]:
        """Latest event per subject for ``operation`` where that latest event did not succeed."""
        latest: Dict[str, AuditEvent] = {}
        for event in self.read(operation=operation):
            if event.subject is not None:
                latest[event.subject] = event
        return [event for event in latest.values() if event.outcome != "ok"]


def record(
    audit: AuditLogger | None,
    operation: str,
    message: str,
    *,
    subject: str | None = None,
    result: OperationResult | None = None,
    **payload: Any,
) -> None:
    """Log to ``audit`` when one is configured."""
    if audit is None:
        return
    if result is not None:
        audit.log(AuditEvent.from_result(operation, message, result, subject=subject, **payload))
    else:
        audit.log(AuditEvent(operation=operation, message=message, subject=subject, payload=payload))


__all__ = ["AuditEvent", "AuditLogger", "Outcome", "record"]
