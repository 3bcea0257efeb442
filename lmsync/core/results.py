"""Result objects returned by the consistency operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .errors import LmsError


@dataclass
class OperationResult:
    """Outcome of a service call: a value, or the domain error that stopped it."""

    ok: bool
    value: Any = None
    error: LmsError | None = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def success(cls, value: Any = None, warnings: List[str] | None = None) -> "OperationResult":
        return cls(ok=True, value=value, warnings=list(warnings or []))

    @classmethod
    def failure(cls, error: LmsError, warnings: List[str] | None = None) -> "OperationResult":
        return cls(ok=False, error=error, warnings=list(warnings or []))

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    @property
    def code(self) -> str:
        return "ok" if self.ok else (self.error.code if self.error else "error")

    def raise_if_error(self) -> Any:
        """Raise the carried error, or return the value when the call succeeded."""
        if not self.ok and self.error is not None:
            raise self.error
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "code": self.code}
        if self.ok:
            payload["value"] = self.value
        else:
            payload["message"] = str(self.error)
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


__all__ = ["OperationResult"]
