"""
Typed configuration for the consistency services.

The YAML layout mirrors the sections below; relative paths are resolved
against the directory that holds the config file.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

WriteStrategyName = Literal["last_write_wins", "optimistic", "transactional"]


class StoreConfig(BaseModel):
    """Location and engine limits of the document store."""

    model_config = ConfigDict()

    sqlite_path: Path = Field(default=Path("outputs/lmsync/store.sqlite"))
    max_batch_ops: int = Field(default=500, ge=1, le=500, description="Per-batch write ceiling.")
    max_in_values: int = Field(default=10, ge=1, le=30, description="Values accepted by in/array-contains-any.")
    busy_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def coerce_path(cls, value: Any) -> Path:
        return Path(value).expanduser().resolve()


class GradingConfig(BaseModel):
    """Knobs for the grade roll-up engine."""

    default_essay_max_score: float = Field(default=10.0, gt=0)
    write_strategy: WriteStrategyName = "optimistic"
    max_retries: int = Field(default=5, ge=1, le=20)

    @field_validator("write_strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace("-", "_")
        return value


class ArchiveConfig(BaseModel):
    cascade_class_index: bool = True
    pending_ttl_hours: int = Field(default=72, ge=1)
    scan_fallback: bool = Field(default=True, description="Scan whole collections when a chunked query fails.")


class AuditConfig(BaseModel):
    path: Optional[Path] = None

    @field_validator("path", mode="before")
    @classmethod
    def coerce_path(cls, value: Any) -> Optional[Path]:
        if value in (None, ""):
            return None
        return Path(value).expanduser().resolve()


class LmsConfig(BaseModel):
    """Top-level configuration."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    grading: GradingConfig = Field(default_factory=GradingConfig)
    archive: ArchiveConfig = Field(default_factory=ArchiveConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


def read_yaml_file(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return a dictionary."""
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected mapping at root of {path}, received {type(data)}")
    return data


def _resolve_config_path(value: Any, base_dir: Path) -> str:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    else:
        path = path.resolve()
    return str(path)


def _absolutize_paths(data: Dict[str, Any], base_dir: Path) -> None:
    store = data.get("store")
    if isinstance(store, dict) and store.get("sqlite_path"):
        store["sqlite_path"] = _resolve_config_path(store["sqlite_path"], base_dir)

    audit = data.get("audit")
    if isinstance(audit, dict) and audit.get("path"):
        audit["path"] = _resolve_config_path(audit["path"], base_dir)


def load_lms_config(path: Path, *, base_dir: Path | None = None) -> LmsConfig:
    """Load the service config; relative paths resolve against ``base_dir`` or the file's directory."""
    path = path.expanduser().resolve()
    data = read_yaml_file(path)
    _absolutize_paths(data, base_dir=(base_dir or path.parent).resolve())
    try:
        return LmsConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid lmsync config in {path}") from exc


def apply_overrides(base: LmsConfig, overrides: Dict[str, Dict[str, Any]]) -> LmsConfig:
    """
    Return a new config with per-section overrides applied.

    ``overrides`` maps a section name to the fields to replace, e.g.
    ``{"grading": {"write_strategy": "transactional"}}``.
    """
    payload = base.model_dump()
    for section, values in overrides.items():
        if isinstance(payload.get(section), dict) and isinstance(values, dict):
            payload[section].update(values)
        else:
            payload[section] = values
    try:
        return LmsConfig.model_validate(payload)
    except ValidationError as exc:
        raise ValueError("Invalid overrides for lmsync config") from exc


__all__ = [
    "ArchiveConfig",
    "AuditConfig",
    "GradingConfig",
    "LmsConfig",
    "StoreConfig",
    "WriteStrategyName",
    "apply_overrides",
    "load_lms_config",
    "read_yaml_file",
]
