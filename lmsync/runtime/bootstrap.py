"""Bootstrap helpers for the consistency services."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv

from docstore import SqliteDocumentStore
from lmsync.core.audit import AuditLogger
from lmsync.core.config import LmsConfig, apply_overrides, load_lms_config
from lmsync.core.strategy import build_write_strategy

from .context import ServiceContext

DEFAULT_CONFIG_PATH = Path("config/lmsync.yaml")
ENV_STORE = "LMSYNC_STORE"
ENV_WRITE_STRATEGY = "LMSYNC_WRITE_STRATEGY"
ENV_LOG_LEVEL = "LMSYNC_LOG_LEVEL"
LOGGER = logging.getLogger(__name__)


def _capture_env(keys: tuple[str, ...]) -> Dict[str, str]:
    """Return the subset of ``keys`` that are set in the environment."""
    snapshot: Dict[str, str] = {}
    for key in keys:
        value = os.getenv(key)
        if value is not None:
            snapshot[key] = value
    return snapshot


def _env_overrides(env: Dict[str, str]) -> Dict[str, Dict[str, object]]:
    overrides: Dict[str, Dict[str, object]] = {}
    if env.get(ENV_STORE):
        overrides["store"] = {"sqlite_path": Path(env[ENV_STORE]).expanduser().resolve()}
    if env.get(ENV_WRITE_STRATEGY):
        overrides["grading"] = {"write_strategy": env[ENV_WRITE_STRATEGY]}
    return overrides


def configure_logging(level: str) -> None:
    for name in ("lmsync", "docstore"):
        logging.getLogger(name).setLevel(level)


def bootstrap_services(
    config_path: Path | None = None,
    *,
    repo_root: Path | None = None,
    store_override: Path | None = None,
    strategy_override: str | None = None,
    env_keys: tuple[str, ...] = (ENV_STORE, ENV_WRITE_STRATEGY, ENV_LOG_LEVEL),
) -> ServiceContext:
    """
    Load configuration and ``.env`` values, then open the store.

    Parameters
    ----------
    config_path:
        Path to the YAML config. Defaults to ``config/lmsync.yaml`` under
        ``repo_root``; when that file is absent the built-in defaults apply.
    repo_root:
        Root of the repository. Defaults to ``Path.cwd()``.
    store_override:
        SQLite file to use instead of ``store.sqlite_path``. Wins over
        ``LMSYNC_STORE``.
    strategy_override:
        Write strategy name. Wins over ``LMSYNC_WRITE_STRATEGY``.
    """

    repo_root = (repo_root or Path.cwd()).resolve()
    load_dotenv(repo_root / ".env")
    env_snapshot = _capture_env(env_keys)

    config_path = (config_path or (repo_root / DEFAULT_CONFIG_PATH)).resolve()
    if config_path.exists():
        config = load_lms_config(config_path)
    else:
        LOGGER.debug("Config %s not found; using defaults", config_path)
        config = LmsConfig()

    overrides = _env_overrides(env_snapshot)
    if store_override is not None:
        overrides["store"] = {"sqlite_path": store_override.expanduser().resolve()}
    if strategy_override:
        overrides["grading"] = {"write_strategy": strategy_override}
    if env_snapshot.get(ENV_LOG_LEVEL):
        overrides["log_level"] = env_snapshot[ENV_LOG_LEVEL]
    if overrides:
        config = apply_overrides(config, overrides)

    configure_logging(config.log_level)

    store = SqliteDocumentStore(
        config.store.sqlite_path,
        max_batch_ops=config.store.max_batch_ops,
        max_in_values=config.store.max_in_values,
        busy_timeout=config.store.busy_timeout_seconds,
    )
    strategy = build_write_strategy(config.grading.write_strategy, max_retries=config.grading.max_retries)
    audit = AuditLogger(config.audit.path) if config.audit.path else None

    LOGGER.info(
        "Services bootstrapped (store=%s, write_strategy=%s)",
        config.store.sqlite_path,
        strategy.name,
    )
    return ServiceContext(config=config, store=store, strategy=strategy, audit=audit, env=env_snapshot)
