"""
DriftGuard - Configuration loader.

Loads and validates config.yaml; resolves paths relative to project root.
Invalid values are rejected here so they never reach the scan engine.
The database location may be overridden with DRIFTGUARD_DB_PATH.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml

from driftguard.core.checksum_cache import DEFAULT_TTL_HOURS, MAX_ENTRIES
from driftguard.core.content_store import DEFAULT_RETENTION_LIMIT
from driftguard.core.diffing import DEFAULT_MAX_CONTENT_BYTES, DEFAULT_MAX_DIFF_BYTES, DEFAULT_TEXT_EXTENSIONS
from driftguard.core.errors import ConfigError
from driftguard.core.models import RetentionPolicy
from driftguard.core.scanner import DEFAULT_MAX_FILE_SIZE, DEFAULT_PROGRESS_INTERVAL, normalize_extension
from driftguard.core.storage import DEFAULT_BATCH_SIZE

logger = logging.getLogger(__name__)

DB_PATH_ENV = "DRIFTGUARD_DB_PATH"
MAX_FILE_SIZE_CEILING = 100 * 1024 * 1024

DEFAULT_EXCLUDE_PATTERNS = ["*/cache/*", "*/logs/*", "*/node_modules/*", "*/.git/*"]


def _int(section: dict, key: str, default: int) -> int:
    value = section.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from e


def _validate(config: dict[str, Any]) -> None:
    if config["retention_tier2_days"] < 1:
        raise ConfigError("retention.tier2_days must be at least 1")
    if config["retention_tier3_days"] <= config["retention_tier2_days"]:
        raise ConfigError("retention.tier3_days must be greater than retention.tier2_days")
    if config["log_tier2_days"] < 1:
        raise ConfigError("retention.log_tier2_days must be at least 1")
    if config["log_tier3_days"] <= config["log_tier2_days"]:
        raise ConfigError("retention.log_tier3_days must be greater than retention.log_tier2_days")
    if not 1 <= config["max_file_size"] <= MAX_FILE_SIZE_CEILING:
        raise ConfigError(f"scanning.max_file_size must be between 1 and {MAX_FILE_SIZE_CEILING} bytes")
    if config["batch_size"] < 1:
        raise ConfigError("scanning.batch_size must be at least 1")
    if config["progress_interval"] < 1:
        raise ConfigError("scanning.progress_interval must be at least 1")
    if config["retention_interval_hours"] <= 0:
        raise ConfigError("retention.interval_hours must be positive")
    if config["cache_ttl_hours"] < 1:
        raise ConfigError("cache.ttl_hours must be at least 1")


def build_config(raw: dict[str, Any], root: Path) -> dict[str, Any]:
    """Apply defaults to a parsed YAML mapping and validate it."""
    scanning = raw.get("scanning") or {}
    cache = raw.get("cache") or {}
    diffs = raw.get("diffs") or {}
    retention = raw.get("retention") or {}
    storage = raw.get("storage") or {}
    alerts = raw.get("alerts") or {}

    def resolve(p: str) -> Path:
        path_obj = Path(p)
        return (root / path_obj).resolve() if not path_obj.is_absolute() else path_obj.resolve()

    extensions = [normalize_extension(str(e)) for e in scanning.get("extensions") or [] if str(e).strip()]
    text_extensions = diffs.get("text_extensions") or list(DEFAULT_TEXT_EXTENSIONS)
    try:
        interval_hours = float(retention.get("interval_hours", 6))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"retention.interval_hours must be a number, got {retention.get('interval_hours')!r}") from e

    database = os.environ.get(DB_PATH_ENV, "").strip() or storage.get("database", "./data/driftguard.db")

    config = {
        "project_root": root,
        "scan_root": resolve(scanning.get("root", ".")),
        "extensions": extensions,
        "exclude_patterns": [str(p) for p in scanning.get("exclude_patterns", DEFAULT_EXCLUDE_PATTERNS) or []],
        "max_file_size": _int(scanning, "max_file_size", DEFAULT_MAX_FILE_SIZE),
        "progress_interval": _int(scanning, "progress_interval", DEFAULT_PROGRESS_INTERVAL),
        "batch_size": _int(scanning, "batch_size", DEFAULT_BATCH_SIZE),
        "cache_ttl_hours": _int(cache, "ttl_hours", DEFAULT_TTL_HOURS),
        "cache_max_entries": max(1, _int(cache, "max_entries", MAX_ENTRIES)),
        "max_diff_bytes": max(1024, _int(diffs, "max_diff_bytes", DEFAULT_MAX_DIFF_BYTES)),
        "max_content_bytes": max(1, _int(diffs, "max_content_bytes", DEFAULT_MAX_CONTENT_BYTES)),
        "text_extensions": tuple(normalize_extension(str(e)) for e in text_extensions),
        "content_retention_limit": max(1, _int(diffs, "content_retention_limit", DEFAULT_RETENTION_LIMIT)),
        "retention_tier2_days": _int(retention, "tier2_days", 30),
        "retention_tier3_days": _int(retention, "tier3_days", 90),
        "keep_baseline": bool(retention.get("keep_baseline", True)),
        "log_tier2_days": _int(retention, "log_tier2_days", 30),
        "log_tier3_days": _int(retention, "log_tier3_days", 90),
        "retention_interval_hours": interval_hours,
        "velocity_log_days": max(1, _int(retention, "velocity_log_days", 30)),
        "database_path": resolve(database),
        "alert_log_path": resolve(alerts.get("log_path", "./logs/alerts.log")),
        "console_alerts": bool(alerts.get("console_alerts", True)),
        "rules": list(raw.get("rules") or []),
    }
    _validate(config)
    return config


def load_config(config_path: Path, project_root: Optional[Path] = None) -> dict[str, Any]:
    """
    Load YAML config and resolve paths relative to project_root.

    Args:
        config_path: Path to config.yaml.
        project_root: Base for relative paths; defaults to the config file's directory.

    Returns:
        Config dict with resolved paths and defaults applied.

    Raises:
        FileNotFoundError: config_path does not exist.
        ConfigError: a value is out of range or malformed.
    """
    path = Path(config_path).resolve()
    if not path.is_file():
        raise FileNotFoundError(f"Config not found: {path}")

    root = project_root or path.parent
    with open(path, encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Top level of {path} must be a mapping")

    config = build_config(raw, Path(root).resolve())
    logger.debug("Loaded config from %s (database %s)", path, config["database_path"])
    return config


def retention_policy_from_config(config: dict[str, Any]) -> RetentionPolicy:
    return RetentionPolicy(
        tier2_days=config["retention_tier2_days"],
        tier3_days=config["retention_tier3_days"],
        keep_baseline=config["keep_baseline"],
        log_tier2_days=config["log_tier2_days"],
        log_tier3_days=config["log_tier3_days"],
    )
