"""Runtime configuration for the ingestion service.

Environment variables take precedence over YAML config, which takes
precedence over built-in defaults.

Usage:
    from nodelog.config import load_config

    cfg = load_config()
    print(cfg.log_dir, cfg.main_log_name)

Boolean variables are enabled only by the literal string "true", matching
how SKIP_HISTORICAL_LOGS has always been read.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).parent / "runtime.yaml"
_cached_config: Optional[Dict[str, Any]] = None

CONFIG_PATH_ENV = "NODELOG_CONFIG"


@dataclass(frozen=True)
class IngestConfig:
    """Resolved settings for one ingestion process."""

    mongo_uri: str
    mongo_database: str
    log_dir: Path
    main_log_name: str
    skip_historical: bool
    gap_threshold_seconds: float
    strict_parse: bool
    persist_tail_offset: bool
    watch_polling: bool
    log_level: str

    @property
    def main_log_path(self) -> Path:
        return self.log_dir / self.main_log_name


# env var -> (yaml section, yaml key)
ENV_OVERRIDES = {
    "MONGO_URI": ("mongo", "uri"),
    "MONGO_DATABASE": ("mongo", "database"),
    "LOG_DIR": ("logs", "dir"),
    "MAIN_LOG_NAME": ("logs", "main_name"),
    "SKIP_HISTORICAL_LOGS": ("logs", "skip_historical"),
    "GAP_THRESHOLD_SECONDS": ("ingest", "gap_threshold_seconds"),
    "STRICT_PARSE": ("ingest", "strict_parse"),
    "PERSIST_TAIL_OFFSET": ("ingest", "persist_tail_offset"),
    "WATCH_POLLING": ("ingest", "watch_polling"),
    "NODELOG_LOG_LEVEL": ("logging", "level"),
}


def _default_config() -> Dict[str, Any]:
    """Return default configuration if runtime.yaml doesn't exist."""
    return {
        "version": "1.0",
        "mongo": {"uri": "mongodb://localhost:27017", "database": "node_logs"},
        "logs": {"dir": "./logs", "main_name": "stdout-xx.txt", "skip_historical": False},
        "ingest": {
            "gap_threshold_seconds": 5.0,
            "strict_parse": False,
            "persist_tail_offset": False,
            "watch_polling": False,
        },
        "logging": {"level": "INFO"},
    }


def _load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load the YAML configuration merged over defaults, with caching."""
    global _cached_config
    if config_path is None and _cached_config is not None:
        return _cached_config

    path = config_path or _CONFIG_PATH
    merged = _default_config()
    if path.exists():
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
        for section, values in loaded.items():
            if isinstance(values, dict) and isinstance(merged.get(section), dict):
                merged[section].update(values)
            else:
                merged[section] = values
    elif config_path is not None:
        logger.warning("Config file %s not found, using defaults", path)

    if config_path is None:
        _cached_config = merged
    return merged


def reset_config() -> None:
    """Reset cached config (for testing)."""
    global _cached_config
    _cached_config = None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value) == "true"


def _as_float(value: Any, name: str, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s value %r, falling back to %s", name, value, default)
        return default


def load_config(
    environ: Optional[Mapping[str, str]] = None,
    config_path: Optional[Path] = None,
) -> IngestConfig:
    """Resolve configuration from environment, YAML and defaults.

    Args:
        environ: Environment mapping. Defaults to os.environ.
        config_path: YAML file to read. Defaults to $NODELOG_CONFIG, then
            the packaged runtime.yaml.

    Returns:
        The resolved IngestConfig.
    """
    env = os.environ if environ is None else environ
    if config_path is None and env.get(CONFIG_PATH_ENV):
        config_path = Path(env[CONFIG_PATH_ENV])

    config = _load_config(config_path)
    defaults = _default_config()
    values: Dict[str, Dict[str, Any]] = {
        section: {**defaults[section], **(config.get(section) or {})}
        for section in ("mongo", "logs", "ingest", "logging")
    }

    for env_name, (section, key) in ENV_OVERRIDES.items():
        if env_name in env:
            values[section][key] = env[env_name]

    default_threshold = defaults["ingest"]["gap_threshold_seconds"]

    return IngestConfig(
        mongo_uri=str(values["mongo"]["uri"]),
        mongo_database=str(values["mongo"]["database"]),
        log_dir=Path(str(values["logs"]["dir"])),
        main_log_name=str(values["logs"]["main_name"]),
        skip_historical=_as_bool(values["logs"]["skip_historical"]),
        gap_threshold_seconds=_as_float(
            values["ingest"]["gap_threshold_seconds"], "GAP_THRESHOLD_SECONDS", default_threshold
        ),
        strict_parse=_as_bool(values["ingest"]["strict_parse"]),
        persist_tail_offset=_as_bool(values["ingest"]["persist_tail_offset"]),
        watch_polling=_as_bool(values["ingest"]["watch_polling"]),
        log_level=str(values["logging"]["level"]).upper(),
    )
