# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration loading for relay.

Precedence (first match wins):
1. Explicit path (--config)
2. $RELAY_CONFIG
3. ./relay.yaml
4. ~/.relay/config.yaml
5. Built-in defaults
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


logger = logging.getLogger(__name__)

# Packaged unit and workflow definitions
DEFINITIONS_DIR = Path(__file__).parent / "definitions"


class ConfigError(Exception):
    """Raised when a config file is not valid."""
    pass


@dataclass
class RelayConfig:
    """Effective relay settings."""
    units_dir: Path = DEFINITIONS_DIR / "units"
    workflows_dir: Path = DEFINITIONS_DIR / "workflows"
    artifacts_dir: Path = Path("~/.relay/artifacts")
    events_log: Path = Path("~/.relay/events.jsonl")
    max_workers: int = 4
    default_timeout_minutes: int = 30
    retention_days: int = 7
    log_level: str = "INFO"
    source: Optional[Path] = None


_PATH_KEYS = ("units_dir", "workflows_dir", "artifacts_dir", "events_log")
_INT_KEYS = ("max_workers", "default_timeout_minutes", "retention_days")


def _candidate_paths() -> list:
    """Config search paths after an explicit path, in priority order."""
    paths = []
    env_path = os.environ.get("RELAY_CONFIG")
    if env_path:
        paths.append(Path(env_path))
    paths.append(Path("relay.yaml"))
    paths.append(Path("~/.relay/config.yaml").expanduser())
    return paths


def find_config(config_path: Optional[str] = None) -> Optional[Path]:
    """
    Locate the config file to use.

    Args:
        config_path: Explicit path; must exist if given

    Returns:
        Path of the config file, or None to use defaults

    Raises:
        FileNotFoundError: If an explicit path does not exist
    """
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return path
    for path in _candidate_paths():
        if path.exists():
            return path
    return None


def _parse(data: Dict[str, Any], base_dir: Path) -> Dict[str, Any]:
    known = {f.name for f in fields(RelayConfig)} - {"source"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    parsed: Dict[str, Any] = {}
    for key, value in data.items():
        if key in _PATH_KEYS:
            path = Path(str(value)).expanduser()
            # Relative paths are relative to the config file
            parsed[key] = path if path.is_absolute() else base_dir / path
        elif key in _INT_KEYS:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{key} must be a positive integer, got: {value!r}")
            parsed[key] = value
        elif key == "log_level":
            level = str(value).upper()
            if level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
                raise ConfigError(f"Invalid log_level: {value}")
            parsed[key] = level
    return parsed


def load_config(config_path: Optional[str] = None) -> RelayConfig:
    """
    Load relay configuration.

    Args:
        config_path: Optional explicit config file path

    Returns:
        RelayConfig with file values applied over defaults

    Raises:
        FileNotFoundError: If an explicit path does not exist
        ConfigError: If the file is not a valid relay config
    """
    path = find_config(config_path)
    if path is None:
        logger.debug("No config file found, using defaults")
        return RelayConfig()

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a YAML mapping")

    logger.debug(f"Loaded config from {path}")
    config = RelayConfig(**_parse(data, path.parent), source=path)
    config.artifacts_dir = config.artifacts_dir.expanduser()
    config.events_log = config.events_log.expanduser()
    return config
