"""TOML-based defaults for command line options.

Loads ~/.cloudpack/defaults.toml (global) and cloudpack.toml (project),
merges them, and exposes one table per concern. Command line flags that
are given always win over file values.
"""

from __future__ import annotations

import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from cloudpack.core.exceptions import ConfigurationError
from cloudpack.logging import LogConfig

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".cloudpack" / "defaults.toml"
PROJECT_CONFIG_NAME = "cloudpack.toml"
SECTIONS = ("aws", "install", "classifier", "certificate", "logging")


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    for name in SECTIONS:
        merged.setdefault(name, {})
        if not isinstance(merged[name], dict):
            raise ConfigurationError(f"[{name}] must be a table")
    return merged


def section(config: RawConfig, name: str) -> RawConfig:
    if name not in SECTIONS:
        raise KeyError(f"Unknown section '{name}'. Available: {', '.join(SECTIONS)}")
    return dict(config.get(name, {}))


def overlay(defaults: Mapping[str, Any], given: Mapping[str, Any]) -> RawConfig:
    """defaults updated with every given value that is not None."""
    return {**defaults, **{k: v for k, v in given.items() if v is not None}}


def log_config(config: RawConfig, **given: Any) -> LogConfig:
    raw = overlay(section(config, "logging"), given)
    try:
        return LogConfig(**raw)
    except TypeError as e:
        raise ConfigurationError(f"Invalid [logging] table: {e}") from e
