"""
Engine configuration.

The configuration is an optional YAML mapping, for example:

    include_dir: lib
    strict_function_arity: true
    fail_fast: false
    max_call_depth: 64
    python_enabled: true
    log_level: INFO

Relative directories are resolved against the directory of the configuration
file. A missing file gives the defaults.
"""

import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from imagemath.imagemath_errors import ConfigError

logger = logging.getLogger(__name__)

_yaml = YAML(typ="safe")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class EngineConfig:
    include_dir: Path | None = None
    working_dir: Path | None = None
    strict_function_arity: bool = True
    fail_fast: bool = False
    max_call_depth: int = 64
    python_enabled: bool = True
    log_level: str = "WARNING"

    def with_overrides(self, **changes: Any) -> "EngineConfig":
        """A copy with the given fields replaced; None values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> "EngineConfig":
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(k for k in data if k not in known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        values: dict[str, Any] = {}
        for key, value in data.items():
            if value is None:
                continue
            if key in ("include_dir", "working_dir"):
                path = Path(str(value))
                values[key] = base_dir / path if base_dir is not None and not path.is_absolute() else path
            elif key in ("strict_function_arity", "fail_fast", "python_enabled"):
                if not isinstance(value, bool):
                    raise ConfigError(f"'{key}' must be true or false, got {value!r}")
                values[key] = value
            elif key == "max_call_depth":
                if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                    raise ConfigError(f"'max_call_depth' must be a positive integer, got {value!r}")
                values[key] = value
            else:
                level = str(value).upper()
                if level not in _LOG_LEVELS:
                    raise ConfigError(f"'log_level' must be one of {', '.join(_LOG_LEVELS)}, got {value!r}")
                values[key] = level
        return cls(**values)


def _read_yaml_map(path: Path) -> dict[str, Any]:
    try:
        raw = _yaml.load(path.read_text(encoding="utf-8"))
    except YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration must be a YAML mapping: {path}")
    return raw


def load_config(path: str | Path | None) -> EngineConfig:
    """Loads an EngineConfig from a YAML file.

    Raises:
        ConfigError: If the file is not a mapping or holds unknown or invalid keys.
    """
    if path is None:
        return EngineConfig()
    path = Path(path)
    if not path.is_file():
        logger.debug("No configuration file at %s, using defaults", path)
        return EngineConfig()
    config = EngineConfig.from_dict(_read_yaml_map(path), base_dir=path.parent)
    logger.debug("Loaded configuration from %s", path)
    return config


__all__ = ["EngineConfig", "load_config"]
