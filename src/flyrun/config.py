"""
flyrun — runtime config loader.

File: src/flyrun/config.py

Purpose
- Load runner settings from defaults, a TOML file, ``FLYRUN_`` env vars, and
  explicit overrides.

What should be included in this file
- Precedence logic: overrides > env (FLYRUN_) > file > defaults.
- TOML loading via ``tomllib``.
- Deterministic environment variable mapping and coercion.
- ``temp_root`` normalization relative to the config file location.

Functional requirements
- Reject unknown keys and badly typed values with ``ConfigLoadError``.

Non-functional requirements
- Keep loading deterministic and reproducible.
"""

from __future__ import annotations

import json
import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Final, Literal

DEFAULT_CONFIG_FILE: Final[str] = "flyrun.toml"
ENV_PREFIX: Final[str] = "FLYRUN_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_LOG_FORMATS: Final[frozenset[str]] = frozenset({"json", "console"})

_ValueType = Literal["str", "optional_str", "bool", "float"]


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or values cannot be coerced."""


@dataclass(frozen=True, slots=True)
class RunnerConfig:
    """Effective settings for a ``CheckerRunner`` and its logging."""

    log_level: str = "INFO"
    log_format: str = "json"
    temp_root: str | None = None
    temp_prefix: str = "flyrun-"
    encoding: str = "utf-8"
    debug: bool = False
    await_superseded_exit: bool = False
    terminate_grace_seconds: float = 2.0

    def __post_init__(self) -> None:
        level = self.log_level.strip().upper() if isinstance(self.log_level, str) else ""
        if not isinstance(logging.getLevelName(level), int):
            raise ConfigLoadError(f"log_level: unknown level {self.log_level!r}")
        object.__setattr__(self, "log_level", level)

        log_format = self.log_format.strip().lower() if isinstance(self.log_format, str) else ""
        if log_format not in _LOG_FORMATS:
            allowed = ", ".join(sorted(_LOG_FORMATS))
            raise ConfigLoadError(f"log_format: expected one of: {allowed}")
        object.__setattr__(self, "log_format", log_format)

        if not isinstance(self.temp_prefix, str) or os.sep in self.temp_prefix:
            raise ConfigLoadError("temp_prefix: must be a string without path separators")
        try:
            "".encode(self.encoding)
        except (LookupError, TypeError) as exc:
            raise ConfigLoadError(f"encoding: unknown codec {self.encoding!r}") from exc
        if self.terminate_grace_seconds <= 0:
            raise ConfigLoadError("terminate_grace_seconds: must be > 0")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_VALUE_TYPES: Final[dict[str, _ValueType]] = {
    "log_level": "str",
    "log_format": "str",
    "temp_root": "optional_str",
    "temp_prefix": "str",
    "encoding": "str",
    "debug": "bool",
    "await_superseded_exit": "bool",
    "terminate_grace_seconds": "float",
}


def load_config(
    config_path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> RunnerConfig:
    """Load effective config with deterministic precedence: overrides > env > file > defaults."""

    resolved_path = _resolve_config_path(config_path)
    env_map = dict(os.environ if environ is None else environ)

    payload: dict[str, Any] = {}
    for source_name, layer in (
        (str(resolved_path), _load_toml_file(resolved_path, required=config_path is not None)),
        ("environment", _collect_env_overrides(env_map)),
        ("overrides", dict(overrides or {})),
    ):
        payload.update(_validate_layer(layer, source_name))

    temp_root = payload.get("temp_root")
    if isinstance(temp_root, str) and temp_root.strip():
        payload["temp_root"] = _normalize_one_path(temp_root, resolved_path.parent)

    return replace(RunnerConfig(), **payload)


def dump_effective_config(config: RunnerConfig) -> str:
    """Return deterministic JSON dump of the effective config."""

    return json.dumps(config.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    # Settings may live at the top level or under a [flyrun] table.
    nested = parsed.get("flyrun")
    if isinstance(nested, dict):
        return nested
    return parsed


def _validate_layer(layer: Mapping[str, object], source_name: str) -> dict[str, Any]:
    known = {item.name for item in fields(RunnerConfig)}
    unknown = sorted(key for key in layer if key not in known)
    if unknown:
        raise ConfigLoadError(f"{source_name}: unexpected fields: {unknown}")

    validated: dict[str, Any] = {}
    for key in sorted(layer):
        validated[key] = _check_type(layer[key], _VALUE_TYPES[key], f"{source_name}: {key}")
    return validated


def _check_type(value: object, value_type: _ValueType, path: str) -> object:
    if value_type == "optional_str":
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        value_type = "str"
    if value_type == "str" and isinstance(value, str):
        return value.strip()
    if value_type == "bool" and isinstance(value, bool):
        return value
    if value_type == "float" and isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    raise ConfigLoadError(f"{path} must be of type {value_type}, got {type(value).__name__}")


def _collect_env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key in sorted(_VALUE_TYPES):
        env_name = _env_name_for_key(key)
        raw = environ.get(env_name)
        if raw is None:
            continue
        overrides[key] = _coerce_env(raw, _VALUE_TYPES[key], env_name)
    return overrides


def _coerce_env(raw: str, value_type: _ValueType, env_name: str) -> object:
    value = raw.strip()
    if value_type in ("str", "optional_str"):
        return value
    if value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(f"{env_name} must be a boolean (true/false/1/0/yes/no/on/off)")


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    expanded = os.path.expandvars(raw.strip())
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    normalized = Path(os.path.normpath(str(candidate)))
    return normalized.as_posix()


def _env_name_for_key(key: str) -> str:
    return ENV_PREFIX + key.upper()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "RunnerConfig",
    "dump_effective_config",
    "load_config",
]
