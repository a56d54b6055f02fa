"""Layered configuration for labctl.

Settings are resolved from four layers; a later layer replaces individual keys
of the earlier ones rather than whole sections:

1. The built-in :data:`DEFAULTS`.
2. The YAML config file (``/etc/labctl/config.yml`` unless ``--config-file``
   or ``LABCTL_CONFIG_FILE`` points elsewhere). A missing file is not an error.
3. ``LABCTL_*`` environment variables. ``__`` separates nested keys::

       export LABCTL_LOCK_TIMEOUT=10
       export LABCTL_RUNNER__MAX_WORKERS=8

   Values are read with PyYAML, so ``8`` is an integer and ``null`` is None.
4. Overrides passed by the CLI (for example ``--lock-timeout``).
"""
from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from pathlib import Path

import yaml

ENV_PREFIX = "LABCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be read or fails validation."""


@dataclass(frozen=True)
class RunnerConfig:
    """Defaults applied when running provisioning steps."""

    shell: str = "/bin/sh"
    max_workers: int = 4
    default_retries: int = 0
    retry_delay: float = 2.0
    max_retry_delay: float = 60.0
    default_timeout: float | None = 1800.0

    def to_dict(self) -> dict[str, object]:
        """Return the settings keyed by field name."""
        return {item.name: getattr(self, item.name) for item in fields(self)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for labctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    runner: RunnerConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable view, paths rendered as strings."""
        data: dict[str, object] = {key: str(getattr(self, key)) for key in PATH_SETTINGS}
        data["lock_timeout"] = self.lock_timeout
        data["runner"] = self.runner.to_dict()
        return data


PATH_SETTINGS = (
    "config_file",
    "state_dir",
    "registry_dir",
    "logs_dir",
    "runtime_dir",
    "templates_dir",
)

DEFAULTS: dict[str, object] = {
    "config_file": "/etc/labctl/config.yml",
    "state_dir": "/var/lib/labctl",
    "registry_dir": None,  # <state_dir>/registry
    "logs_dir": "/var/log/labctl",
    "runtime_dir": "/run/labctl",
    "templates_dir": "/etc/labctl/templates",
    "lock_timeout": 30.0,
    "runner": RunnerConfig().to_dict(),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Resolve every configuration layer into an :class:`AppConfig`.

    Raises :class:`ConfigError` for unreadable files, unknown keys and values
    of the wrong type or range.
    """
    environ = os.environ if env is None else env
    if config_file:
        path = Path(config_file)
    elif environ.get(CONFIG_ENV_VAR):
        path = Path(environ[CONFIG_ENV_VAR])
    else:
        path = Path(str(DEFAULTS["config_file"]))

    merged: Mapping[str, object] = DEFAULTS
    for layer in (_read_config_file(path), _environment_layer(environ), overrides or {}):
        merged = _merge(merged, layer)
    return _build(dict(merged, config_file=str(path)))


def _read_config_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Unable to read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, str(path))


def _environment_layer(env: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for key, raw in env.items():
        if not key.startswith(ENV_PREFIX) or key == CONFIG_ENV_VAR:
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX) :].split("__") if part]
        if not path:
            continue
        node = layer
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{key} nests below the scalar setting '{part}'.")
            node = child
        if isinstance(node.get(path[-1]), dict):
            raise ConfigError(f"{key} replaces the section '{'.'.join(path)}' with a scalar.")
        node[path[-1]] = _coerce(raw)
    return layer


def _coerce(raw: str) -> object:
    try:
        return yaml.safe_load(raw.strip())
    except yaml.YAMLError:
        return raw.strip()


def _merge(base: Mapping[str, object], layer: Mapping[str, object]) -> dict[str, object]:
    merged = dict(base)
    for key, value in layer.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged


def _build(raw: Mapping[str, object]) -> AppConfig:
    unknown = sorted(set(raw) - DEFAULTS.keys())
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}.")

    state_dir = _path(raw.get("state_dir"), "state_dir")
    registry_dir = raw.get("registry_dir")
    return AppConfig(
        config_file=_path(raw.get("config_file"), "config_file"),
        state_dir=state_dir,
        registry_dir=(
            _path(registry_dir, "registry_dir") if registry_dir else state_dir / "registry"
        ),
        logs_dir=_path(raw.get("logs_dir"), "logs_dir"),
        runtime_dir=_path(raw.get("runtime_dir"), "runtime_dir"),
        templates_dir=_path(raw.get("templates_dir"), "templates_dir"),
        lock_timeout=_positive_float(raw.get("lock_timeout"), "lock_timeout"),
        runner=_build_runner(raw.get("runner")),
    )


def _build_runner(raw: object) -> RunnerConfig:
    section = _as_dict(raw, "runner")
    unknown = sorted(set(section) - _RUNNER_PARSERS.keys())
    if unknown:
        raise ConfigError(f"Unknown runner configuration keys: {', '.join(unknown)}.")

    values: dict[str, object] = {}
    for key, parse in _RUNNER_PARSERS.items():
        if key not in section:
            continue
        value = section[key]
        if value is None:
            # null disables the timeout; for other keys it means "use the default".
            if key == "default_timeout":
                values[key] = None
            continue
        values[key] = parse(value, f"runner.{key}")
    return RunnerConfig(**values)  # type: ignore[arg-type]


# -- value parsers -------------------------------------------------------


def _number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be a number. Got {type(value).__name__}.")


def _integer(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _positive_float(value: object, label: str) -> float:
    if value is None:
        raise ConfigError(f"{label} must be set.")
    number = _number(value, label)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _non_negative_float(value: object, label: str) -> float:
    number = _number(value, label)
    if number < 0:
        raise ConfigError(f"{label} must be non-negative. Got {number}.")
    return number


def _worker_count(value: object, label: str) -> int:
    count = _integer(value, label)
    if count < 1:
        raise ConfigError(f"{label} must be at least 1.")
    return count


def _retry_count(value: object, label: str) -> int:
    count = _integer(value, label)
    if count < 0:
        raise ConfigError(f"{label} must be non-negative.")
    return count


def _shell(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    return value


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, os.PathLike)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"{label} must be a filesystem path. Got {value!r}.")


def _as_dict(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


_RUNNER_PARSERS: dict[str, Callable[[object, str], object]] = {
    "shell": _shell,
    "max_workers": _worker_count,
    "default_retries": _retry_count,
    "retry_delay": _non_negative_float,
    "max_retry_delay": _non_negative_float,
    "default_timeout": _positive_float,
}


__all__ = [
    "AppConfig",
    "ConfigError",
    "RunnerConfig",
    "load_config",
]
