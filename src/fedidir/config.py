"""Configuration loader for fedidir.

Configuration values are resolved from several layered sources:

1. Built-in defaults.
2. ``/etc/fedidir/config.yml`` (or an override path).
3. Environment variables prefixed with ``FEDIDIR_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export FEDIDIR_PROBE__REQUEST_TIMEOUT=5
    export FEDIDIR_LOCK_TIMEOUT=10
    export FEDIDIR_DIRECTORY__ACCESS_TOKEN=...

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` that are handed to the adapters explicitly at startup.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load fedidir configuration. Install with "
        "`pip install fedidir` or ensure PyYAML>=6.0 is available."
    ) from exc

from . import __version__

ENV_PREFIX = "FEDIDIR_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

MAX_REQUEST_TIMEOUT = 60.0


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DirectoryAccountConfig:
    """The directory's own account, used to deliver verification challenges.

    ``base_url`` and ``access_token`` are required before onboarding can
    start; :meth:`require` enforces that. ``verify_url`` is the public
    endpoint that completes a registration once the administrator follows
    the link embedded in the challenge.
    """

    name: str = "FurryFediverse"
    base_url: str | None = None
    access_token: str | None = None
    verify_url: str = "https://furryfediverse.org/api/instances/verify"

    def require(self) -> None:
        """Raise :class:`ConfigError` when fields needed for messaging are unset."""
        missing = [
            label
            for label, value in (
                ("directory.base_url", self.base_url),
                ("directory.access_token", self.access_token),
            )
            if not value
        ]
        if missing:
            joined = ", ".join(missing)
            raise ConfigError(f"Missing required configuration: {joined}.")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (secrets masked)."""
        return {
            "name": self.name,
            "base_url": self.base_url,
            "access_token": "***" if self.access_token else None,
            "verify_url": self.verify_url,
        }


@dataclass(frozen=True)
class ProbeConfig:
    """Outbound request settings for instance probes."""

    request_timeout: float = 10.0
    user_agent: str = f"fedidir/{__version__}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"request_timeout": self.request_timeout, "user_agent": self.user_agent}


@dataclass(frozen=True)
class SweepConfig:
    """Reconciliation sweep tunables."""

    max_concurrency: int = 8

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_concurrency": self.max_concurrency}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for fedidir."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    directory: DirectoryAccountConfig
    probe: ProbeConfig
    sweep: SweepConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "directory": self.directory.to_dict(),
            "probe": self.probe.to_dict(),
            "sweep": self.sweep.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/fedidir/config.yml",
    "state_dir": "/var/lib/fedidir",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/fedidir",
    "runtime_dir": "/run/fedidir",
    "lock_timeout": 30.0,
    "directory": {
        "name": "FurryFediverse",
        "base_url": None,
        "access_token": None,
        "verify_url": "https://furryfediverse.org/api/instances/verify",
    },
    "probe": {
        "request_timeout": 10.0,
        "user_agent": None,
    },
    "sweep": {
        "max_concurrency": 8,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "directory": {"name", "base_url", "access_token", "verify_url"},
    "probe": {"request_timeout", "user_agent"},
    "sweep": {"max_concurrency"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    directory_map = _as_dict(raw.get("directory"), "directory")
    base_url = directory_map.get("base_url")
    if base_url is not None:
        text = str(base_url).strip()
        if text and not text.startswith(("https://", "http://")):
            raise ConfigError("directory.base_url must be an http(s) URL.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    directory_mapping = _as_dict(raw.get("directory"), "directory")
    directory = DirectoryAccountConfig(
        name=_optional_str(directory_mapping.get("name"), "directory.name") or "FurryFediverse",
        base_url=_optional_url(directory_mapping.get("base_url"), "directory.base_url"),
        access_token=_optional_str(
            directory_mapping.get("access_token"), "directory.access_token"
        ),
        verify_url=_optional_url(directory_mapping.get("verify_url"), "directory.verify_url")
        or DirectoryAccountConfig.verify_url,
    )

    probe_mapping = _as_dict(raw.get("probe"), "probe")
    request_timeout = _expect_positive_float(
        probe_mapping.get("request_timeout"), "probe.request_timeout", default=10.0
    )
    if request_timeout > MAX_REQUEST_TIMEOUT:
        raise ConfigError(
            f"probe.request_timeout must not exceed {MAX_REQUEST_TIMEOUT:g} seconds."
        )
    probe = ProbeConfig(
        request_timeout=request_timeout,
        user_agent=_optional_str(probe_mapping.get("user_agent"), "probe.user_agent")
        or ProbeConfig.user_agent,
    )

    sweep_mapping = _as_dict(raw.get("sweep"), "sweep")
    max_concurrency = _expect_int(
        sweep_mapping.get("max_concurrency"), "sweep.max_concurrency", default=8
    )
    if max_concurrency < 1:
        raise ConfigError("sweep.max_concurrency must be at least 1.")

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        directory=directory,
        probe=probe,
        sweep=SweepConfig(max_concurrency=max_concurrency),
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_str(value: object | None, label: str) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    text = str(value).strip()
    return text or None


def _optional_url(value: object | None, label: str) -> str | None:
    text = _optional_str(value, label)
    if text is None:
        return None
    return text.rstrip("/")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
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


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
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


__all__ = [
    "AppConfig",
    "ConfigError",
    "DirectoryAccountConfig",
    "ProbeConfig",
    "SweepConfig",
    "load_config",
]
