"""Configuration loader for provctl.

This module centralises the logic for reading configuration values from
multiple sources, in increasing order of precedence:

1. Built-in defaults.
2. ``/etc/provctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PROVCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PROVCTL_SECRETS__BACKEND=registry
    export PROVCTL_LOCK_TIMEOUT=10

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
import secrets
import socket
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load provctl configuration. Install with "
        "`pip install provctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .models import DatabaseKind, FilestoreKind
from .providers.secrets import DEFAULT_SECRET_NAME_TEMPLATE

ENV_PREFIX = "PROVCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_SECRET_BACKENDS = {"aws", "registry"}
KNOWN_DATABASE_KINDS = {kind.value for kind in DatabaseKind}
KNOWN_FILESTORE_KINDS = {kind.value for kind in FilestoreKind}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RecoveryPolicy:
    """Installation configurations the recovery workflow accepts."""

    allowed_databases: tuple[str, ...] = (DatabaseKind.MULTITENANT_RDS_POSTGRES.value,)
    allowed_filestores: tuple[str, ...] = (
        FilestoreKind.BIFROST.value,
        FilestoreKind.MULTITENANT_AWS_S3.value,
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "allowed_databases": list(self.allowed_databases),
            "allowed_filestores": list(self.allowed_filestores),
        }


@dataclass(frozen=True)
class SecretsConfig:
    """Secret store selection."""

    backend: str = "aws"
    region: str | None = None
    name_template: str = DEFAULT_SECRET_NAME_TEMPLATE

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "backend": self.backend,
            "region": self.region,
            "name_template": self.name_template,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for provctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    owner_id: str
    recovery: RecoveryPolicy
    secrets: SecretsConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "owner_id": self.owner_id,
            "recovery": self.recovery.to_dict(),
            "secrets": self.secrets.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/provctl/config.yml",
    "state_dir": "/var/lib/provctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/provctl",
    "runtime_dir": "/run/provctl",
    "lock_timeout": 30.0,
    "owner_id": None,  # generated per process when absent
    "recovery": {
        "allowed_databases": [DatabaseKind.MULTITENANT_RDS_POSTGRES.value],
        "allowed_filestores": [
            FilestoreKind.BIFROST.value,
            FilestoreKind.MULTITENANT_AWS_S3.value,
        ],
    },
    "secrets": {
        "backend": "aws",
        "region": None,
        "name_template": DEFAULT_SECRET_NAME_TEMPLATE,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


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


def generate_owner_id() -> str:
    """Return a token that distinguishes this process as a lock owner."""
    return f"{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(4)}"


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

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    owner_id = raw.get("owner_id")
    if owner_id is not None and (
        isinstance(owner_id, bool) or not isinstance(owner_id, (str, int))
    ):
        raise ConfigError("owner_id must be a string or null.")

    recovery = raw.get("recovery")
    if recovery is not None:
        recovery_map = _as_dict(recovery, "recovery")
        unknown = set(recovery_map.keys()) - {"allowed_databases", "allowed_filestores"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown recovery configuration keys: {joined}.")
        _validate_kinds(
            recovery_map.get("allowed_databases"),
            "recovery.allowed_databases",
            KNOWN_DATABASE_KINDS,
        )
        _validate_kinds(
            recovery_map.get("allowed_filestores"),
            "recovery.allowed_filestores",
            KNOWN_FILESTORE_KINDS,
        )

    secrets_value = raw.get("secrets")
    if secrets_value is not None:
        secrets_map = _as_dict(secrets_value, "secrets")
        unknown = set(secrets_map.keys()) - {"backend", "region", "name_template"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown secrets configuration keys: {joined}.")
        backend = str(secrets_map.get("backend", "aws"))
        if backend not in ALLOWED_SECRET_BACKENDS:
            allowed = ", ".join(sorted(ALLOWED_SECRET_BACKENDS))
            raise ConfigError(f"Unsupported secrets backend '{backend}'. Allowed: {allowed}.")
        template = secrets_map.get("name_template")
        if template is not None and "{installation_id}" not in str(template):
            raise ConfigError(
                "secrets.name_template must contain the '{installation_id}' placeholder."
            )


def _validate_kinds(value: object, label: str, known: set[str]) -> None:
    if value is None:
        return
    entries = _as_sequence(value, label)
    if not entries:
        raise ConfigError(f"{label} must list at least one kind.")
    unknown = {str(entry) for entry in entries} - known
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigError(f"Unknown kinds in {label}: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    owner_value = raw.get("owner_id")
    owner_id = str(owner_value).strip() if owner_value else ""
    if not owner_id:
        owner_id = generate_owner_id()

    recovery_mapping = _as_dict(raw.get("recovery"), "recovery")
    default_policy = RecoveryPolicy()
    databases = recovery_mapping.get("allowed_databases")
    filestores = recovery_mapping.get("allowed_filestores")
    recovery = RecoveryPolicy(
        allowed_databases=(
            tuple(str(item) for item in _as_sequence(databases, "recovery.allowed_databases"))
            if databases is not None
            else default_policy.allowed_databases
        ),
        allowed_filestores=(
            tuple(str(item) for item in _as_sequence(filestores, "recovery.allowed_filestores"))
            if filestores is not None
            else default_policy.allowed_filestores
        ),
    )

    secrets_mapping = _as_dict(raw.get("secrets"), "secrets")
    region_value = secrets_mapping.get("region")
    secrets_config = SecretsConfig(
        backend=str(secrets_mapping.get("backend", "aws")),
        region=str(region_value) if region_value else None,
        name_template=str(secrets_mapping.get("name_template") or DEFAULT_SECRET_NAME_TEMPLATE),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        owner_id=owner_id,
        recovery=recovery,
        secrets=secrets_config,
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, str):
        # Allow comma-separated strings from environment variables.
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


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
    "RecoveryPolicy",
    "SecretsConfig",
    "generate_owner_id",
    "load_config",
]
