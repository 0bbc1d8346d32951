"""Helpers for interacting with the provctl state registry.

The registry directory (``/var/lib/provctl/registry`` by default) stores YAML
artifacts such as ``installations.yml`` and ``multitenant_databases.yml``.
Each file holds a single top-level key mapping to a list of records. Writes go
through a temporary file and an atomic rename so readers never observe a
partially written file.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage provctl state. Install with `pip install provctl`."
    ) from exc


INSTALLATIONS_FILE = "installations.yml"
CLUSTER_INSTALLATIONS_FILE = "cluster_installations.yml"
MULTITENANT_DATABASES_FILE = "multitenant_databases.yml"
SECRETS_FILE = "secrets.yml"

# Registry file name -> top-level collection key.
COLLECTIONS: dict[str, str] = {
    INSTALLATIONS_FILE: "installations",
    CLUSTER_INSTALLATIONS_FILE: "cluster_installations",
    MULTITENANT_DATABASES_FILE: "multitenant_databases",
    SECRETS_FILE: "secrets",
}


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Collection helpers -----------------------------------------------
    def read_collection(self, name: str) -> list[dict[str, Any]]:
        """Return the mapping entries stored under *name* (empty list if missing)."""
        key = _collection_key(name)
        value = self.read(name, default={key: []})
        if not isinstance(value, Mapping):
            raise StateRegistryError(
                f"Registry file {self.path_for(name)} must contain a mapping at the top level."
            )
        raw_entries = value.get(key, [])
        if raw_entries is None:
            return []
        if not isinstance(raw_entries, list):
            raise StateRegistryError(
                f"Registry file {self.path_for(name)} key '{key}' must be a list."
            )
        return [dict(entry) for entry in raw_entries if isinstance(entry, Mapping)]

    def write_collection(self, name: str, entries: Iterable[Mapping[str, object]]) -> None:
        """Persist *entries* under the collection key for *name*."""
        key = _collection_key(name)
        self.write(name, {key: [dict(entry) for entry in entries]})

    def find(self, name: str, record_id: str) -> dict[str, Any] | None:
        """Return the entry whose ``id`` equals *record_id*, if present."""
        normalized = record_id.strip()
        if not normalized:
            raise StateRegistryError("Record identifier must be a non-empty string.")
        for entry in self.read_collection(name):
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None


def _collection_key(name: str) -> str:
    try:
        return COLLECTIONS[name]
    except KeyError as exc:
        raise StateRegistryError(f"Unknown registry file '{name}'.") from exc


__all__ = [
    "CLUSTER_INSTALLATIONS_FILE",
    "COLLECTIONS",
    "INSTALLATIONS_FILE",
    "MULTITENANT_DATABASES_FILE",
    "SECRETS_FILE",
    "StateRegistry",
    "StateRegistryError",
]
