"""State registry helpers tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from provctl.state import (
    INSTALLATIONS_FILE,
    MULTITENANT_DATABASES_FILE,
    StateRegistry,
    StateRegistryError,
)


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read(INSTALLATIONS_FILE, default={"installations": []})

    assert result == {"installations": []}


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path)
    payload = {"installations": [{"id": "inst-1"}]}

    registry.write(INSTALLATIONS_FILE, payload)

    path = tmp_path / INSTALLATIONS_FILE
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640

    loaded = registry.read(INSTALLATIONS_FILE)
    assert loaded == payload


def test_write_leaves_no_temporary_files(tmp_path: Path) -> None:
    """Atomic writes clean up their temporary file."""
    registry = StateRegistry(tmp_path)

    registry.write_collection(INSTALLATIONS_FILE, [{"id": "inst-1"}])

    assert sorted(p.name for p in tmp_path.iterdir()) == [INSTALLATIONS_FILE]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    path = tmp_path / INSTALLATIONS_FILE
    path.write_text("::: not yaml :::\n")

    with pytest.raises(StateRegistryError):
        registry.read(INSTALLATIONS_FILE)


def test_read_collection_defaults_to_empty(tmp_path: Path) -> None:
    """Collections read as empty lists when the file is missing."""
    registry = StateRegistry(tmp_path)

    assert registry.read_collection(MULTITENANT_DATABASES_FILE) == []


def test_read_collection_rejects_non_list(tmp_path: Path) -> None:
    """A collection key holding a scalar is reported."""
    registry = StateRegistry(tmp_path)
    (tmp_path / INSTALLATIONS_FILE).write_text("installations: nope\n")

    with pytest.raises(StateRegistryError):
        registry.read_collection(INSTALLATIONS_FILE)


def test_find_returns_entry_by_id(tmp_path: Path) -> None:
    """Entries are located by their id field."""
    registry = StateRegistry(tmp_path)
    registry.write_collection(
        INSTALLATIONS_FILE, [{"id": "inst-1", "dns": "a"}, {"id": "inst-2", "dns": "b"}]
    )

    assert registry.find(INSTALLATIONS_FILE, "inst-2") == {"id": "inst-2", "dns": "b"}
    assert registry.find(INSTALLATIONS_FILE, "missing") is None


def test_unknown_registry_file_rejected(tmp_path: Path) -> None:
    """Collection helpers only accept known registry files."""
    registry = StateRegistry(tmp_path)

    with pytest.raises(StateRegistryError):
        registry.read_collection("ports.yml")
