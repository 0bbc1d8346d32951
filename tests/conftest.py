"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from provctl.locking import LockManager
from provctl.state import (
    CLUSTER_INSTALLATIONS_FILE,
    INSTALLATIONS_FILE,
    MULTITENANT_DATABASES_FILE,
    SECRETS_FILE,
    StateRegistry,
)
from provctl.store import RegistryStore


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def seed_recovery_scenario(registry: StateRegistry) -> None:
    """Write the deleted installation inst-1 with ci-1 and database db-1."""
    registry.write_collection(
        INSTALLATIONS_FILE,
        [
            {
                "id": "inst-1",
                "dns": "tenant.example.com",
                "state": "deleted",
                "database": "aws-multitenant-rds-postgres",
                "filestore": "bifrost",
                "delete_at": 1700000000000,
            },
            {
                "id": "inst-2",
                "dns": "other.example.com",
                "state": "stable",
                "database": "aws-multitenant-rds-postgres",
                "filestore": "bifrost",
                "delete_at": 0,
            },
        ],
    )
    registry.write_collection(
        CLUSTER_INSTALLATIONS_FILE,
        [
            {
                "id": "ci-1",
                "installation_id": "inst-1",
                "cluster_id": "cluster-a",
                "state": "deleted",
                "delete_at": 1700000000000,
            },
            {
                "id": "ci-2",
                "installation_id": "inst-2",
                "cluster_id": "cluster-a",
                "state": "stable",
                "delete_at": 0,
            },
        ],
    )
    registry.write_collection(
        MULTITENANT_DATABASES_FILE,
        [
            {
                "id": "db-1",
                "database_type": "aws-multitenant-rds-postgres",
                "installations": ["inst-2"],
                "lock_acquired_by": None,
                "lock_acquired_at": 0,
            }
        ],
    )
    registry.write_collection(
        SECRETS_FILE,
        [{"id": "rds-multitenant-inst-1", "deleted_at": 1700000000000}],
    )


@pytest.fixture
def registry(tmp_path: Path) -> StateRegistry:
    """Empty state registry rooted in the test's temporary directory."""
    state = StateRegistry(tmp_path / "registry")
    state.ensure_root()
    return state


@pytest.fixture
def locks(tmp_path: Path) -> LockManager:
    """Lock manager with a short timeout."""
    return LockManager(tmp_path / "run", default_timeout=1.0)


@pytest.fixture
def store(registry: StateRegistry, locks: LockManager) -> RegistryStore:
    """Registry-backed datastore seeded with the recovery scenario."""
    seed_recovery_scenario(registry)
    return RegistryStore(registry=registry, locks=locks)
