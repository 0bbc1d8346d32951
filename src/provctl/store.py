"""Datastore contract and its YAML registry implementation.

The recovery workflow only relies on the :class:`Datastore` protocol. Each
method is a single statement: it either applies completely or not at all.
Callers must not assume transactions spanning several statements.

:class:`RegistryStore` implements the protocol on top of the YAML
:class:`~provctl.state.StateRegistry`. Mutating statements hold the
inter-process lock for the affected registry file while they read, modify and
atomically rewrite it, which gives the compare-and-set semantics the
multi-tenant database lock depends on.
"""
from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from .locking import LockManager, LockTimeoutError
from .models import (
    ClusterInstallation,
    ClusterInstallationState,
    Installation,
    InstallationState,
    ModelError,
    MultitenantDatabase,
    get_millis,
)
from .state import (
    CLUSTER_INSTALLATIONS_FILE,
    INSTALLATIONS_FILE,
    MULTITENANT_DATABASES_FILE,
    StateRegistry,
    StateRegistryError,
)

LOGGER = logging.getLogger(__name__)

_RecordT = TypeVar("_RecordT")


class StoreError(RuntimeError):
    """Raised when a datastore statement fails."""


class Datastore(Protocol):
    """Statements the recovery workflow issues against the datastore."""

    def get_installation(self, installation_id: str) -> Installation | None:
        """Return the installation, including soft-deleted ones."""
        ...

    def get_installations_by_dns(
        self, dns: str, *, exclude_deleted: bool = True
    ) -> list[Installation]:
        """Return installations claiming *dns*."""
        ...

    def get_cluster_installations(
        self, installation_id: str, *, include_deleted: bool = True
    ) -> list[ClusterInstallation]:
        """Return cluster installations belonging to *installation_id*."""
        ...

    def get_multitenant_database(self, database_id: str) -> MultitenantDatabase | None:
        """Return the multi-tenant database."""
        ...

    def lock_multitenant_database(self, database_id: str, owner_id: str) -> bool:
        """Lock the database for *owner_id* if it is currently unlocked."""
        ...

    def unlock_multitenant_database(
        self, database_id: str, owner_id: str, *, force: bool = False
    ) -> bool:
        """Release the database lock held by *owner_id* (any owner when forced)."""
        ...

    def update_multitenant_database(self, database: MultitenantDatabase) -> None:
        """Persist the database membership."""
        ...

    def set_cluster_installation_state(
        self,
        cluster_installation_id: str,
        state: ClusterInstallationState,
        *,
        expected_state: ClusterInstallationState | None = None,
    ) -> bool:
        """Set the cluster installation state; return whether a change was written."""
        ...

    def set_installation_state(
        self,
        installation_id: str,
        state: InstallationState,
        *,
        expected_state: InstallationState | None = None,
    ) -> bool:
        """Set the installation state; return whether a change was written."""
        ...


@dataclass(slots=True)
class RegistryStore:
    """Datastore backed by YAML registry files."""

    registry: StateRegistry
    locks: LockManager

    # Reads ------------------------------------------------------------
    def get_installation(self, installation_id: str) -> Installation | None:
        """Return the installation with *installation_id*, if present."""
        entry = self._find(INSTALLATIONS_FILE, installation_id)
        return _convert(Installation.from_entry, entry) if entry is not None else None

    def list_installations(self, *, include_deleted: bool = False) -> list[Installation]:
        """Return every installation, optionally including soft-deleted ones."""
        installations = [
            _convert(Installation.from_entry, entry)
            for entry in self._read(INSTALLATIONS_FILE)
        ]
        if include_deleted:
            return installations
        return [installation for installation in installations if not installation.is_deleted]

    def get_installations_by_dns(
        self, dns: str, *, exclude_deleted: bool = True
    ) -> list[Installation]:
        """Return installations whose DNS name equals *dns* (case-insensitive)."""
        normalized = dns.strip().lower()
        return [
            installation
            for installation in self.list_installations(include_deleted=not exclude_deleted)
            if installation.dns == normalized
        ]

    def get_cluster_installations(
        self, installation_id: str, *, include_deleted: bool = True
    ) -> list[ClusterInstallation]:
        """Return cluster installations for *installation_id*."""
        results: list[ClusterInstallation] = []
        for entry in self._read(CLUSTER_INSTALLATIONS_FILE):
            if str(entry.get("installation_id", "")).strip() != installation_id:
                continue
            cluster_installation = _convert(ClusterInstallation.from_entry, entry)
            if cluster_installation.is_deleted and not include_deleted:
                continue
            results.append(cluster_installation)
        return results

    def get_multitenant_database(self, database_id: str) -> MultitenantDatabase | None:
        """Return the multi-tenant database with *database_id*, if present."""
        entry = self._find(MULTITENANT_DATABASES_FILE, database_id)
        return _convert(MultitenantDatabase.from_entry, entry) if entry is not None else None

    def list_multitenant_databases(self) -> list[MultitenantDatabase]:
        """Return every multi-tenant database."""
        return [
            _convert(MultitenantDatabase.from_entry, entry)
            for entry in self._read(MULTITENANT_DATABASES_FILE)
        ]

    # Lock statements --------------------------------------------------
    def lock_multitenant_database(self, database_id: str, owner_id: str) -> bool:
        """Compare-and-set the lock field from unlocked to *owner_id*."""
        if not owner_id.strip():
            raise StoreError("Lock owner must be a non-empty string.")
        with self._mutating(MULTITENANT_DATABASES_FILE) as entries:
            entry = _locate(entries, database_id)
            if entry is None:
                return False
            database = _convert(MultitenantDatabase.from_entry, entry)
            if database.is_locked:
                return False
            entry["lock_acquired_by"] = owner_id
            entry["lock_acquired_at"] = get_millis()
            return True

    def unlock_multitenant_database(
        self, database_id: str, owner_id: str, *, force: bool = False
    ) -> bool:
        """Clear the lock field when held by *owner_id*, or by anyone when *force*."""
        with self._mutating(MULTITENANT_DATABASES_FILE) as entries:
            entry = _locate(entries, database_id)
            if entry is None:
                LOGGER.warning("Unlock requested for unknown multitenant database %s", database_id)
                return False
            database = _convert(MultitenantDatabase.from_entry, entry)
            if force:
                if not database.is_locked:
                    return False
            elif database.lock_acquired_by != owner_id:
                LOGGER.warning(
                    "Multitenant database %s lock is held by %s, not %s",
                    database_id,
                    database.lock_acquired_by,
                    owner_id,
                )
                return False
            entry["lock_acquired_by"] = None
            entry["lock_acquired_at"] = 0
            return True

    # Write statements -------------------------------------------------
    def update_multitenant_database(self, database: MultitenantDatabase) -> None:
        """Persist *database* membership and type, leaving the lock field untouched."""
        with self._mutating(MULTITENANT_DATABASES_FILE) as entries:
            entry = _locate(entries, database.id)
            if entry is None:
                raise StoreError(f"Multitenant database '{database.id}' not found in registry")
            entry["database_type"] = database.database_type
            entry["installations"] = list(database.installations)

    def set_cluster_installation_state(
        self,
        cluster_installation_id: str,
        state: ClusterInstallationState,
        *,
        expected_state: ClusterInstallationState | None = None,
    ) -> bool:
        """Update the cluster installation state when it matches *expected_state*."""
        with self._mutating(CLUSTER_INSTALLATIONS_FILE) as entries:
            entry = _locate(entries, cluster_installation_id)
            if entry is None:
                raise StoreError(
                    f"Cluster installation '{cluster_installation_id}' not found in registry"
                )
            current = _convert(ClusterInstallation.from_entry, entry)
            if expected_state is not None and current.state is not expected_state:
                return False
            entry["state"] = state.value
            entry["delete_at"] = _next_delete_at(
                current.delete_at, state is ClusterInstallationState.DELETED
            )
            return True

    def set_installation_state(
        self,
        installation_id: str,
        state: InstallationState,
        *,
        expected_state: InstallationState | None = None,
    ) -> bool:
        """Update the installation state when it matches *expected_state*."""
        with self._mutating(INSTALLATIONS_FILE) as entries:
            entry = _locate(entries, installation_id)
            if entry is None:
                raise StoreError(f"Installation '{installation_id}' not found in registry")
            current = _convert(Installation.from_entry, entry)
            if expected_state is not None and current.state is not expected_state:
                return False
            entry["state"] = state.value
            entry["delete_at"] = _next_delete_at(
                current.delete_at, state is InstallationState.DELETED
            )
            return True

    # Internal helpers -------------------------------------------------
    def _read(self, name: str) -> list[dict[str, Any]]:
        try:
            return self.registry.read_collection(name)
        except StateRegistryError as exc:
            raise StoreError(str(exc)) from exc

    def _find(self, name: str, record_id: str) -> dict[str, Any] | None:
        try:
            return self.registry.find(name, record_id)
        except StateRegistryError as exc:
            raise StoreError(str(exc)) from exc

    @contextmanager
    def _mutating(self, name: str) -> Iterator[list[dict[str, Any]]]:
        """Hold the statement lock for *name* and persist the entries on clean exit."""
        try:
            with self.locks.registry_lock(name):
                entries = self._read(name)
                snapshot = copy.deepcopy(entries)
                yield entries
                if entries != snapshot:
                    self.registry.write_collection(name, entries)
        except LockTimeoutError as exc:
            raise StoreError(f"Registry statement on {name} could not be serialised: {exc}") from exc
        except StateRegistryError as exc:
            raise StoreError(str(exc)) from exc


def _locate(entries: list[dict[str, Any]], record_id: str) -> dict[str, Any] | None:
    normalized = record_id.strip()
    if not normalized:
        raise StoreError("Record identifier must be a non-empty string.")
    for entry in entries:
        if str(entry.get("id", "")).strip() == normalized:
            return entry
    return None


def _convert(factory: Callable[[dict[str, Any]], _RecordT], entry: dict[str, Any]) -> _RecordT:
    try:
        return factory(entry)
    except ModelError as exc:
        raise StoreError(f"Corrupt registry entry {entry.get('id')!r}: {exc}") from exc


def _next_delete_at(current: int, deleting: bool) -> int:
    if deleting:
        return current or get_millis()
    return 0


__all__ = ["Datastore", "RegistryStore", "StoreError"]
