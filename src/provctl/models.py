"""Records managed by the provisioner datastore.

Three record types take part in installation recovery:

* :class:`Installation`: a tenant installation addressed by its DNS name.
* :class:`ClusterInstallation`: the per-installation compute resource. It has
  its own lifecycle so partial recovery progress stays observable.
* :class:`MultitenantDatabase`: a database shared by many installations. It
  tracks its members as a set and carries an exclusive lock field.

Records round-trip through plain mappings (``from_entry``/``to_entry``) so the
YAML registry can persist them.
"""
from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum


class ModelError(ValueError):
    """Raised when a registry entry cannot be converted into a record."""


def get_millis() -> int:
    """Return the current time in epoch milliseconds."""
    return int(time.time() * 1000)


class InstallationState(str, Enum):
    """Lifecycle states for an installation."""

    STABLE = "stable"
    CREATION_REQUESTED = "creation-requested"
    CREATION_PRE_PROVISIONING = "creation-pre-provisioning"
    CREATION_IN_PROGRESS = "creation-in-progress"
    CREATION_DNS = "creation-configuring-dns"
    CREATION_FINAL_TASKS = "creation-final-tasks"
    CREATION_NO_COMPATIBLE_CLUSTERS = "creation-no-compatible-clusters"
    CREATION_FAILED = "creation-failed"
    HIBERNATION_REQUESTED = "hibernation-requested"
    HIBERNATION_IN_PROGRESS = "hibernation-in-progress"
    HIBERNATING = "hibernating"
    UPDATE_REQUESTED = "update-requested"
    UPDATE_IN_PROGRESS = "update-in-progress"
    UPDATE_FAILED = "update-failed"
    DELETION_REQUESTED = "deletion-requested"
    DELETION_IN_PROGRESS = "deletion-in-progress"
    DELETION_FINAL_CLEANUP = "deletion-final-cleanup"
    DELETION_FAILED = "deletion-failed"
    DELETED = "deleted"


class ClusterInstallationState(str, Enum):
    """Lifecycle states for a cluster installation."""

    CREATION_REQUESTED = "creation-requested"
    CREATION_FAILED = "creation-failed"
    DELETION_REQUESTED = "deletion-requested"
    DELETION_FAILED = "deletion-failed"
    DELETED = "deleted"
    RECONCILING = "reconciling"
    READY = "ready"
    STABLE = "stable"


class DatabaseKind(str, Enum):
    """Database backends an installation can be configured with."""

    MYSQL_OPERATOR = "mysql-operator"
    SINGLE_TENANT_RDS_MYSQL = "aws-rds"
    SINGLE_TENANT_RDS_POSTGRES = "aws-rds-postgres"
    MULTITENANT_RDS_MYSQL = "aws-multitenant-rds"
    MULTITENANT_RDS_POSTGRES = "aws-multitenant-rds-postgres"
    MULTITENANT_RDS_POSTGRES_PGBOUNCER = "aws-multitenant-rds-postgres-pgbouncer"
    PERSEUS = "perseus"
    EXTERNAL = "external"


class FilestoreKind(str, Enum):
    """Filestore backends an installation can be configured with."""

    MINIO_OPERATOR = "minio-operator"
    AWS_S3 = "aws-s3"
    MULTITENANT_AWS_S3 = "aws-multitenant-s3"
    BIFROST = "bifrost"
    LOCAL_EPHEMERAL = "local-ephemeral"


def _require_str(entry: Mapping[str, object], key: str, kind: str) -> str:
    value = entry.get(key)
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ModelError(f"{kind} entry missing '{key}'.")
    return text


def _coerce_millis(entry: Mapping[str, object], key: str, kind: str) -> int:
    value = entry.get(key, 0)
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ModelError(f"{kind} '{key}' must be an integer. Got boolean {value!r}.")
    try:
        return int(value)  # type: ignore[call-overload]
    except (TypeError, ValueError) as exc:
        raise ModelError(f"{kind} '{key}' must be an integer. Got {value!r}.") from exc


def _parse_enum(enum_type: type[Enum], raw: str, kind: str) -> Enum:
    try:
        return enum_type(raw)
    except ValueError as exc:
        raise ModelError(f"{kind} has unknown state '{raw}'.") from exc


@dataclass(slots=True)
class Installation:
    """A tenant installation."""

    id: str
    dns: str
    state: InstallationState
    database: str
    filestore: str
    delete_at: int = 0
    owner_id: str | None = None

    @property
    def is_deleted(self) -> bool:
        """Return ``True`` when the installation is soft-deleted."""
        return self.state is InstallationState.DELETED

    @classmethod
    def from_entry(cls, entry: Mapping[str, object]) -> Installation:
        """Build an installation from a registry mapping."""
        state = _parse_enum(
            InstallationState, _require_str(entry, "state", "Installation"), "Installation"
        )
        owner = entry.get("owner_id")
        return cls(
            id=_require_str(entry, "id", "Installation"),
            dns=_require_str(entry, "dns", "Installation").lower(),
            state=state,  # type: ignore[arg-type]
            database=_require_str(entry, "database", "Installation"),
            filestore=_require_str(entry, "filestore", "Installation"),
            delete_at=_coerce_millis(entry, "delete_at", "Installation"),
            owner_id=str(owner) if owner else None,
        )

    def to_entry(self) -> dict[str, object]:
        """Return the registry mapping for this installation."""
        entry: dict[str, object] = {
            "id": self.id,
            "dns": self.dns,
            "state": self.state.value,
            "database": self.database,
            "filestore": self.filestore,
            "delete_at": self.delete_at,
        }
        if self.owner_id:
            entry["owner_id"] = self.owner_id
        return entry


@dataclass(slots=True)
class ClusterInstallation:
    """The compute resource backing an installation on a cluster."""

    id: str
    installation_id: str
    cluster_id: str
    state: ClusterInstallationState
    delete_at: int = 0

    @property
    def is_deleted(self) -> bool:
        """Return ``True`` when the cluster installation is soft-deleted."""
        return self.state is ClusterInstallationState.DELETED

    @classmethod
    def from_entry(cls, entry: Mapping[str, object]) -> ClusterInstallation:
        """Build a cluster installation from a registry mapping."""
        state = _parse_enum(
            ClusterInstallationState,
            _require_str(entry, "state", "ClusterInstallation"),
            "ClusterInstallation",
        )
        return cls(
            id=_require_str(entry, "id", "ClusterInstallation"),
            installation_id=_require_str(entry, "installation_id", "ClusterInstallation"),
            cluster_id=_require_str(entry, "cluster_id", "ClusterInstallation"),
            state=state,  # type: ignore[arg-type]
            delete_at=_coerce_millis(entry, "delete_at", "ClusterInstallation"),
        )

    def to_entry(self) -> dict[str, object]:
        """Return the registry mapping for this cluster installation."""
        return {
            "id": self.id,
            "installation_id": self.installation_id,
            "cluster_id": self.cluster_id,
            "state": self.state.value,
            "delete_at": self.delete_at,
        }


@dataclass(slots=True)
class MultitenantDatabase:
    """A database instance shared by many installations."""

    id: str
    database_type: str
    installations: list[str] = field(default_factory=list)
    lock_acquired_by: str | None = None
    lock_acquired_at: int = 0

    @property
    def is_locked(self) -> bool:
        """Return ``True`` while some owner holds the lock."""
        return self.lock_acquired_at != 0

    def contains_installation(self, installation_id: str) -> bool:
        """Return ``True`` when *installation_id* is a member."""
        return installation_id in self.installations

    def add_installation(self, installation_id: str) -> bool:
        """Add *installation_id* to the membership set; return whether it changed."""
        if self.contains_installation(installation_id):
            return False
        self.installations.append(installation_id)
        return True

    @classmethod
    def from_entry(cls, entry: Mapping[str, object]) -> MultitenantDatabase:
        """Build a multi-tenant database from a registry mapping."""
        raw_members = entry.get("installations") or []
        if not isinstance(raw_members, list):
            raise ModelError("MultitenantDatabase 'installations' must be a list.")
        members: list[str] = []
        for item in raw_members:
            member = str(item).strip()
            if member and member not in members:
                members.append(member)
        locker = entry.get("lock_acquired_by")
        return cls(
            id=_require_str(entry, "id", "MultitenantDatabase"),
            database_type=str(
                entry.get("database_type") or DatabaseKind.MULTITENANT_RDS_POSTGRES.value
            ),
            installations=members,
            lock_acquired_by=str(locker) if locker else None,
            lock_acquired_at=_coerce_millis(entry, "lock_acquired_at", "MultitenantDatabase"),
        )

    def to_entry(self) -> dict[str, object]:
        """Return the registry mapping for this database."""
        return {
            "id": self.id,
            "database_type": self.database_type,
            "installations": list(self.installations),
            "lock_acquired_by": self.lock_acquired_by,
            "lock_acquired_at": self.lock_acquired_at,
        }


__all__ = [
    "ClusterInstallation",
    "ClusterInstallationState",
    "DatabaseKind",
    "FilestoreKind",
    "Installation",
    "InstallationState",
    "ModelError",
    "MultitenantDatabase",
    "get_millis",
]
