"""Read-only precondition checks for installation recovery."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..config import RecoveryPolicy
from ..models import (
    ClusterInstallation,
    Installation,
    InstallationState,
    MultitenantDatabase,
)
from ..store import Datastore, StoreError
from .errors import (
    DNSConflict,
    InvariantViolation,
    NotRecoverable,
    PersistenceFailed,
    ResourceNotFound,
    UnsupportedConfiguration,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryContext:
    """Records gathered by :func:`validate` for the rest of the workflow."""

    installation: Installation
    cluster_installation: ClusterInstallation
    database: MultitenantDatabase
    already_recovered: bool = False

    @property
    def installation_id(self) -> str:
        return self.installation.id

    @property
    def database_id(self) -> str:
        return self.database.id


def validate(
    store: Datastore,
    installation_id: str,
    database_id: str,
    policy: RecoveryPolicy | None = None,
) -> RecoveryContext:
    """Check that *installation_id* can be recovered into *database_id*.

    Checks run in order and stop at the first failure. Nothing is written.
    An installation that is already ``creation-requested`` and already a
    member of the database is accepted as a previous successful recovery.
    """
    policy = policy or RecoveryPolicy()
    ids = {"installation_id": installation_id, "database_id": database_id}

    try:
        installation = store.get_installation(installation_id)
        if installation is None:
            raise NotRecoverable(f"Installation '{installation_id}' not found.", context=ids)

        already_recovered = False
        if installation.state is not InstallationState.DELETED:
            already_recovered = _is_prior_recovery(store, installation, database_id)
            if not already_recovered:
                raise NotRecoverable(
                    f"Installation '{installation_id}' is in state "
                    f"'{installation.state.value}'; only deleted installations can be recovered.",
                    context={**ids, "state": installation.state.value},
                )

        conflicts = [
            other
            for other in store.get_installations_by_dns(installation.dns, exclude_deleted=True)
            if other.id != installation.id
        ]
        if conflicts:
            raise DNSConflict(
                f"Found {len(conflicts)} non-deleted installation(s) with DNS "
                f"'{installation.dns}'.",
                count=len(conflicts),
                context={**ids, "dns": installation.dns},
            )

        if installation.database not in policy.allowed_databases:
            raise UnsupportedConfiguration(
                f"Database type '{installation.database}' is not supported for recovery.",
                context={**ids, "database_type": installation.database},
            )
        if installation.filestore not in policy.allowed_filestores:
            raise UnsupportedConfiguration(
                f"Filestore type '{installation.filestore}' is not supported for recovery.",
                context={**ids, "filestore_type": installation.filestore},
            )

        cluster_installations = store.get_cluster_installations(
            installation_id, include_deleted=True
        )
        if len(cluster_installations) != 1:
            raise InvariantViolation(
                f"Expected exactly one cluster installation for '{installation_id}', "
                f"found {len(cluster_installations)}.",
                context={**ids, "cluster_installations": len(cluster_installations)},
            )

        database = store.get_multitenant_database(database_id)
        if database is None:
            raise ResourceNotFound(
                f"Multitenant database '{database_id}' not found.", context=ids
            )
    except StoreError as exc:
        raise PersistenceFailed(f"Datastore read failed: {exc}", context=ids) from exc

    if already_recovered:
        LOGGER.info(
            "Installation %s already recovered into database %s", installation_id, database_id
        )
    return RecoveryContext(
        installation=installation,
        cluster_installation=cluster_installations[0],
        database=database,
        already_recovered=already_recovered,
    )


def _is_prior_recovery(
    store: Datastore, installation: Installation, database_id: str
) -> bool:
    if installation.state is not InstallationState.CREATION_REQUESTED:
        return False
    database = store.get_multitenant_database(database_id)
    return database is not None and database.contains_installation(installation.id)


__all__ = ["RecoveryContext", "validate"]
