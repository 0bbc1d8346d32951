"""Idempotent writes that bring a deleted installation back to life.

Every step compares current state with the target before writing, so
applying the sequence twice leaves the datastore exactly as one application
did. Writes happen in dependency order and the installation transition comes
last: once it lands the recovery is committed.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from ..models import ClusterInstallationState, InstallationState
from ..store import Datastore, StoreError
from .errors import AmbiguousCommit, DNSConflict, PersistenceFailed, ResourceNotFound
from .validator import RecoveryContext

LOGGER = logging.getLogger(__name__)

StepCallback = Callable[[str, str, str], None]

STEP_REFRESH_DATABASE = "refresh-database"
STEP_ADD_MEMBERSHIP = "add-database-membership"
STEP_RESTORE_CLUSTER_INSTALLATION = "restore-cluster-installation"
STEP_RESTORE_INSTALLATION = "restore-installation"


@dataclass
class ConvergenceOutcome:
    """Which convergence steps wrote to the datastore."""

    changed: list[str] = field(default_factory=list)


def _noop_step(name: str, status: str, detail: str) -> None:
    return None


def converge(
    store: Datastore,
    context: RecoveryContext,
    *,
    on_step: StepCallback | None = None,
) -> ConvergenceOutcome:
    """Apply the recovery writes for *context*; the database lock must be held."""
    record = on_step or _noop_step
    outcome = ConvergenceOutcome()
    installation_id = context.installation_id
    database_id = context.database_id
    ids = {"installation_id": installation_id, "database_id": database_id}

    dns = context.installation.dns
    try:
        database = store.get_multitenant_database(database_id)
        conflicts = [
            other
            for other in store.get_installations_by_dns(dns, exclude_deleted=True)
            if other.id != installation_id
        ]
    except StoreError as exc:
        raise PersistenceFailed(
            f"Failed to re-read recovery state for '{installation_id}': {exc}", context=ids
        ) from exc
    if database is None:
        raise ResourceNotFound(
            f"Multitenant database '{database_id}' disappeared before recovery.", context=ids
        )
    # Another installation may have claimed the name since validation.
    if conflicts:
        raise DNSConflict(
            f"Found {len(conflicts)} non-deleted installation(s) with DNS '{dns}'.",
            count=len(conflicts),
            context={**ids, "dns": dns},
        )
    record(STEP_REFRESH_DATABASE, "success", f"{len(database.installations)} member(s)")

    if database.add_installation(installation_id):
        try:
            store.update_multitenant_database(database)
        except StoreError as exc:
            raise PersistenceFailed(
                f"Failed to add installation to multitenant database '{database_id}': {exc}",
                context=ids,
            ) from exc
        outcome.changed.append(STEP_ADD_MEMBERSHIP)
        record(STEP_ADD_MEMBERSHIP, "success", f"added {installation_id}")
    else:
        record(STEP_ADD_MEMBERSHIP, "skipped", "already a member")

    cluster_installation = context.cluster_installation
    if cluster_installation.is_deleted:
        try:
            written = store.set_cluster_installation_state(
                cluster_installation.id,
                ClusterInstallationState.CREATION_REQUESTED,
                expected_state=ClusterInstallationState.DELETED,
            )
        except StoreError as exc:
            raise PersistenceFailed(
                f"Failed to restore cluster installation '{cluster_installation.id}': {exc}",
                context={**ids, "cluster_installation_id": cluster_installation.id},
            ) from exc
        if written:
            outcome.changed.append(STEP_RESTORE_CLUSTER_INSTALLATION)
            record(STEP_RESTORE_CLUSTER_INSTALLATION, "success", cluster_installation.id)
        else:
            record(STEP_RESTORE_CLUSTER_INSTALLATION, "skipped", "no longer deleted")
    else:
        record(
            STEP_RESTORE_CLUSTER_INSTALLATION,
            "skipped",
            f"state {cluster_installation.state.value}",
        )

    # Commit point.
    current = None
    try:
        written = store.set_installation_state(
            installation_id,
            InstallationState.CREATION_REQUESTED,
            expected_state=InstallationState.DELETED,
        )
        if not written:
            current = store.get_installation(installation_id)
    except StoreError as exc:
        raise AmbiguousCommit(
            f"Failed to restore installation '{installation_id}': {exc}. Membership and "
            "cluster installation changes may already be persisted; re-run recovery or "
            "inspect state manually.",
            context={**ids, "changed": list(outcome.changed)},
        ) from exc

    if written:
        outcome.changed.append(STEP_RESTORE_INSTALLATION)
        record(STEP_RESTORE_INSTALLATION, "success", "creation-requested")
        LOGGER.info("Installation %s recovered into %s", installation_id, database_id)
        return outcome

    if current is not None and current.state is InstallationState.CREATION_REQUESTED:
        record(STEP_RESTORE_INSTALLATION, "skipped", "already creation-requested")
        return outcome

    observed = current.state.value if current is not None else "missing"
    raise AmbiguousCommit(
        f"Installation '{installation_id}' changed to '{observed}' during recovery; "
        "inspect state manually.",
        context={**ids, "state": observed, "changed": list(outcome.changed)},
    )


__all__ = [
    "ConvergenceOutcome",
    "STEP_ADD_MEMBERSHIP",
    "STEP_REFRESH_DATABASE",
    "STEP_RESTORE_CLUSTER_INSTALLATION",
    "STEP_RESTORE_INSTALLATION",
    "converge",
]
