"""Recovery orchestrator composing validation, secret restore, lock and writes."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from ..config import RecoveryPolicy
from ..logging import OperationScope
from ..providers.secrets import (
    DEFAULT_SECRET_NAME_TEMPLATE,
    SecretStore,
    SecretStoreError,
    multitenant_secret_name,
)
from ..store import Datastore
from .convergence import converge
from .errors import AmbiguousCommit, RecoveryError, SecretRestoreFailed
from .lock import ExclusiveResourceLock
from .validator import validate

LOGGER = logging.getLogger(__name__)


class RecoveryPhase(str, Enum):
    """Phases of a recovery run, in execution order."""

    VALIDATING = "validating"
    RESTORING_SECRET = "restoring-secret"
    ACQUIRING_LOCK = "acquiring-lock"
    CONVERGING = "converging"
    COMMITTED = "committed"
    ABORTED = "aborted"
    AMBIGUOUS_COMMIT = "ambiguous-commit"


@dataclass
class RecoveryResult:
    """Outcome of :meth:`RecoveryOrchestrator.recover`."""

    installation_id: str
    database_id: str
    phase: RecoveryPhase = RecoveryPhase.VALIDATING
    phases: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)
    lock_released: bool | None = None
    already_recovered: bool = False
    dry_run: bool = False
    secret_name: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "installation_id": self.installation_id,
            "database_id": self.database_id,
            "phase": self.phase.value,
            "phases": list(self.phases),
            "changed": list(self.changed),
            "lock_released": self.lock_released,
            "already_recovered": self.already_recovered,
            "dry_run": self.dry_run,
            "secret_name": self.secret_name,
            "warnings": list(self.warnings),
        }


class RecoveryOrchestrator:
    """Run the installation recovery workflow as one linear sequence.

    The workflow validates preconditions, restores the database credential,
    takes the multi-tenant database lock, converges state under the lock and
    always releases the lock afterwards. Failures surface as
    :class:`~provctl.recovery.errors.RecoveryError` subclasses tagged with the
    phase they aborted in.
    """

    def __init__(
        self,
        store: Datastore,
        secret_store: SecretStore,
        *,
        owner_id: str,
        policy: RecoveryPolicy | None = None,
        secret_name_template: str = DEFAULT_SECRET_NAME_TEMPLATE,
    ) -> None:
        if not owner_id.strip():
            raise ValueError("owner_id must be a non-empty string.")
        self._store = store
        self._secret_store = secret_store
        self._lock = ExclusiveResourceLock(store)
        self._owner_id = owner_id
        self._policy = policy or RecoveryPolicy()
        self._secret_name_template = secret_name_template

    @property
    def owner_id(self) -> str:
        return self._owner_id

    def recover(
        self,
        installation_id: str,
        database_id: str,
        *,
        dry_run: bool = False,
        op: OperationScope | None = None,
    ) -> RecoveryResult:
        """Recover *installation_id* into multi-tenant database *database_id*."""
        result = RecoveryResult(
            installation_id=installation_id, database_id=database_id, dry_run=dry_run
        )

        def enter(phase: RecoveryPhase) -> None:
            result.phase = phase
            result.phases.append(phase.value)
            LOGGER.debug("Recovery of %s entering %s", installation_id, phase.value)

        def step(name: str, status: str, detail: str) -> None:
            if op is not None:
                op.add_step(name, status=status, detail=detail or None)

        try:
            enter(RecoveryPhase.VALIDATING)
            context = validate(self._store, installation_id, database_id, self._policy)
            result.already_recovered = context.already_recovered
            step(
                "recovery.validate",
                "success",
                "already recovered" if context.already_recovered else "recoverable",
            )
            if dry_run:
                return result

            enter(RecoveryPhase.RESTORING_SECRET)
            result.secret_name = self._restore_secret(installation_id)
            step("recovery.restore-secret", "success", result.secret_name)

            enter(RecoveryPhase.ACQUIRING_LOCK)
            with self._lock.hold(database_id, self._owner_id) as lease:
                if op is not None:
                    op.set_lock_wait_ms(lease.wait_ms)
                step("recovery.lock", "success", self._owner_id)
                enter(RecoveryPhase.CONVERGING)
                outcome = converge(self._store, context, on_step=step)
                result.changed = list(outcome.changed)
                enter(RecoveryPhase.COMMITTED)
        except AmbiguousCommit as exc:
            exc.phase = RecoveryPhase.AMBIGUOUS_COMMIT.value
            result.phases.append(RecoveryPhase.AMBIGUOUS_COMMIT.value)
            step("recovery." + result.phase.value, "failed", str(exc))
            raise
        except RecoveryError as exc:
            if exc.phase is None:
                exc.phase = result.phase.value
            exc.context.setdefault("installation_id", installation_id)
            exc.context.setdefault("database_id", database_id)
            step("recovery." + result.phase.value, "failed", str(exc))
            result.phases.append(RecoveryPhase.ABORTED.value)
            raise

        result.lock_released = lease.released
        if not lease.released:
            message = (
                f"Lock on multitenant database '{database_id}' was not released; "
                f"clear it with `provctl database unlock {database_id} --force`."
            )
            result.warnings.append(message)
            step("recovery.unlock", "failed", message)
        else:
            step("recovery.unlock", "success", self._owner_id)
        return result

    def _restore_secret(self, installation_id: str) -> str:
        try:
            name = multitenant_secret_name(installation_id, self._secret_name_template)
            self._secret_store.restore_secret(name)
        except SecretStoreError as exc:
            raise SecretRestoreFailed(
                f"Failed to restore database secret: {exc}",
                context={"installation_id": installation_id},
            ) from exc
        return name


__all__ = ["RecoveryOrchestrator", "RecoveryPhase", "RecoveryResult"]
