"""Typed failures raised by the installation recovery workflow."""
from __future__ import annotations

from collections.abc import Mapping


class RecoveryError(RuntimeError):
    """Base class for recovery failures.

    ``phase`` names the orchestrator phase the workflow aborted in and
    ``context`` carries the identifiers involved so operators can act on the
    message without re-reading state.
    """

    def __init__(
        self,
        message: str,
        *,
        phase: str | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.context: dict[str, object] = dict(context or {})

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable description of the failure."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "phase": self.phase,
            "context": dict(self.context),
        }


class NotRecoverable(RecoveryError):
    """The installation is missing or not in a recoverable state."""


class DNSConflict(RecoveryError):
    """Another live installation already claims the DNS name."""

    def __init__(
        self,
        message: str,
        *,
        count: int,
        phase: str | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        super().__init__(message, phase=phase, context=context)
        self.count = count
        self.context.setdefault("conflicting_installations", count)


class UnsupportedConfiguration(RecoveryError):
    """The installation database or filestore kind cannot be recovered."""


class InvariantViolation(RecoveryError):
    """Stored data contradicts a structural invariant; manual repair required."""

    fatal = True


class ResourceNotFound(RecoveryError):
    """A record the recovery depends on does not exist."""


class LockUnavailable(RecoveryError):
    """The multi-tenant database lock is held by another owner."""


class SecretRestoreFailed(RecoveryError):
    """The database credential could not be restored."""


class PersistenceFailed(RecoveryError):
    """A datastore write failed before the commit point."""


class AmbiguousCommit(RecoveryError):
    """The final installation transition failed in an undetermined way.

    Membership and cluster installation changes may already be persisted.
    Re-running recovery is safe; otherwise an operator must inspect state.
    """

    requires_operator = True


__all__ = [
    "AmbiguousCommit",
    "DNSConflict",
    "InvariantViolation",
    "LockUnavailable",
    "NotRecoverable",
    "PersistenceFailed",
    "RecoveryError",
    "ResourceNotFound",
    "SecretRestoreFailed",
    "UnsupportedConfiguration",
]
