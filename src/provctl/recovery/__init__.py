"""Installation recovery workflow."""
from __future__ import annotations

from .convergence import ConvergenceOutcome, converge
from .errors import (
    AmbiguousCommit,
    DNSConflict,
    InvariantViolation,
    LockUnavailable,
    NotRecoverable,
    PersistenceFailed,
    RecoveryError,
    ResourceNotFound,
    SecretRestoreFailed,
    UnsupportedConfiguration,
)
from .lock import ExclusiveResourceLock, LockLease
from .orchestrator import RecoveryOrchestrator, RecoveryPhase, RecoveryResult
from .validator import RecoveryContext, validate

__all__ = [
    "AmbiguousCommit",
    "ConvergenceOutcome",
    "DNSConflict",
    "ExclusiveResourceLock",
    "InvariantViolation",
    "LockLease",
    "LockUnavailable",
    "NotRecoverable",
    "PersistenceFailed",
    "RecoveryContext",
    "RecoveryError",
    "RecoveryOrchestrator",
    "RecoveryPhase",
    "RecoveryResult",
    "ResourceNotFound",
    "SecretRestoreFailed",
    "UnsupportedConfiguration",
    "converge",
    "validate",
]
