"""State registry package."""
from __future__ import annotations

from .registry import (
    CLUSTER_INSTALLATIONS_FILE,
    INSTALLATIONS_FILE,
    MULTITENANT_DATABASES_FILE,
    SECRETS_FILE,
    StateRegistry,
    StateRegistryError,
)

__all__ = [
    "CLUSTER_INSTALLATIONS_FILE",
    "INSTALLATIONS_FILE",
    "MULTITENANT_DATABASES_FILE",
    "SECRETS_FILE",
    "StateRegistry",
    "StateRegistryError",
]
