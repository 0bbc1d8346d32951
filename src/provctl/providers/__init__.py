"""Provider interfaces for provctl."""
from __future__ import annotations

from .secrets import (
    DEFAULT_SECRET_NAME_TEMPLATE,
    AWSSecretStore,
    RegistrySecretStore,
    SecretStore,
    SecretStoreError,
    multitenant_secret_name,
)

__all__ = [
    "AWSSecretStore",
    "DEFAULT_SECRET_NAME_TEMPLATE",
    "RegistrySecretStore",
    "SecretStore",
    "SecretStoreError",
    "multitenant_secret_name",
]
