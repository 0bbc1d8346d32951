"""Secret store backends used to restore soft-deleted credentials.

Recovery needs exactly one secret store capability: restoring a credential
that was scheduled for deletion together with its installation. Restoring is
expected to be idempotent. Restoring a live secret is a no-op, and a secret
that was already purged is reported with a warning rather than an error
because nothing is left to restore.

Backends:

* :class:`AWSSecretStore` calls AWS Secrets Manager ``RestoreSecret`` via boto3.
* :class:`RegistrySecretStore` keeps secret records in the local state
  registry (``secrets.yml``) and clears their ``deleted_at`` marker.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..locking import LockManager, LockTimeoutError
from ..state import SECRETS_FILE, StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)

DEFAULT_SECRET_NAME_TEMPLATE = "rds-multitenant-{installation_id}"


class SecretStoreError(RuntimeError):
    """Raised when a secret store operation fails."""


class SecretStore(Protocol):
    """Restore a soft-deleted credential record."""

    def restore_secret(self, name: str) -> None:
        """Restore the secret *name*; raise :class:`SecretStoreError` on failure."""
        ...


def multitenant_secret_name(
    installation_id: str,
    template: str = DEFAULT_SECRET_NAME_TEMPLATE,
) -> str:
    """Return the database credential name for *installation_id*."""
    normalized = installation_id.strip()
    if not normalized:
        raise SecretStoreError("Installation identifier must be a non-empty string.")
    try:
        return template.format(installation_id=normalized)
    except (KeyError, IndexError, ValueError) as exc:
        raise SecretStoreError(f"Invalid secret name template {template!r}: {exc}") from exc


class AWSSecretStore:
    """AWS Secrets Manager backend."""

    def __init__(self, region_name: str | None = None, client: Any | None = None) -> None:
        """Reuse *client* or build a Secrets Manager client on first use."""
        self._region_name = region_name
        self._client = client

    @property
    def client(self) -> Any:
        """Return the boto3 Secrets Manager client."""
        if self._client is None:
            client_kwargs: dict[str, str] = {}
            if self._region_name:
                client_kwargs["region_name"] = self._region_name
            try:
                self._client = boto3.client("secretsmanager", **client_kwargs)
            except (BotoCoreError, ClientError) as exc:
                raise SecretStoreError(
                    f"Failed to build AWS Secrets Manager client: {exc}"
                ) from exc
        return self._client

    def restore_secret(self, name: str) -> None:
        """Cancel the scheduled deletion of secret *name*."""
        client = self.client
        try:
            client.restore_secret(SecretId=name)
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            if error_code == "ResourceNotFoundException":
                LOGGER.warning(
                    "Secret Manager secret %s could not be found; assuming fully deleted",
                    name,
                )
                return
            raise SecretStoreError(
                f"Failed to restore secret '{name}' ({error_code}): {exc}"
            ) from exc
        except BotoCoreError as exc:
            raise SecretStoreError(f"Failed to restore secret '{name}': {exc}") from exc
        LOGGER.debug("Secret Manager secret %s recovered", name)


@dataclass(slots=True)
class RegistrySecretStore:
    """Secret records tracked in the local state registry."""

    registry: StateRegistry
    locks: LockManager

    def restore_secret(self, name: str) -> None:
        """Clear the ``deleted_at`` marker on secret *name*."""
        try:
            with self.locks.registry_lock(SECRETS_FILE):
                entries = self.registry.read_collection(SECRETS_FILE)
                for entry in entries:
                    if str(entry.get("id", "")).strip() != name:
                        continue
                    if not entry.get("deleted_at"):
                        LOGGER.debug("Secret %s is already live", name)
                        return
                    entry["deleted_at"] = None
                    self.registry.write_collection(SECRETS_FILE, entries)
                    LOGGER.debug("Registry secret %s recovered", name)
                    return
        except (LockTimeoutError, StateRegistryError) as exc:
            raise SecretStoreError(f"Failed to restore secret '{name}': {exc}") from exc
        LOGGER.warning("Registry secret %s could not be found; assuming fully deleted", name)


__all__ = [
    "AWSSecretStore",
    "DEFAULT_SECRET_NAME_TEMPLATE",
    "RegistrySecretStore",
    "SecretStore",
    "SecretStoreError",
    "multitenant_secret_name",
]
