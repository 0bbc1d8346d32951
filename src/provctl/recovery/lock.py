"""Exclusive multi-tenant database lock used to serialise recoveries."""
from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from ..store import Datastore, StoreError
from .errors import LockUnavailable, PersistenceFailed

LOGGER = logging.getLogger(__name__)


@dataclass
class LockLease:
    """A held database lock. ``released`` is set when the scope exits."""

    database_id: str
    owner_id: str
    wait_ms: int = 0
    released: bool = False


class ExclusiveResourceLock:
    """Acquire and release the lock field on a multi-tenant database.

    Acquisition is a single compare-and-set against the datastore. It never
    waits for a current holder to let go.
    """

    def __init__(self, store: Datastore) -> None:
        self._store = store

    def acquire(self, database_id: str, owner_id: str) -> bool:
        """Take the lock for *owner_id*; return ``False`` if someone holds it."""
        try:
            return self._store.lock_multitenant_database(database_id, owner_id)
        except StoreError as exc:
            raise PersistenceFailed(
                f"Failed to lock multitenant database '{database_id}': {exc}",
                context={"database_id": database_id, "owner_id": owner_id},
            ) from exc

    def release(self, database_id: str, owner_id: str, *, force: bool = False) -> bool:
        """Release the lock held by *owner_id*, or by any owner when *force*."""
        try:
            return self._store.unlock_multitenant_database(database_id, owner_id, force=force)
        except StoreError as exc:
            raise PersistenceFailed(
                f"Failed to unlock multitenant database '{database_id}': {exc}",
                context={"database_id": database_id, "owner_id": owner_id},
            ) from exc

    @contextmanager
    def hold(self, database_id: str, owner_id: str) -> Iterator[LockLease]:
        """Hold the lock for the duration of the block.

        Raises :class:`LockUnavailable` when the lock is taken. The release
        runs on every exit path, interrupts included. Release problems are
        logged and reported through ``LockLease.released`` so they never
        replace the outcome of the block.
        """
        start = time.perf_counter()
        try:
            acquired = self.acquire(database_id, owner_id)
        except BaseException:
            # The compare-and-set may have landed before the failure.
            self._release_quietly(database_id, owner_id)
            raise
        if not acquired:
            raise LockUnavailable(
                f"Multitenant database '{database_id}' is locked by another owner.",
                context={"database_id": database_id, "owner_id": owner_id},
            )
        lease: LockLease | None = None
        try:
            lease = LockLease(
                database_id=database_id,
                owner_id=owner_id,
                wait_ms=int((time.perf_counter() - start) * 1000),
            )
            LOGGER.debug("Locked multitenant database %s for %s", database_id, owner_id)
            yield lease
        finally:
            released = self._release_quietly(database_id, owner_id)
            if lease is not None:
                lease.released = released

    def _release_quietly(self, database_id: str, owner_id: str) -> bool:
        try:
            released = self.release(database_id, owner_id)
        except PersistenceFailed as exc:
            LOGGER.error("Failed to release multitenant database lock %s: %s", database_id, exc)
            return False
        if not released:
            LOGGER.error(
                "Multitenant database %s lock was not held by %s at release",
                database_id,
                owner_id,
            )
        return released


__all__ = ["ExclusiveResourceLock", "LockLease"]
