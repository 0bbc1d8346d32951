"""Exclusive database lock tests."""
from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from provctl.recovery import ExclusiveResourceLock, LockUnavailable, PersistenceFailed
from provctl.recovery import lock as lock_module
from provctl.store import RegistryStore, StoreError


def _lock_owner(store: RegistryStore) -> str | None:
    database = store.get_multitenant_database("db-1")
    assert database is not None
    return database.lock_acquired_by


def test_hold_releases_on_success(store: RegistryStore) -> None:
    """The lock is held inside the block and released after it."""
    lock = ExclusiveResourceLock(store)

    with lock.hold("db-1", "owner-a") as lease:
        assert _lock_owner(store) == "owner-a"
        assert lease.wait_ms >= 0

    assert lease.released is True
    assert _lock_owner(store) is None


def test_hold_releases_on_error(store: RegistryStore) -> None:
    """Errors inside the block still release the lock."""
    lock = ExclusiveResourceLock(store)

    with pytest.raises(ValueError):
        with lock.hold("db-1", "owner-a"):
            raise ValueError("boom")

    assert _lock_owner(store) is None


@pytest.mark.parametrize("interrupt", [KeyboardInterrupt, SystemExit])
def test_hold_releases_on_interrupt(
    store: RegistryStore, interrupt: type[BaseException]
) -> None:
    """Forced cancellation releases the lock before propagating."""
    lock = ExclusiveResourceLock(store)

    with pytest.raises(interrupt):
        with lock.hold("db-1", "owner-a"):
            raise interrupt()

    assert _lock_owner(store) is None


def test_interrupt_right_after_acquire_releases_lock(
    store: RegistryStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An interrupt between acquisition and the block still releases."""

    def interrupt(*args: object, **kwargs: object) -> None:
        raise KeyboardInterrupt

    monkeypatch.setattr(lock_module.LOGGER, "debug", interrupt)

    with pytest.raises(KeyboardInterrupt):
        with ExclusiveResourceLock(store).hold("db-1", "owner-a"):
            pytest.fail("block must not run")

    assert _lock_owner(store) is None


def test_interrupt_inside_acquire_releases_lock(store: RegistryStore) -> None:
    """An interrupt after the lock write but before acquire returns still releases."""
    spy = MagicMock(wraps=store)

    def lock_then_interrupt(database_id: str, owner_id: str) -> bool:
        store.lock_multitenant_database(database_id, owner_id)
        raise KeyboardInterrupt

    spy.lock_multitenant_database.side_effect = lock_then_interrupt

    with pytest.raises(KeyboardInterrupt):
        with ExclusiveResourceLock(spy).hold("db-1", "owner-a"):
            pytest.fail("block must not run")

    assert _lock_owner(store) is None


def test_hold_raises_when_locked(store: RegistryStore) -> None:
    """A held lock is reported immediately without touching the holder."""
    lock = ExclusiveResourceLock(store)
    assert lock.acquire("db-1", "owner-a") is True

    with pytest.raises(LockUnavailable):
        with lock.hold("db-1", "owner-b"):
            pytest.fail("block must not run")

    assert _lock_owner(store) == "owner-a"


def test_release_failure_is_logged_not_raised(
    store: RegistryStore, caplog: pytest.LogCaptureFixture
) -> None:
    """A failing release is reported through the lease."""
    lock = ExclusiveResourceLock(store)
    failing = MagicMock(wraps=store)
    failing.unlock_multitenant_database.side_effect = StoreError("registry offline")
    failing_lock = ExclusiveResourceLock(failing)

    with failing_lock.hold("db-1", "owner-a") as lease:
        pass

    assert lease.released is False
    assert "Failed to release" in caplog.text
    assert lock.release("db-1", "owner-a") is True


def test_release_failure_does_not_mask_block_error(store: RegistryStore) -> None:
    """The original failure propagates when release also fails."""
    failing = MagicMock(wraps=store)
    failing.unlock_multitenant_database.side_effect = StoreError("registry offline")

    with pytest.raises(ValueError, match="original"):
        with ExclusiveResourceLock(failing).hold("db-1", "owner-a"):
            raise ValueError("original")


def test_acquire_store_failure_is_persistence_failure() -> None:
    """Datastore errors while locking are wrapped."""
    broken = MagicMock()
    broken.lock_multitenant_database.side_effect = StoreError("down")

    with pytest.raises(PersistenceFailed):
        ExclusiveResourceLock(broken).acquire("db-1", "owner-a")


def test_forced_release_clears_other_owner(store: RegistryStore) -> None:
    """Operators can force-release a lock held by someone else."""
    lock = ExclusiveResourceLock(store)
    lock.acquire("db-1", "crashed-run")

    assert lock.release("db-1", "ops") is False
    assert lock.release("db-1", "ops", force=True) is True
    assert _lock_owner(store) is None
