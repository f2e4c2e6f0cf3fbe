"""Tests for the advisory migration lock."""

from __future__ import annotations

import pytest

from pgmigrate.orchestrator.errors import LockError
from pgmigrate.orchestrator.lock import (
    ACQUIRE_LOCK_BACK_OFFS,
    ACQUIRE_LOCK_JITTER,
    MIGRATION_LOCK_ID1,
    MIGRATION_LOCK_ID2,
    AdvisoryLock,
)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def test_lock_key_is_fixed():
    lock = AdvisoryLock(object())
    assert lock.key == (MIGRATION_LOCK_ID1, MIGRATION_LOCK_ID2) == (1477123592, 1012360337)


async def test_acquire_first_try(server, db):
    sleep = RecordingSleep()
    await AdvisoryLock(db, sleep=sleep).acquire()
    assert server.lock_owner is db
    assert sleep.delays == []


async def test_acquire_exhausts_retries(server, db):
    other = server.session()
    await AdvisoryLock(other).acquire()
    sleep = RecordingSleep()

    with pytest.raises(LockError, match="Could not acquire lock"):
        await AdvisoryLock(db, sleep=sleep).acquire()

    assert len(sleep.delays) == len(ACQUIRE_LOCK_BACK_OFFS) == 3
    for delay, base in zip(sleep.delays, ACQUIRE_LOCK_BACK_OFFS):
        assert base - ACQUIRE_LOCK_JITTER <= delay <= base + ACQUIRE_LOCK_JITTER
    assert server.lock_owner is other


async def test_acquire_succeeds_after_holder_releases(server, db):
    other = server.session()
    other_lock = AdvisoryLock(other)
    await other_lock.acquire()

    sleep_calls = []

    async def release_on_first_sleep(delay: float) -> None:
        sleep_calls.append(delay)
        if len(sleep_calls) == 1:
            await other_lock.release()

    await AdvisoryLock(db, sleep=release_on_first_sleep).acquire()

    assert server.lock_owner is db
    assert len(sleep_calls) == 1


async def test_release_not_held(db):
    with pytest.raises(LockError, match="Could not release lock"):
        await AdvisoryLock(db).release()


async def test_release(server, db):
    lock = AdvisoryLock(db)
    await lock.acquire()
    await lock.release()
    assert server.lock_owner is None
