"""Session-level advisory lock serialising migration batches across processes."""

from __future__ import annotations

import asyncio
import logging
import random

from pgmigrate.orchestrator.errors import LockError

logger = logging.getLogger(__name__)

# Every installation must use the same pair or concurrent runs won't serialise.
MIGRATION_LOCK_ID1 = 1477123592
MIGRATION_LOCK_ID2 = 1012360337

# Seconds to wait before each retry after a failed attempt.
ACQUIRE_LOCK_BACK_OFFS = (0.2, 0.5, 1.0)
ACQUIRE_LOCK_JITTER = 0.05


class AdvisoryLock:
    """Non-reentrant, non-blocking ``pg_try_advisory_lock`` with bounded retry.

    Parameters
    ----------
    db:
        The session the lock is held on.  Release must use the same session.
    back_offs:
        Base delays between attempts; one retry per entry.
    jitter:
        Maximum random offset (seconds, either direction) added to each delay.
    sleep:
        Coroutine used for waiting, replaceable in tests.
    log:
        Logger for retry and release messages.
    """

    def __init__(
        self,
        db,
        key: tuple[int, int] = (MIGRATION_LOCK_ID1, MIGRATION_LOCK_ID2),
        back_offs: tuple[float, ...] = ACQUIRE_LOCK_BACK_OFFS,
        jitter: float = ACQUIRE_LOCK_JITTER,
        sleep=asyncio.sleep,
        log: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self.key = key
        self.back_offs = back_offs
        self.jitter = jitter
        self._sleep = sleep
        self.log = log or logger

    async def try_acquire(self) -> bool:
        return bool(await self._db.fetchval(
            "SELECT pg_try_advisory_lock($1, $2)", *self.key,
        ))

    async def acquire(self) -> None:
        """Take the lock, retrying with jittered back-off, or raise LockError."""
        if await self.try_acquire():
            self.log.debug("Acquired migration lock")
            return
        for attempt, base in enumerate(self.back_offs, start=1):
            delay = max(0.0, base + random.uniform(-self.jitter, self.jitter))
            self.log.debug(
                "Migration lock busy, retry %d/%d in %.3fs",
                attempt, len(self.back_offs), delay,
            )
            await self._sleep(delay)
            if await self.try_acquire():
                self.log.debug("Acquired migration lock after %d retries", attempt)
                return
        raise LockError("Could not acquire lock")

    async def release(self) -> None:
        released = await self._db.fetchval(
            "SELECT pg_advisory_unlock($1, $2)", *self.key,
        )
        if not released:
            raise LockError("Could not release lock")
        self.log.debug("Released migration lock")
