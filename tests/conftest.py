# tests/conftest.py
"""In-memory stand-in for PostgreSQL sessions used by the engine tests.

``FakeServer`` holds state shared by every session (ledger tables, the
advisory lock, executed migration SQL).  ``FakeDatabase`` implements the
same coroutine interface as :class:`pgmigrate.orchestrator.database.Database`
and yields to the event loop on every call, so concurrent sessions interleave.
"""

from __future__ import annotations

import asyncio
import copy
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

_TABLE_RE = re.compile(r'"public"\."(\w+)"')


class FakeSQLError(Exception):
    """Raised by the fake server where PostgreSQL would report an error."""


class FakeServer:
    def __init__(self) -> None:
        self.tables: dict[str, dict[str, dict]] = {}
        self.executed: list[str] = []
        self.log: list[str] = []
        self.fail_on: set[str] = set()
        self.lock_owner: FakeDatabase | None = None
        self.lock_depth = 0

    def session(self) -> FakeDatabase:
        return FakeDatabase(self)

    def ledger(self, table: str = "migrations") -> dict[str, str]:
        return {name: row["md5"] for name, row in sorted(self.tables.get(table, {}).items())}


class FakeDatabase:
    def __init__(self, server: FakeServer) -> None:
        self.server = server
        self.statement_timeout = "0"
        self.rollback_fails = False
        self.unlock_fails = False
        self._snapshot: tuple | None = None

    # -- transactions -------------------------------------------------

    @property
    def in_transaction(self) -> bool:
        return self._snapshot is not None

    async def begin(self) -> None:
        await asyncio.sleep(0)
        assert self._snapshot is None, "nested transaction"
        self._snapshot = (copy.deepcopy(self.server.tables), len(self.server.executed))
        self.server.log.append("BEGIN")

    async def commit(self) -> None:
        await asyncio.sleep(0)
        assert self._snapshot is not None
        self._snapshot = None
        self.server.log.append("COMMIT")

    async def rollback(self) -> None:
        await asyncio.sleep(0)
        assert self._snapshot is not None
        snapshot, self._snapshot = self._snapshot, None
        if self.rollback_fails:
            raise FakeSQLError("rollback failed")
        tables, executed = snapshot
        self.server.tables = tables
        del self.server.executed[executed:]
        self.server.log.append("ROLLBACK")

    @asynccontextmanager
    async def transaction(self):
        await self.begin()
        try:
            yield self
        except BaseException:
            await self.rollback()
            raise
        await self.commit()

    # -- statements ---------------------------------------------------

    def _table(self, sql: str) -> str:
        match = _TABLE_RE.search(sql)
        assert match, f"no ledger table in {sql!r}"
        return match.group(1)

    async def executescript(self, sql: str) -> None:
        await asyncio.sleep(0)
        for marker in self.server.fail_on:
            if marker in sql:
                raise FakeSQLError(f"syntax error near {marker!r}")
        self.server.executed.append(sql)
        self.server.log.append(f"SCRIPT {sql}")

    async def execute(self, sql: str, *args) -> str:
        await asyncio.sleep(0)
        if sql.startswith("CREATE TABLE IF NOT EXISTS"):
            self.server.tables.setdefault(self._table(sql), {})
            return "CREATE TABLE"
        if sql.startswith("INSERT INTO"):
            rows = self.server.tables[self._table(sql)]
            filename, md5 = args
            if filename in rows:
                raise FakeSQLError(f"duplicate key value: {filename}")
            rows[filename] = {
                "md5": md5,
                "applied_at_utc": datetime.now(timezone.utc).replace(tzinfo=None),
            }
            self.server.log.append(f"INSERT {filename}")
            return "INSERT 0 1"
        if sql.startswith("UPDATE"):
            rows = self.server.tables[self._table(sql)]
            filename, md5 = args
            rows[filename]["md5"] = md5
            self.server.log.append(f"UPDATE {filename}")
            return "UPDATE 1"
        raise AssertionError(f"unexpected statement: {sql!r}")

    async def execute_fetchall(self, sql: str, *args) -> list[dict]:
        await asyncio.sleep(0)
        if sql.startswith("SELECT filename, md5"):
            rows = self.server.tables[self._table(sql)]
            return [
                {"filename": name, **row}
                for name, row in sorted(rows.items(), key=lambda kv: kv[0].encode())
            ]
        raise AssertionError(f"unexpected query: {sql!r}")

    async def execute_fetchone(self, sql: str, *args) -> dict | None:
        rows = await self.execute_fetchall(sql, *args)
        return rows[0] if rows else None

    async def fetchval(self, sql: str, *args):
        await asyncio.sleep(0)
        if "pg_try_advisory_lock" in sql:
            if self.server.lock_owner in (None, self):
                self.server.lock_owner = self
                self.server.lock_depth += 1
                self.server.log.append("LOCK")
                return True
            return False
        if "pg_advisory_unlock" in sql:
            if self.unlock_fails or self.server.lock_owner is not self:
                return False
            self.server.lock_depth -= 1
            if self.server.lock_depth == 0:
                self.server.lock_owner = None
            self.server.log.append("UNLOCK")
            return True
        if "information_schema.tables" in sql:
            return args[1] in self.server.tables
        if "current_setting('statement_timeout')" in sql:
            return self.statement_timeout
        if "set_config('statement_timeout'" in sql:
            self.statement_timeout = args[0]
            self.server.log.append(f"TIMEOUT {args[0]}")
            return args[0]
        raise AssertionError(f"unexpected query: {sql!r}")


async def no_wait(delay: float) -> None:
    """Replacement for asyncio.sleep in lock retries: yield without waiting."""
    await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def db(server: FakeServer) -> FakeDatabase:
    return server.session()


@pytest.fixture
def migrations_dir(tmp_path):
    """An empty migration directory."""
    path = tmp_path / "migrations"
    path.mkdir()
    return path


@pytest.fixture
def write_migration(migrations_dir):
    """Write ``content`` to ``migrations_dir/name`` and return the path."""
    def _write(name: str, content: str):
        path = migrations_dir / name
        path.write_text(content, encoding="utf-8")
        return path
    return _write
