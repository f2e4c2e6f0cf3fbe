"""End-to-end checks against a real PostgreSQL server.

Skipped unless ``PGMIGRATE_TEST_DSN`` points at a disposable database.
"""

from __future__ import annotations

import os

import pytest

from pgmigrate.config_loader import MigrationConfig
from pgmigrate.orchestrator.database import Database
from pgmigrate.orchestrator.errors import DigestConflictError, LockError
from pgmigrate.orchestrator.files import digest_text
from pgmigrate.orchestrator.lock import AdvisoryLock
from pgmigrate.orchestrator.migration import MigrationManager

DSN = os.environ.get("PGMIGRATE_TEST_DSN")

pytestmark = pytest.mark.skipif(not DSN, reason="PGMIGRATE_TEST_DSN not set")

LEDGER = "pgmigrate_it_ledger"


@pytest.fixture
async def pg():
    async with Database(DSN) as database:
        await database.executescript(
            f"DROP TABLE IF EXISTS public.{LEDGER}; DROP TABLE IF EXISTS public.pgmigrate_it_t;"
        )
        yield database
        await database.executescript(
            f"DROP TABLE IF EXISTS public.{LEDGER}; DROP TABLE IF EXISTS public.pgmigrate_it_t;"
        )


async def test_apply_record_and_dump(pg, migrations_dir, write_migration, tmp_path):
    first = "CREATE TABLE public.pgmigrate_it_t (id int);"
    write_migration("20200101000000_t.sql", first)
    write_migration("20200101000001_x.sql", "ALTER TABLE public.pgmigrate_it_t ADD COLUMN x text;")
    schema_file = tmp_path / "schema.sql"
    config = MigrationConfig(
        directory=migrations_dir, table_name=LEDGER, schema_file=str(schema_file),
        statement_timeout_seconds=30,
    )
    manager = MigrationManager(pg, config)

    assert await manager.needs_migration() is True
    result = await manager.migrate()

    assert result.applied == ["20200101000000_t.sql", "20200101000001_x.sql"]
    assert await manager.needs_migration() is False
    rows = await pg.execute_fetchall(f"SELECT filename, md5 FROM public.{LEDGER} ORDER BY filename")
    assert rows[0] == {"filename": "20200101000000_t.sql", "md5": digest_text(first)}
    assert "CREATE TABLE public.pgmigrate_it_t (\n    id integer,\n    x text\n);" in schema_file.read_text()
    assert await pg.fetchval("SELECT current_setting('statement_timeout')") == "0"


async def test_failed_migration_leaves_no_trace(pg, migrations_dir, write_migration):
    write_migration("20200101000000_t.sql", "CREATE TABLE public.pgmigrate_it_t (id int); SELEC 1;")
    manager = MigrationManager(pg, MigrationConfig(directory=migrations_dir, table_name=LEDGER))

    with pytest.raises(Exception):
        await manager.migrate()

    assert await pg.fetchval("SELECT to_regclass('public.pgmigrate_it_t')") is None
    assert await pg.execute_fetchall(f"SELECT filename FROM public.{LEDGER}") == []


async def test_edited_file_is_rejected(pg, migrations_dir, write_migration):
    path = write_migration("20200101000000_t.sql", "CREATE TABLE public.pgmigrate_it_t (id int);")
    manager = MigrationManager(pg, MigrationConfig(directory=migrations_dir, table_name=LEDGER))
    await manager.migrate()

    path.write_text("CREATE TABLE public.pgmigrate_it_t (id bigint);")
    with pytest.raises(DigestConflictError):
        await manager.migrate()

    assert await manager.overwrite_digests() == ["20200101000000_t.sql"]
    assert await manager.needs_migration() is False


async def test_lock_is_exclusive_across_sessions(pg):
    async with Database(DSN) as other:
        held = AdvisoryLock(other)
        await held.acquire()
        try:
            with pytest.raises(LockError, match="Could not acquire lock"):
                await AdvisoryLock(pg, back_offs=(0.01,)).acquire()
        finally:
            await held.release()
