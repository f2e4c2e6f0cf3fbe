"""Apply ordered SQL migration files and keep the digest ledger honest."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path

from pgmigrate.config_loader import MigrationConfig
from pgmigrate.orchestrator.consistency import (
    ConsistencyReport,
    check_digests,
    pending_filenames,
)
from pgmigrate.orchestrator.errors import ConfigurationError, EmptyMigrationError
from pgmigrate.orchestrator.files import (
    list_file_digests,
    read_migration_sql,
    uses_transaction,
)
from pgmigrate.orchestrator.ledger import Ledger
from pgmigrate.orchestrator.lock import AdvisoryLock
from pgmigrate.orchestrator.schema_file import update_schema_file

logger = logging.getLogger(__name__)


@dataclass
class MigrationStatus:
    """Snapshot of the ledger against the files on disk."""

    table_exists: bool
    pending: list[str] = field(default_factory=list)
    report: ConsistencyReport = field(default_factory=ConsistencyReport)

    @property
    def needs_migration(self) -> bool:
        return not self.table_exists or bool(self.pending)

    @property
    def warnings(self) -> list[str]:
        return self.report.warnings


@dataclass
class MigrationResult:
    """Outcome of one successful batch."""

    applied: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    schema_changed: bool = False


class MigrationManager:
    """Apply pending migration files under the cross-process advisory lock.

    Every call re-reads the ledger; nothing is cached between calls.

    Parameters
    ----------
    db:
        A connected :class:`~pgmigrate.orchestrator.database.Database`.
        All work, including the lock, happens on this one session.
    config:
        Directory, ledger table, schema file and timeout settings.
    schema_reader:
        ``async (db) -> str`` used to regenerate the schema dump.
    lock:
        Lock to serialise batches; defaults to the well-known migration lock.
    log:
        Logger for progress and drift warnings.  Pass a disabled logger
        to silence the engine.
    """

    def __init__(
        self,
        db,
        config: MigrationConfig | None = None,
        *,
        schema_reader=None,
        lock: AdvisoryLock | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._db = db
        self.config = config or MigrationConfig()
        self.ledger = Ledger(db, self.config.table_name)
        self.log = log or logger
        self.lock = lock or AdvisoryLock(db, log=self.log)
        self._schema_reader = schema_reader

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def check(self) -> MigrationStatus:
        """Compare ledger and files without taking the lock.

        Raises
        ------
        DigestConflictError
            If an applied migration's file was edited.
        """
        directory = self._require_directory()
        if not await self.ledger.exists():
            pending = sorted(list_file_digests(directory, self.log))
            return MigrationStatus(table_exists=False, pending=pending)

        database_digests = await self.ledger.digests()
        file_digests = list_file_digests(directory, self.log)
        report = self._verify(database_digests, file_digests)
        return MigrationStatus(
            table_exists=True,
            pending=pending_filenames(database_digests, file_digests),
            report=report,
        )

    async def needs_migration(self) -> bool:
        """Return True if the ledger is missing or any file is unapplied."""
        self._require_directory()
        if not await self.ledger.exists():
            return True
        return (await self.check()).needs_migration

    async def migrate(self) -> MigrationResult:
        """Apply every pending migration in filename order.

        The batch stops at the first failure; later files are not attempted.
        The lock is always released and the session's statement timeout is
        always restored.
        """
        directory = self._require_directory()
        async with self._statement_timeout(self.config.statement_timeout_seconds):
            async with self._locked():
                await self.ledger.ensure()
                database_digests = await self.ledger.digests()
                file_digests = list_file_digests(directory, self.log)
                report = self._verify(database_digests, file_digests)

                pending = pending_filenames(database_digests, file_digests)
                self.log.info("There are %d database migration(s) to apply", len(pending))
                result = MigrationResult(warnings=report.warnings)
                if not pending:
                    return result

                for filename in pending:
                    await self._apply(directory / filename, file_digests[filename])
                    result.applied.append(filename)

                result.schema_changed = await update_schema_file(
                    self.config.schema_file,
                    self._db,
                    throw_on_change=self.config.throw_on_changed_schema,
                    schema_reader=self._schema_reader,
                    log=self.log,
                )
                return result

    async def overwrite_digests(self, filenames: list[str] | None = None) -> list[str]:
        """Accept edited files by copying their digests into the ledger.

        Only entries whose file still exists with a different digest are
        touched.  With *filenames*, only those entries are considered.

        Returns
        -------
        list[str]
            Filenames whose ledger digest was replaced.
        """
        directory = self._require_directory()
        async with self._locked():
            await self.ledger.ensure()
            database_digests = await self.ledger.digests()
            file_digests = list_file_digests(directory, self.log)

            wanted = set(filenames) if filenames else None
            if wanted:
                unknown = sorted(wanted - database_digests.keys())
                if unknown:
                    raise ConfigurationError(
                        f"No ledger entry for migration(s): {', '.join(unknown)}"
                    )

            report = check_digests(database_digests, file_digests)
            report.log_warnings(self.log)
            targets = [
                d for d in report.conflicted
                if wanted is None or d.filename in wanted
            ]
            if not targets:
                self.log.info("No migration digests to overwrite")
                return []

            async with self._db.transaction():
                for drift in targets:
                    await self.ledger.overwrite_digest(drift.filename, drift.file_digest)
            for drift in targets:
                self.log.warning(
                    "Overwrote digest of %s: %s -> %s",
                    drift.filename, drift.database_digest, drift.file_digest,
                    extra={"migration": drift.filename},
                )
            return [d.filename for d in targets]

    async def dump_schema(self, throw_on_change: bool | None = None) -> bool:
        """Regenerate the configured schema file outside of a batch."""
        if throw_on_change is None:
            throw_on_change = self.config.throw_on_changed_schema
        return await update_schema_file(
            self.config.schema_file,
            self._db,
            throw_on_change=throw_on_change,
            schema_reader=self._schema_reader,
            log=self.log,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_directory(self) -> Path:
        directory = self.config.directory
        if not directory.is_dir():
            raise ConfigurationError(f"The directory {directory} does not exist")
        return directory

    def _verify(self, database_digests: dict[str, str], file_digests: dict[str, str]) -> ConsistencyReport:
        report = check_digests(database_digests, file_digests)
        report.log_warnings(self.log)
        report.raise_for_conflicts()
        return report

    async def _apply(self, path: Path, digest: str) -> None:
        filename = path.name
        self.log.info("Applying migration %s...", filename, extra={"migration": filename})

        in_transaction = uses_transaction(path)
        if in_transaction:
            await self._db.begin()
        else:
            self.log.info("Skipping transaction for %s", filename)

        try:
            sql = read_migration_sql(path)
            if not sql:
                raise EmptyMigrationError(filename)
            await self._db.executescript(sql)
            await self.ledger.record(filename, digest)
            if in_transaction:
                await self._db.commit()
        except BaseException:
            if in_transaction and self._db.in_transaction:
                try:
                    await self._db.rollback()
                except Exception:
                    self.log.exception("Rollback of migration %s failed", filename)
            raise

        self.log.info("Applied migration %s", filename, extra={"migration": filename})

    @asynccontextmanager
    async def _locked(self):
        """Hold the advisory lock for the enclosed block.

        A release failure is raised only when the block itself succeeded;
        otherwise it is logged so the original error propagates.
        """
        await self.lock.acquire()
        try:
            yield
        except BaseException:
            try:
                await self.lock.release()
            except Exception:
                self.log.exception("Failed to release migration lock")
            raise
        await self.lock.release()

    @asynccontextmanager
    async def _statement_timeout(self, seconds: int | None):
        """Override ``statement_timeout`` for the block and restore it after."""
        if not seconds:
            yield
            return

        original = await self._db.fetchval("SELECT current_setting('statement_timeout')")
        await self._db.fetchval(
            "SELECT set_config('statement_timeout', $1, false)", f"{seconds}s",
        )
        self.log.debug("statement_timeout set to %ss (was %s)", seconds, original)
        try:
            yield
        finally:
            try:
                await self._db.fetchval(
                    "SELECT set_config('statement_timeout', $1, false)", original,
                )
            except Exception:
                self.log.exception("Failed to restore statement_timeout to %s", original)


# ---------------------------------------------------------------------------
# Function-style entry points
# ---------------------------------------------------------------------------


async def needs_migration(
    db,
    directory: str | Path = "migrations",
    table_name: str = "migrations",
    log: logging.Logger | None = None,
) -> bool:
    """Return True if *db* has unapplied migrations from *directory*."""
    config = MigrationConfig(directory=Path(directory), table_name=table_name)
    return await MigrationManager(db, config, log=log).needs_migration()


async def migrate(
    db,
    directory: str | Path = "migrations",
    table_name: str = "migrations",
    schema_file: str = "",
    throw_on_changed_schema: bool = False,
    statement_timeout_seconds: int | None = None,
    log: logging.Logger | None = None,
    schema_reader=None,
) -> MigrationResult:
    """Apply pending migrations from *directory* to *db*."""
    config = MigrationConfig(
        directory=Path(directory),
        table_name=table_name,
        schema_file=schema_file,
        throw_on_changed_schema=throw_on_changed_schema,
        statement_timeout_seconds=statement_timeout_seconds,
    )
    manager = MigrationManager(db, config, schema_reader=schema_reader, log=log)
    return await manager.migrate()
