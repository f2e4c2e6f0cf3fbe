"""Exception hierarchy for the migration engine.

Every fatal condition the engine detects itself derives from
:class:`MigrationError`.  Failures raised by the SQL inside a migration file
are re-raised as the driver's own exception so the caller sees the original
message and traceback.
"""

from __future__ import annotations


class MigrationError(Exception):
    """Base class for all migration engine failures."""


class ConfigurationError(MigrationError, ValueError):
    """Raised for a missing migration directory or an invalid table name."""


class IntegrityViolation(MigrationError):
    """Raised when migration files and the ledger cannot both be right."""


class DigestConflictError(IntegrityViolation):
    """An applied migration's file no longer matches its recorded digest."""

    def __init__(self, filename: str, file_digest: str, database_digest: str) -> None:
        self.filename = filename
        self.file_digest = file_digest
        self.database_digest = database_digest
        super().__init__(
            f"Migration {filename} has digest {file_digest} in files, "
            f"and digest {database_digest} in database"
        )


class EmptyMigrationError(IntegrityViolation):
    """A pending migration file contains nothing but whitespace."""

    def __init__(self, filename: str) -> None:
        self.filename = filename
        super().__init__(f"File {filename} is empty")


class LockError(MigrationError):
    """The migration advisory lock could not be acquired or released."""


class SchemaChangedError(MigrationError):
    """The regenerated schema dump differs while strict checking is on."""

    def __init__(self, path: str, old_digest: str, new_digest: str) -> None:
        self.path = path
        self.old_digest = old_digest
        self.new_digest = new_digest
        super().__init__(
            f"Schema file {path} changed (digest {old_digest or '<none>'} "
            f"-> {new_digest})"
        )
