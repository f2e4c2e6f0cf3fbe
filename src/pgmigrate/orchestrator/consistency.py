"""Compare ledger digests against migration files on disk."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from pgmigrate.orchestrator.errors import DigestConflictError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Drift:
    """One ledger entry that disagrees with the files on disk."""

    filename: str
    database_digest: str
    file_digest: str | None = None

    @property
    def message(self) -> str:
        if self.file_digest is None:
            return (
                f"Migration {self.filename} has digest {self.database_digest} "
                "in database, and does not exist in files"
            )
        return (
            f"Migration {self.filename} has digest {self.file_digest} in files, "
            f"and digest {self.database_digest} in database"
        )


@dataclass
class ConsistencyReport:
    """Classification of every ledger entry.

    ``orphaned`` entries are warnings: the migration was applied but its
    file has since been removed.  ``conflicted`` entries are fatal: the file
    was edited after it was applied.
    """

    matched: list[str] = field(default_factory=list)
    orphaned: list[Drift] = field(default_factory=list)
    conflicted: list[Drift] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.conflicted

    @property
    def warnings(self) -> list[str]:
        return [d.message for d in self.orphaned]

    def log_warnings(self, log: logging.Logger | None = None) -> None:
        log = log or logger
        for drift in self.orphaned:
            log.warning(drift.message, extra={"migration": drift.filename})

    def raise_for_conflicts(self) -> None:
        if self.conflicted:
            first = self.conflicted[0]
            raise DigestConflictError(first.filename, first.file_digest, first.database_digest)


def check_digests(
    database_digests: dict[str, str],
    file_digests: dict[str, str],
) -> ConsistencyReport:
    """Classify each ledger filename as matched, orphaned or conflicted.

    Files without a ledger entry are pending work, not drift, and do not
    appear in the report.
    """
    report = ConsistencyReport()
    for filename in sorted(database_digests):
        database_digest = database_digests[filename]
        file_digest = file_digests.get(filename)
        if file_digest is None:
            report.orphaned.append(Drift(filename, database_digest))
        elif file_digest != database_digest:
            report.conflicted.append(Drift(filename, database_digest, file_digest))
        else:
            report.matched.append(filename)
    return report


def pending_filenames(
    database_digests: dict[str, str],
    file_digests: dict[str, str],
) -> list[str]:
    """Filenames on disk with no ledger entry, in ascending order."""
    return sorted(f for f in file_digests if f not in database_digests)
