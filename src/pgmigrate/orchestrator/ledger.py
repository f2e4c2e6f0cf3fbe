"""Access to the ledger table recording applied migrations."""

from __future__ import annotations

import re

from pgmigrate.orchestrator.errors import ConfigurationError

LEDGER_SCHEMA = "public"
DEFAULT_TABLE_NAME = "migrations"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def quote_identifier(name: str) -> str:
    """Return *name* double-quoted for interpolation into SQL.

    Only plain identifiers are accepted; anything else raises
    :class:`ConfigurationError` before it can reach the database.
    """
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise ConfigurationError(f"Invalid migration table name: {name!r}")
    return f'"{name}"'


class Ledger:
    """Read and write the ``(filename, md5, applied_at_utc)`` ledger table.

    Parameters
    ----------
    db:
        A connected :class:`~pgmigrate.orchestrator.database.Database`.
    table_name:
        Unqualified ledger table name; the table always lives in ``public``.
    """

    def __init__(self, db, table_name: str = DEFAULT_TABLE_NAME) -> None:
        self._db = db
        self.table_name = table_name
        self.qualified_name = f"{quote_identifier(LEDGER_SCHEMA)}.{quote_identifier(table_name)}"

    async def exists(self) -> bool:
        return bool(await self._db.fetchval(
            "SELECT EXISTS ("
            " SELECT FROM information_schema.tables"
            " WHERE table_schema = $1 AND table_name = $2"
            ")",
            LEDGER_SCHEMA, self.table_name,
        ))

    async def ensure(self) -> None:
        """Create the ledger table if it does not exist yet."""
        await self._db.execute(
            f"CREATE TABLE IF NOT EXISTS {self.qualified_name} ("
            ' filename TEXT COLLATE "C" NOT NULL PRIMARY KEY,'
            " md5 CHAR(32) NOT NULL,"
            " applied_at_utc TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'UTC')"
            ")"
        )

    async def digests(self) -> dict[str, str]:
        """Return ``{filename: md5}`` ordered by filename."""
        rows = await self._db.execute_fetchall(
            f"SELECT filename, md5 FROM {self.qualified_name} ORDER BY filename"
        )
        return {r["filename"]: r["md5"] for r in rows}

    async def entries(self) -> list[dict]:
        return await self._db.execute_fetchall(
            f"SELECT filename, md5, applied_at_utc FROM {self.qualified_name} "
            "ORDER BY filename"
        )

    async def record(self, filename: str, digest: str) -> None:
        await self._db.execute(
            f"INSERT INTO {self.qualified_name} (filename, md5) VALUES ($1, $2)",
            filename, digest,
        )

    async def overwrite_digest(self, filename: str, digest: str) -> None:
        await self._db.execute(
            f"UPDATE {self.qualified_name} SET md5 = $2 WHERE filename = $1",
            filename, digest,
        )
