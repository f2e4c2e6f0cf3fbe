"""Regenerate the schema dump file when the database structure changes."""

from __future__ import annotations

import logging
from pathlib import Path

from pgmigrate.orchestrator.errors import SchemaChangedError
from pgmigrate.orchestrator.files import digest_file, digest_text

logger = logging.getLogger(__name__)


async def update_schema_file(
    path: str | Path | None,
    db,
    throw_on_change: bool = False,
    schema_reader=None,
    log: logging.Logger | None = None,
) -> bool:
    """Write the current schema to *path* if its content changed.

    Parameters
    ----------
    path:
        Destination file.  Empty or ``None`` skips schema tracking.
    db:
        Connected database the schema is read from.
    throw_on_change:
        Raise :class:`SchemaChangedError` instead of writing a changed dump.
    schema_reader:
        ``async (db) -> str``; defaults to :func:`pgmigrate.schema.introspection.get_schema`.

    Returns
    -------
    bool
        True when the file was (re)written.
    """
    log = log or logger
    if not path:
        log.debug("No schema file configured, skipping schema dump")
        return False

    if schema_reader is None:
        from pgmigrate.schema.introspection import get_schema
        schema_reader = get_schema

    path = Path(path)
    old_digest = digest_file(path) if path.is_file() else ""
    schema = await schema_reader(db)
    new_digest = digest_text(schema)

    if old_digest == new_digest:
        log.info("Schema file %s is up to date", path)
        return False
    if throw_on_change:
        raise SchemaChangedError(str(path), old_digest, new_digest)

    path.parent.mkdir(parents=True, exist_ok=True)
    # Bytes, so the on-disk digest matches digest_text() on every platform.
    path.write_bytes(schema.encode("utf-8"))
    log.info("Wrote schema file %s", path)
    return True
