"""Load and validate migration and connection settings.

Settings are resolved in this order, later sources winning:

1. built-in defaults
2. ``PG*`` / ``DATABASE_URL`` environment variables (connection only)
3. an optional ``pgmigrate.yaml`` file
4. command-line flags
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

from pgmigrate.orchestrator.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "pgmigrate.yaml"

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _validate_table_name(value: Any) -> None:
    if not isinstance(value, str) or not _TABLE_NAME_RE.match(value):
        raise ConfigurationError(f"Invalid migration table name: {value!r}")


def _validate_timeout(value: Any) -> None:
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigurationError(
            f"Config 'statement_timeout_seconds' must be a positive integer, got {value!r}"
        )


# ---------------------------------------------------------------------------
# Migration settings
# ---------------------------------------------------------------------------


@dataclass
class MigrationConfig:
    """What to migrate and how.

    Attributes
    ----------
    directory:
        Folder holding the ``YYYYMMDDHHmmss[_name].sql`` files.
    table_name:
        Ledger table, created in the ``public`` schema.
    schema_file:
        Where to write the schema dump after a batch; empty disables it.
    throw_on_changed_schema:
        Fail instead of writing when the dump would change.
    statement_timeout_seconds:
        Session ``statement_timeout`` for the batch; ``None`` keeps the
        server's setting.
    """

    directory: Path = Path("migrations")
    table_name: str = "migrations"
    schema_file: str = ""
    throw_on_changed_schema: bool = False
    statement_timeout_seconds: int | None = None

    def __post_init__(self) -> None:
        self.directory = Path(self.directory)
        self.schema_file = str(self.schema_file or "")
        _validate_table_name(self.table_name)
        _validate_timeout(self.statement_timeout_seconds)

    def with_overrides(self, **overrides: Any) -> MigrationConfig:
        """Return a copy with every non-``None`` override applied."""
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        return replace(self, **changes)


# ---------------------------------------------------------------------------
# Connection settings
# ---------------------------------------------------------------------------


@dataclass
class ConnectionConfig:
    """Where the database lives.  ``uri`` wins over the discrete fields."""

    uri: str | None = None
    host: str = "localhost"
    port: int = 5432
    database: str | None = None
    user: str = "postgres"
    password: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ConnectionConfig:
        env = os.environ if environ is None else environ
        port_raw = env.get("PGPORT") or "5432"
        try:
            port = int(port_raw)
        except ValueError:
            raise ConfigurationError(f"PGPORT must be an integer, got {port_raw!r}") from None
        return cls(
            uri=env.get("PGURI") or env.get("DATABASE_URL") or None,
            host=env.get("PGHOST") or "localhost",
            port=port,
            database=env.get("PGDATABASE") or None,
            user=env.get("PGUSER") or "postgres",
            password=env.get("PGPASSWORD") or None,
        )

    def with_overrides(self, **overrides: Any) -> ConnectionConfig:
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        return replace(self, **changes)

    def connect_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for :class:`~pgmigrate.orchestrator.database.Database`."""
        if self.uri:
            return {"dsn": self.uri}
        kwargs: dict[str, Any] = {"host": self.host, "port": self.port, "user": self.user}
        if self.database:
            kwargs["database"] = self.database
        if self.password:
            kwargs["password"] = self.password
        return kwargs


# ---------------------------------------------------------------------------
# YAML file
# ---------------------------------------------------------------------------


def load_config(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[MigrationConfig, ConnectionConfig]:
    """Load settings from *path* layered over the environment.

    Parameters
    ----------
    path:
        YAML file with optional ``migrations:`` and ``database:`` sections.
        ``None`` means ``./pgmigrate.yaml``; a missing file yields defaults.

    Raises
    ------
    ConfigurationError
        If the file is malformed or holds invalid values.
    """
    path = Path(path) if path is not None else Path(DEFAULT_CONFIG_FILE)
    connection = ConnectionConfig.from_env(environ)

    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return MigrationConfig(), connection

    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    migrations_raw = data.get("migrations") or {}
    database_raw = data.get("database") or {}
    if not isinstance(migrations_raw, dict) or not isinstance(database_raw, dict):
        raise ConfigurationError(
            f"Sections 'migrations' and 'database' in {path} must be mappings"
        )

    unknown = set(migrations_raw) - {f.name for f in fields(MigrationConfig)}
    if unknown:
        logger.warning("Ignoring unknown migration settings in %s: %s", path, sorted(unknown))

    migration = MigrationConfig().with_overrides(**migrations_raw)

    if "port" in database_raw and database_raw["port"] is not None:
        try:
            database_raw = {**database_raw, "port": int(database_raw["port"])}
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Config 'database.port' must be an integer, got {database_raw['port']!r}"
            ) from None
    connection = connection.with_overrides(**database_raw)

    return migration, connection
