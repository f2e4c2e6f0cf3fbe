"""pgmigrate: ordered, checksummed SQL migrations for PostgreSQL. Main entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from pgmigrate.config_loader import ConnectionConfig, MigrationConfig, load_config
from pgmigrate.logging_config import setup_logging
from pgmigrate.orchestrator.database import Database
from pgmigrate.orchestrator.errors import MigrationError
from pgmigrate.orchestrator.files import create_migration_file
from pgmigrate.orchestrator.migration import MigrationManager

logger = logging.getLogger(__name__)


def resolve_configs(args) -> tuple[MigrationConfig, ConnectionConfig]:
    """Layer command-line flags over the config file and environment."""
    migration, connection = load_config(
        Path(args.config) if getattr(args, "config", None) else None
    )
    migration = migration.with_overrides(
        directory=getattr(args, "migration_dir", None),
        table_name=getattr(args, "migration_table", None),
        schema_file=getattr(args, "schema_file", None),
        statement_timeout_seconds=getattr(args, "statement_timeout", None),
    )
    if getattr(args, "throw_on_changed_schema", False):
        migration = migration.with_overrides(throw_on_changed_schema=True)
    connection = connection.with_overrides(
        uri=getattr(args, "uri", None),
        host=getattr(args, "host", None),
        port=getattr(args, "port", None),
        database=getattr(args, "database", None),
        user=getattr(args, "username", None),
        password=getattr(args, "password", None),
    )
    return migration, connection


def _cmd_create(args) -> int:
    """Create an empty migration file."""
    migration, _ = resolve_configs(args)
    path = create_migration_file(args.name or "", migration.directory)
    print(f"Database migration created: {path}")
    return 0


async def _run_database_command(args) -> int:
    migration, connection = resolve_configs(args)
    db = Database(**connection.connect_kwargs())
    await db.connect()
    try:
        manager = MigrationManager(db, migration)

        if args.command == "migrate":
            result = await manager.migrate()
            print(f"Applied {len(result.applied)} migration(s)")
            return 0

        if args.command == "overwrite-md5":
            updated = await manager.overwrite_digests(args.filenames or None)
            for filename in updated:
                print(f"Overwrote digest of {filename}")
            if not updated:
                print("No digests to overwrite")
            return 0

        if args.command == "dump-schema":
            if not migration.schema_file:
                print("Error: no schema file configured (use --schema-file)", file=sys.stderr)
                return 1
            changed = await manager.dump_schema(throw_on_change=args.check)
            print(f"Schema file {'updated' if changed else 'unchanged'}: {migration.schema_file}")
            return 0

        if args.command == "status":
            status = await manager.check()
            for warning in status.warnings:
                print(f"Warning: {warning}")
            if not status.table_exists:
                print(f"Migration table {migration.table_name} does not exist")
            for filename in status.pending:
                print(f"Pending: {filename}")
            if status.needs_migration:
                print(f"{len(status.pending)} migration(s) to apply")
                return 1
            print("Database is up to date")
            return 0

        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await db.close()


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default=None, help="Config file (default: ./pgmigrate.yaml)")
    parser.add_argument("--migration-dir", "-d", default=None,
                        help="The migration directory to use (default: migrations)")


def _add_database_arguments(parser: argparse.ArgumentParser) -> None:
    _add_common_arguments(parser)
    parser.add_argument("--migration-table", "-t", default=None,
                        help="The migration table name to use (default: migrations)")
    parser.add_argument("--uri", default=None,
                        help="Connection URI (or set PGURI / DATABASE_URL)")
    parser.add_argument("--host", default=None,
                        help="Database server host or socket directory (or set PGHOST)")
    parser.add_argument("--port", "-p", type=int, default=None,
                        help="Database server port (or set PGPORT)")
    parser.add_argument("--database", "-D", default=None,
                        help="Database name to connect to (or set PGDATABASE)")
    parser.add_argument("--username", "-U", default=None,
                        help="Database user name (or set PGUSER)")
    parser.add_argument("--password", "-W", default=None,
                        help="Database password (or set PGPASSWORD)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgmigrate",
        description="Apply ordered SQL migration files to a PostgreSQL database",
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # create
    create_parser = sub.add_parser("create", help="Create a database migration")
    create_parser.add_argument("name", nargs="?", default="", help="Migration name")
    _add_common_arguments(create_parser)

    # migrate
    migrate_parser = sub.add_parser("migrate", help="Apply un-applied database migrations")
    _add_database_arguments(migrate_parser)
    migrate_parser.add_argument("--schema-file", default=None,
                                help="Write the schema dump here after migrating")
    migrate_parser.add_argument("--throw-on-changed-schema", action="store_true",
                                help="Fail if the schema dump would change")
    migrate_parser.add_argument("--statement-timeout", type=int, default=None,
                                help="Statement timeout in seconds for the batch")

    # overwrite-md5
    overwrite_parser = sub.add_parser(
        "overwrite-md5", help="Replace ledger digests of edited migration files",
    )
    overwrite_parser.add_argument("filenames", nargs="*", help="Limit to these migrations")
    _add_database_arguments(overwrite_parser)

    # dump-schema
    dump_parser = sub.add_parser("dump-schema", help="Write the database schema to a file")
    _add_database_arguments(dump_parser)
    dump_parser.add_argument("--schema-file", default=None, help="Schema dump path")
    dump_parser.add_argument("--check", action="store_true",
                             help="Fail instead of writing when the schema changed")

    # status
    status_parser = sub.add_parser(
        "status", help="Show pending migrations (exit code 1 if any)",
    )
    _add_database_arguments(status_parser)

    return parser


def cli_main(argv: list[str] | None = None) -> None:
    # Load .env before anything else so PG* variables are visible
    load_dotenv()
    setup_logging()

    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        sys.exit(2)

    try:
        if args.command == "create":
            code = _cmd_create(args)
        else:
            code = asyncio.run(_run_database_command(args))
    except MigrationError as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    cli_main()
