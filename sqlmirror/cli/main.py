"""
sqlmirror CLI - unified entrypoint for running migrations.

Usage examples:
    sqlmirror up
    sqlmirror down
    sqlmirror create --name "add users"
    sqlmirror status
    python -m sqlmirror up --database-url postgresql://localhost/app
"""

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from sqlmirror.base.config import SqlMirrorConfig, get_config, set_config, setup_logging
from sqlmirror.data.db import PostgresDatabase
from sqlmirror.errors import MigrationStoppedError, SqlMirrorError
from sqlmirror.migrations.migrator import Migrator, MigratorSettings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sqlmirror", description="Versioned PostgreSQL migrations")
    parser.add_argument("--database-url", help="PostgreSQL connection URL (env: SQLMIRROR_DATABASE_URL)")
    parser.add_argument("--migrations-dir", type=Path, help="Migrations directory (env: SQLMIRROR_MIGRATIONS_DIR)")
    parser.add_argument("--table-name", help="Ledger table name (env: SQLMIRROR_TABLE_NAME)")
    parser.add_argument("--log-level", help="Logging level (env: SQLMIRROR_LOG_LEVEL)")
    parser.add_argument("--no-lock", action="store_true", help="Do not take the advisory lock around up/down")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("up", help="Apply all pending migrations")
    commands.add_parser("down", help="Revert the most recently applied migration")
    create = commands.add_parser("create", help="Scaffold the next migration's files")
    create.add_argument("-n", "--name", required=True, help="Migration name")
    commands.add_parser("status", help="List applied and pending migrations")
    return parser


def resolve_config(args: argparse.Namespace, base: Optional[SqlMirrorConfig] = None) -> SqlMirrorConfig:
    """Apply command-line overrides on top of the environment config."""
    config = base or get_config()

    database = config.database
    if args.database_url:
        database = replace(database, url=args.database_url)

    migrations = config.migrations
    if args.migrations_dir:
        migrations = replace(migrations, directory=args.migrations_dir)
    if args.table_name:
        migrations = replace(migrations, table_name=args.table_name)
    if args.no_lock:
        migrations = replace(migrations, lock_enabled=False)

    log = config.log
    if args.log_level:
        log = replace(log, level=args.log_level)

    return replace(config, database=database, migrations=migrations, log=log)


def _install_signal_handlers(migrator: Migrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, migrator.request_stop)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform/loop; default handling applies
            pass


def _print_status(statuses) -> None:
    if not statuses:
        print("No migrations found.")
        return
    for status in statuses:
        if status.applied and status.checksum_matches is False:
            marker = "changed"
        elif status.applied and not status.on_disk:
            marker = "missing"
        elif status.applied:
            marker = "applied"
        else:
            marker = "pending"
        when = f"  {status.applied_at}" if status.applied_at else ""
        print(f"{marker:<8} {status.version:<16} {status.name}{when}")


async def run(args: argparse.Namespace, config: SqlMirrorConfig) -> int:
    settings = MigratorSettings.from_config(config.migrations)

    if args.command == "create":
        # Filesystem only; no database connection needed
        migrator = Migrator(database=PostgresDatabase(config.database.url), settings=settings)
        for path in migrator.create(args.name):
            print(f"Created {path}")
        return EXIT_OK

    async with PostgresDatabase(config.database.url, config.database.connect_timeout) as database:
        migrator = Migrator(database=database, settings=settings)
        # Only up and down check the stop flag
        if args.command in ("up", "down"):
            _install_signal_handlers(migrator)

        if args.command == "up":
            applied = await migrator.up()
            for identity in applied:
                print(f"Applied {identity.version} {identity.name}")
            if migrator.stop_requested:
                return EXIT_INTERRUPTED
        elif args.command == "down":
            identity = await migrator.down()
            print(f"Reverted {identity.version} {identity.name}")
        elif args.command == "status":
            _print_status(await migrator.status())

    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = resolve_config(args)
    set_config(config)
    setup_logging(config)

    if args.command != "create" and not config.database.url:
        parser.error("no database URL; pass --database-url or set SQLMIRROR_DATABASE_URL")

    try:
        return asyncio.run(run(args, config))
    except MigrationStoppedError as e:
        print(f"Stopped: {e.message}", file=sys.stderr)
        return EXIT_INTERRUPTED
    except SqlMirrorError as e:
        print(f"Error: {e}", file=sys.stderr)
        for key, value in e.details.items():
            print(f"  {key}: {value}", file=sys.stderr)
        return EXIT_FAILURE
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.debug("Unhandled error", exc_info=True)
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
