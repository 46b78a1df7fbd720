"""
Migrator - Applies and Reverts Versioned Migrations

This module reconciles the migration files on disk with the ledger table in
the database:

- up():   create the ledger if needed, then apply every migration whose
          version is not in the ledger, in ascending version order
- down(): revert exactly the most recently applied migration
- create(): scaffold up/down/config files for the next major version
- status(): report applied/pending migrations and checksum drift

Each migration runs in its own transaction together with its ledger write,
so a failure leaves the ledger exactly as it was before that migration.
Processing stops at the first failure.
"""

import hashlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Tuple

from sqlmirror.base.config import DEFAULT_TABLE_NAME, MigrationsConfig
from sqlmirror.data.db import Database
from sqlmirror.data.ledger import LedgerRow, MigrationLedger, MigrationTableState
from sqlmirror.errors import (
    DuplicateMigrationVersionError,
    MigrationFileNotFoundError,
    NoAppliedMigrationsError,
    NoMigrationTableError,
    OutOfOrderMigrationError,
    SqlMirrorError,
    TransactionControlError,
)
from sqlmirror.migrations import semver
from sqlmirror.migrations.loader import ConfigLoader, ModuleConfigLoader
from sqlmirror.migrations.naming import MigrationIdentity, MigrationType, parse, serialize
from sqlmirror.schema.assembler import assemble, transaction_body, transaction_control_statements

logger = logging.getLogger(__name__)

CONFIG_TEMPLATE = '''"""
Schema config for migration {version} {name}.

Return a schema config (or a plain dict) from config() to regenerate the
up/down SQL files from it before they run. Return {{}} to keep them
hand-written.
"""

from sqlmirror.schema import chunks


def config():
    return {{}}
'''

SCAFFOLD_CONTENT = {
    MigrationType.UP: "-- up file\n",
    MigrationType.DOWN: "-- down file\n",
}


def generate_checksum(content: str) -> str:
    """MD5 hex digest of the UTF-8 encoded text."""
    return hashlib.md5(content.encode("utf-8")).hexdigest()


def lock_key(table_name: str) -> int:
    """Stable signed 64-bit advisory lock key derived from the ledger name."""
    digest = hashlib.md5(f"sqlmirror:{table_name}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


@dataclass(frozen=True)
class MigratorSettings:
    directory: Path
    table_name: str = DEFAULT_TABLE_NAME
    lock_enabled: bool = True

    @property
    def id_column(self) -> str:
        return f"{self.table_name}_id"

    @classmethod
    def from_config(cls, config: MigrationsConfig) -> "MigratorSettings":
        return cls(
            directory=Path(config.directory),
            table_name=config.table_name,
            lock_enabled=config.lock_enabled,
        )


@dataclass(frozen=True)
class MigrationFile:
    """A migration file found on disk."""

    identity: MigrationIdentity
    path: Path

    @property
    def version(self) -> str:
        return self.identity.version


@dataclass(frozen=True)
class MigrationStatus:
    version: str
    name: str
    applied: bool
    on_disk: bool
    checksum_matches: Optional[bool] = None
    applied_at: Optional[str] = None


class Migrator:
    """
    Migration Lifecycle Controller.

    Args:
        database: Connected Database capability
        settings: Migrations directory and ledger table settings
        config_loader: Resolves per-migration config modules (defaults to
            importing them from disk)
    """

    def __init__(
        self,
        database: Database,
        settings: MigratorSettings,
        config_loader: Optional[ConfigLoader] = None,
    ):
        self.database = database
        self.settings = settings
        self.config_loader = config_loader or ModuleConfigLoader()
        self.ledger = MigrationLedger(database, settings.table_name)
        self._stop_requested = False

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Stop after the migration currently running (if any) finishes."""
        if not self._stop_requested:
            logger.warning("[Migrator] Stop requested; finishing the current migration first")
        self._stop_requested = True

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    @asynccontextmanager
    async def _locked(self) -> AsyncIterator[None]:
        if not self.settings.lock_enabled:
            yield
            return
        async with self.database.lock(lock_key(self.settings.table_name), should_stop=lambda: self._stop_requested):
            yield

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover(self) -> List[MigrationFile]:
        """
        List migration files, sorted by version.

        Sub-directories (e.g. __pycache__) and dotfiles are skipped. Any other
        file must be a valid migration filename.
        """
        directory = self.settings.directory
        if not directory.exists():
            logger.warning(f"[Migrator] Migrations directory {directory} does not exist")
            return []

        migrations = [
            MigrationFile(identity=parse(path.name), path=path)
            for path in directory.iterdir()
            if path.is_file() and not path.name.startswith(".")
        ]
        migrations.sort(key=lambda m: (semver.sort_key(m.version), m.identity.type.value, m.path.name))
        return migrations

    def _catalog(self, migrations: List[MigrationFile]) -> Dict[MigrationType, Dict[Tuple, MigrationFile]]:
        """Index files by type and version; two files for one slot is fatal."""
        catalog: Dict[MigrationType, Dict[Tuple, MigrationFile]] = {t: {} for t in MigrationType}
        for migration in migrations:
            slot = catalog[migration.identity.type]
            key = semver.sort_key(migration.version)
            if key in slot:
                raise DuplicateMigrationVersionError(
                    f"Version {migration.version} is claimed by both {slot[key].path.name} and {migration.path.name}",
                    details={
                        "version": migration.version,
                        "filenames": [slot[key].path.name, migration.path.name],
                    },
                )
            slot[key] = migration
        return catalog

    def _path(self, identity: MigrationIdentity) -> Path:
        return self.settings.directory / identity.filename

    # ------------------------------------------------------------------
    # Up
    # ------------------------------------------------------------------

    async def up(self) -> List[MigrationIdentity]:
        """
        Apply all pending migrations in ascending version order.

        Returns:
            Identities of the applied up migrations

        Raises:
            DuplicateMigrationVersionError: Two files claim the same version
            OutOfOrderMigrationError: A pending version sorts below the last
                applied one
            MigrationStoppedError: A stop was requested while waiting for the
                migration lock
        """
        applied: List[MigrationIdentity] = []
        async with self._locked():
            state = await self.ledger.get_state()
            if state.state is MigrationTableState.TABLE_NOT_CREATED:
                await self.ledger.create_table()

            catalog = self._catalog(self.discover())
            applied_versions = {semver.sort_key(row.version) for row in await self.ledger.rows()}
            pending = [
                migration
                for key, migration in sorted(catalog[MigrationType.UP].items())
                if key not in applied_versions
            ]

            if state.last is not None:
                self._check_order(pending, state.last)

            if not pending:
                logger.info("[Migrator] Schema is up to date")
                return applied

            logger.info(f"[Migrator] Found {len(pending)} pending migrations")
            for migration in pending:
                if self._stop_requested:
                    logger.warning(f"[Migrator] Stopped before {migration.path.name}; {len(pending) - len(applied)} left pending")
                    break
                await self.apply_up(migration.identity)
                applied.append(migration.identity)

        logger.info(f"[Migrator] Applied {len(applied)} migrations")
        return applied

    def _check_order(self, pending: List[MigrationFile], last: LedgerRow) -> None:
        behind = [m for m in pending if semver.compare(m.version, last.version) < 0]
        if behind:
            raise OutOfOrderMigrationError(
                f"Migration {behind[0].path.name} was never applied but sorts below the last applied "
                f"version {last.version}; give it a version above {last.version}",
                details={
                    "filenames": [m.path.name for m in behind],
                    "last_applied_version": last.version,
                },
            )

    async def apply_up(self, identity: MigrationIdentity) -> None:
        """Execute one up migration and record it in the ledger atomically."""
        identity = identity.sibling(MigrationType.UP)
        path = self._path(identity)

        logger.info(f"[Migrator] Applying {identity.display_name} ({path.name})")
        try:
            await self._regenerate(identity)
            content = self._read(path)
            checksum = generate_checksum(content)
            body = self._body(identity, content)

            async with self.database.transaction():
                await self.database.execute(body)
                await self.ledger.record(identity.version, identity.name, path.name, checksum)
        except Exception as e:
            logger.error(f"[Migrator] Failed to apply {path.name} (version {identity.version}): {e}")
            raise

        logger.info(f"[Migrator] Applied {identity.display_name}")

    # ------------------------------------------------------------------
    # Down
    # ------------------------------------------------------------------

    async def down(self) -> MigrationIdentity:
        """
        Revert the most recently applied migration.

        Returns:
            Identity of the executed down migration

        Raises:
            NoMigrationTableError: The ledger table does not exist
            NoAppliedMigrationsError: The ledger is empty
            MigrationStoppedError: A stop was requested while waiting for the
                migration lock
        """
        async with self._locked():
            state = await self.ledger.get_state()
            if state.state is MigrationTableState.TABLE_NOT_CREATED:
                raise NoMigrationTableError(
                    "Migration table not created",
                    details={"table": self.settings.table_name},
                )
            if state.state is MigrationTableState.NO_MIGRATIONS_APPLIED:
                raise NoAppliedMigrationsError(
                    "No migrations applied",
                    details={"table": self.settings.table_name},
                )

            self._catalog(self.discover())
            last = state.last
            identity = MigrationIdentity(
                type=MigrationType.DOWN,
                version=last.version,
                name=last.name,
                ext=MigrationType.DOWN.ext,
            )
            await self.apply_down(identity)
        return identity

    async def apply_down(self, identity: MigrationIdentity) -> None:
        """Execute one down migration and delete its ledger row atomically."""
        identity = identity.sibling(MigrationType.DOWN)
        path = self._path(identity)

        logger.info(f"[Migrator] Reverting {identity.display_name} ({path.name})")
        try:
            await self._regenerate(identity)
            if not path.is_file():
                raise MigrationFileNotFoundError(
                    f"Down migration {path.name} not found in {self.settings.directory}",
                    details={"filename": path.name, "version": identity.version},
                )
            body = self._body(identity, self._read(path))

            async with self.database.transaction():
                await self.database.execute(body)
                await self.ledger.remove(identity.version)
        except Exception as e:
            logger.error(f"[Migrator] Failed to revert {path.name} (version {identity.version}): {e}")
            raise

        logger.info(f"[Migrator] Reverted {identity.display_name}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _body(self, identity: MigrationIdentity, content: str) -> str:
        """Statements to run inside the migration transaction."""
        body = transaction_body(content)
        statements = transaction_control_statements(body)
        if statements:
            filename = identity.filename
            raise TransactionControlError(
                f"{filename} controls its own transaction ({statements[0]}); "
                f"each migration already runs in one transaction with its ledger write",
                details={"filename": filename, "version": identity.version, "statements": statements},
            )
        return body

    @staticmethod
    def _read(path: Path) -> str:
        # Bytes, not text mode: the checksum must see the file as stored
        return path.read_bytes().decode("utf-8")

    async def _regenerate(self, identity: MigrationIdentity) -> bool:
        """
        Rewrite the SQL file for ``identity`` from its config module.

        Returns:
            True if the file was regenerated
        """
        config_path = self._path(identity.sibling(MigrationType.CONFIG))
        if not config_path.is_file():
            return False

        try:
            config = self.config_loader.load(config_path)
            if config is None:
                return False
            generated = assemble(config)
        except SqlMirrorError as e:
            e.details.setdefault("filename", config_path.name)
            e.details.setdefault("version", identity.version)
            raise

        content = generated.up if identity.type is MigrationType.UP else generated.down
        path = self._path(identity)
        path.write_bytes(content.encode("utf-8"))
        logger.info(f"[Migrator] Regenerated {path.name} from {config_path.name}")
        return True

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, name: str) -> List[Path]:
        """
        Scaffold up, down and config files for the next major version.

        Args:
            name: Human migration name (transliterated to snake_case)

        Returns:
            Paths of the created files
        """
        migrations = self.discover()
        self._catalog(migrations)
        latest = max((m.version for m in migrations), key=semver.sort_key, default=None)
        version = semver.next_major(latest)

        directory = self.settings.directory
        directory.mkdir(parents=True, exist_ok=True)

        created = []
        for migration_type in (MigrationType.UP, MigrationType.DOWN, MigrationType.CONFIG):
            path = directory / serialize(migration_type, version, name)
            if migration_type is MigrationType.CONFIG:
                content = CONFIG_TEMPLATE.format(version=version, name=parse(path.name).name)
            else:
                content = SCAFFOLD_CONTENT[migration_type]
            path.write_text(content, encoding="utf-8")
            created.append(path)
            logger.info(f"[Migrator] Created {path}")
        return created

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def status(self) -> List[MigrationStatus]:
        """Applied and pending migrations, with checksum drift for applied ones."""
        state = await self.ledger.get_state()
        rows: List[LedgerRow] = []
        if state.state is not MigrationTableState.TABLE_NOT_CREATED:
            rows = await self.ledger.rows()
        rows_by_key = {semver.sort_key(row.version): row for row in rows}

        catalog = self._catalog(self.discover())
        ups = catalog[MigrationType.UP]

        statuses = []
        for key in sorted(set(ups) | set(rows_by_key)):
            migration = ups.get(key)
            row = rows_by_key.get(key)
            matches = None
            if migration is not None and row is not None:
                matches = generate_checksum(self._read(migration.path)) == row.checksum
                if not matches:
                    logger.warning(f"[Migrator] {migration.path.name} changed since it was applied (checksum mismatch)")
            statuses.append(MigrationStatus(
                version=row.version if row else migration.version,
                name=row.name if row else migration.identity.name,
                applied=row is not None,
                on_disk=migration is not None,
                checksum_matches=matches,
                applied_at=row.created_at.isoformat() if row else None,
            ))
        return statuses
