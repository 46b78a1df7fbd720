"""Pytest configuration for sqlmirror."""
import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from sqlmirror.base.config import DEFAULT_TABLE_NAME, set_config
from sqlmirror.data.db import Database
from sqlmirror.errors import MigrationStoppedError


def pytest_configure():
    # Never pick up a developer's real database from the environment
    os.environ.pop("SQLMIRROR_DATABASE_URL", None)
    os.environ.pop("DATABASE_URL", None)


class FakeDatabase(Database):
    """
    In-memory stand-in for PostgreSQL.

    Understands the handful of ledger queries the migrator issues and keeps
    every other script in ``scripts`` (committed order). Writes made inside
    transaction() are buffered and only applied on a clean exit.
    """

    def __init__(self, table_name: str = DEFAULT_TABLE_NAME):
        self.table_name = table_name
        self.id_column = f"{table_name}_id"
        self.table_exists = False
        self.rows: List[Dict[str, Any]] = []
        self.scripts: List[str] = []
        self.locks: List[int] = []
        # Simulates another session holding the advisory lock
        self.lock_busy = False
        self.rollbacks = 0
        self.fail_on: Optional[str] = None
        self.after_commit: Optional[Callable[[], None]] = None
        self._pending: Optional[List[tuple]] = None
        self._next_id = 1
        self._clock = datetime(2024, 1, 1, 12, 0, 0)

    def seed(self, version: str, name: str, checksum: str = "0" * 32) -> None:
        """Pretend a migration was applied earlier."""
        self.table_exists = True
        filename = f"{version}U__{name}.sql"
        self._apply(("INSERT", (version, name, filename, checksum)))

    @property
    def versions(self) -> List[str]:
        return [row["version"] for row in self.rows]

    async def fetch_one(self, query: str, params=None):
        if "pg_tables" in query:
            return {"exists": self.table_exists}
        if "DESC LIMIT 1" in query:
            return dict(self.rows[-1]) if self.rows else None
        raise AssertionError(f"Unexpected fetch_one: {query}")

    async def fetch_all(self, query: str, params=None):
        if query.startswith("SELECT * FROM") and query.endswith("ASC"):
            return [dict(row) for row in self.rows]
        raise AssertionError(f"Unexpected fetch_all: {query}")

    async def execute(self, query: str, params=None) -> None:
        if self.fail_on and self.fail_on in query:
            raise RuntimeError(f"syntax error near {self.fail_on!r}")

        if query.startswith("INSERT INTO"):
            operation = ("INSERT", tuple(params))
        elif query.startswith("DELETE FROM"):
            operation = ("DELETE", tuple(params))
        else:
            operation = ("SCRIPT", query)

        if self._pending is not None:
            self._pending.append(operation)
        else:
            self._apply(operation)

    def _apply(self, operation: tuple) -> None:
        kind, payload = operation
        if kind == "INSERT":
            version, name, filename, checksum = payload
            if version in self.versions:
                raise RuntimeError(f"duplicate key value violates unique constraint: {version}")
            self.rows.append({
                self.id_column: self._next_id,
                "version": version,
                "name": name,
                "filename": filename,
                "checksum": checksum,
                "created_at": self._clock + timedelta(minutes=self._next_id),
            })
            self._next_id += 1
        elif kind == "DELETE":
            self.rows = [row for row in self.rows if row["version"] != payload[0]]
        else:
            if f'CREATE TABLE IF NOT EXISTS "{self.table_name}"' in payload:
                self.table_exists = True
            self.scripts.append(payload)

    @asynccontextmanager
    async def transaction(self):
        self._pending = []
        try:
            yield
        except BaseException:
            self._pending = None
            self.rollbacks += 1
            raise
        operations, self._pending = self._pending, None
        for operation in operations:
            self._apply(operation)
        if self.after_commit:
            self.after_commit()

    @asynccontextmanager
    async def lock(self, key: int, should_stop=None):
        while self.lock_busy:
            if should_stop is not None and should_stop():
                raise MigrationStoppedError("Stopped while waiting for the migration lock", details={"lock_key": key})
            await asyncio.sleep(0)
        self.locks.append(key)
        yield


def write_migration(directory: Path, version: str, name: str, up: str = "", down: str = "") -> None:
    """Write a hand-written up/down pair."""
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{version}U__{name}.sql").write_text(up or f"-- up {version}\nSELECT '{version} up';\n")
    (directory / f"{version}D__{name}.sql").write_text(down or f"-- down {version}\nSELECT '{version} down';\n")


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def migrations_dir(tmp_path):
    directory = tmp_path / "migrations"
    directory.mkdir()
    return directory


@pytest.fixture
def add_migration(migrations_dir):
    """Factory fixture: add_migration("1.0.0", "add_users", up=..., down=...)."""

    def _add(version: str, name: str, up: str = "", down: str = "") -> None:
        write_migration(migrations_dir, version, name, up, down)

    return _add


@pytest.fixture(autouse=True)
def reset_global_config():
    set_config(None)
    yield
    set_config(None)
