# ============================================================================
# sqlmirror/data/db.py
# Database capability used by the migrator
# ============================================================================
#
# PURPOSE:
# The migrator never talks to a driver directly. It needs five things:
# query one row, query many rows, execute a statement (or a whole script),
# group statements in a transaction, and hold a session-wide lock.
#
# KEY CONCEPTS:
# - Database: abstract interface (tests provide an in-memory fake)
# - PostgresDatabase: psycopg 3 AsyncConnection in autocommit mode, so every
#   explicit transaction() block maps to exactly one BEGIN/COMMIT
# - Placeholders use the psycopg "%s" style
#
# Driver errors (psycopg.Error) are not wrapped; callers see them as-is.
#
# ============================================================================

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import psycopg
from psycopg.rows import dict_row

from sqlmirror.errors import MigrationStoppedError

logger = logging.getLogger(__name__)

Params = Optional[Sequence[Any]]
StopCheck = Optional[Callable[[], bool]]

# Seconds between pg_try_advisory_lock attempts while another session holds the lock
LOCK_POLL_INTERVAL = 0.5

_COMMENT_LINE = re.compile(r"^\s*--.*$", re.MULTILINE)


def has_statements(script: str) -> bool:
    """False for scripts made only of whitespace and ``--`` comments."""
    return bool(_COMMENT_LINE.sub("", script).strip())


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class Database(ABC):
    """Abstract async database interface."""

    async def connect(self) -> None:
        """Open the underlying connection (no-op by default)."""

    async def close(self) -> None:
        """Close the underlying connection (no-op by default)."""

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @abstractmethod
    async def fetch_one(self, query: str, params: Params = None) -> Optional[Dict[str, Any]]:
        """Execute a query and return the first row as a dict (or None)."""

    @abstractmethod
    async def fetch_all(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        """Execute a query and return every row as a dict."""

    @abstractmethod
    async def execute(self, query: str, params: Params = None) -> None:
        """Execute a statement, or a multi-statement script when params is None."""

    @abstractmethod
    def transaction(self) -> Any:
        """Async context manager: statements inside commit or roll back together."""

    @abstractmethod
    def lock(self, key: int, should_stop: StopCheck = None) -> Any:
        """
        Async context manager holding a session-scoped exclusive lock.

        While waiting, ``should_stop`` is polled; once it returns True the
        wait is abandoned with MigrationStoppedError.
        """


class PostgresDatabase(Database):
    """PostgreSQL implementation on top of psycopg's AsyncConnection."""

    def __init__(self, url: Optional[str], connect_timeout: int = 10):
        self.url = url
        self.connect_timeout = connect_timeout
        self._connection: Optional[psycopg.AsyncConnection] = None

    async def connect(self) -> None:
        if self._connection is not None:
            return
        self._connection = await psycopg.AsyncConnection.connect(
            self.url,
            autocommit=True,
            row_factory=dict_row,
            connect_timeout=self.connect_timeout,
        )
        logger.info("[Database] Connected")

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            logger.info("[Database] Connection closed.")

    @property
    def connection(self) -> psycopg.AsyncConnection:
        if self._connection is None:
            raise RuntimeError("Database is not connected; call connect() first")
        return self._connection

    async def fetch_one(self, query: str, params: Params = None) -> Optional[Dict[str, Any]]:
        cursor = await self.connection.execute(query, params)
        return await cursor.fetchone()

    async def fetch_all(self, query: str, params: Params = None) -> List[Dict[str, Any]]:
        cursor = await self.connection.execute(query, params)
        return await cursor.fetchall()

    async def execute(self, query: str, params: Params = None) -> None:
        # The server rejects empty queries; comment-only scaffolds are skipped
        if params is None and not has_statements(query):
            logger.debug("[Database] Skipping script without statements")
            return
        await self.connection.execute(query, params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self.connection.transaction():
            yield

    async def _try_lock(self, key: int) -> bool:
        row = await self.fetch_one("SELECT pg_try_advisory_lock(%s) AS locked", (key,))
        return bool(row and row["locked"])

    @asynccontextmanager
    async def lock(self, key: int, should_stop: StopCheck = None) -> AsyncIterator[None]:
        # should_stop is checked between attempts
        waiting = False
        while not await self._try_lock(key):
            if should_stop is not None and should_stop():
                raise MigrationStoppedError(
                    "Stopped while waiting for the migration lock",
                    details={"lock_key": key},
                )
            if not waiting:
                logger.info(f"[Database] Advisory lock {key} is held by another session; waiting")
                waiting = True
            await asyncio.sleep(LOCK_POLL_INTERVAL)
        logger.debug(f"[Database] Acquired advisory lock {key}")
        try:
            yield
        finally:
            await self.connection.execute("SELECT pg_advisory_unlock(%s)", (key,))
            logger.debug(f"[Database] Released advisory lock {key}")
