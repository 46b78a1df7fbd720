"""
Migration ledger: the table recording which migrations have been applied.

Rows are appended by successful up migrations and deleted by successful
down migrations, always inside the same transaction as the migration SQL.
The row with the highest id is the currently applied head.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from sqlmirror.data.db import Database, quote_identifier
from sqlmirror.errors import MigrationTableAlreadyExists
from sqlmirror.schema import chunks
from sqlmirror.schema.assembler import assemble
from sqlmirror.schema.models import SchemaConfig, Table, TableOptions

logger = logging.getLogger(__name__)


class MigrationTableState(Enum):
    TABLE_NOT_CREATED = "table_not_created"
    NO_MIGRATIONS_APPLIED = "no_migrations_applied"
    MIGRATION_APPLIED = "migration_applied"


class LedgerRow(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: int
    version: str
    name: str
    filename: str
    checksum: str
    created_at: datetime

    @classmethod
    def from_record(cls, record: Dict[str, Any], id_column: str) -> "LedgerRow":
        data = dict(record)
        data["id"] = data.pop(id_column)
        return cls.model_validate(data)


@dataclass(frozen=True)
class LedgerState:
    state: MigrationTableState
    last: Optional[LedgerRow] = None


class MigrationLedger:
    """Reads and writes the ledger table through a Database."""

    def __init__(self, database: Database, table_name: str):
        self.database = database
        self.table_name = table_name
        self.id_column = f"{table_name}_id"

    @property
    def _table(self) -> str:
        return quote_identifier(self.table_name)

    def table_config(self) -> SchemaConfig:
        return SchemaConfig(tables=[
            Table(
                name=self.table_name,
                columns=[
                    f"{self.id_column} SERIAL PRIMARY KEY",
                    "version VARCHAR(255) UNIQUE NOT NULL",
                    "name VARCHAR(255) UNIQUE NOT NULL",
                    "filename VARCHAR(255) UNIQUE NOT NULL",
                    "checksum TEXT NOT NULL",
                ],
                options=TableOptions(disable_id=True),
                plugins=[chunks.CREATED_AT_PLUGIN],
            )
        ])

    async def exists(self) -> bool:
        row = await self.database.fetch_one(
            "SELECT EXISTS (SELECT FROM pg_tables WHERE schemaname = current_schema() AND tablename = %s) AS exists",
            (self.table_name,),
        )
        return bool(row and row["exists"])

    async def last_row(self) -> Optional[LedgerRow]:
        record = await self.database.fetch_one(
            f"SELECT * FROM {self._table} ORDER BY {quote_identifier(self.id_column)} DESC LIMIT 1"
        )
        return LedgerRow.from_record(record, self.id_column) if record else None

    async def get_state(self) -> LedgerState:
        """Inspect the ledger: missing table, empty table, or its last row."""
        if not await self.exists():
            return LedgerState(MigrationTableState.TABLE_NOT_CREATED)

        last = await self.last_row()
        if last is None:
            return LedgerState(MigrationTableState.NO_MIGRATIONS_APPLIED)
        return LedgerState(MigrationTableState.MIGRATION_APPLIED, last)

    async def create_table(self) -> None:
        state = await self.get_state()
        if state.state is not MigrationTableState.TABLE_NOT_CREATED:
            raise MigrationTableAlreadyExists(
                f"Migration table already exists. State: {state.state.value}",
                details={"table": self.table_name, "state": state.state.value},
            )

        await self.database.execute(assemble(self.table_config()).up)
        logger.info(f"[Ledger] Created migration table {self.table_name}")

    async def rows(self) -> List[LedgerRow]:
        """All rows in application order."""
        records = await self.database.fetch_all(
            f"SELECT * FROM {self._table} ORDER BY {quote_identifier(self.id_column)} ASC"
        )
        return [LedgerRow.from_record(record, self.id_column) for record in records]

    async def record(self, version: str, name: str, filename: str, checksum: str) -> None:
        await self.database.execute(
            f"INSERT INTO {self._table} (version, name, filename, checksum) VALUES (%s, %s, %s, %s)",
            (version, name, filename, checksum),
        )

    async def remove(self, version: str) -> None:
        await self.database.execute(
            f"DELETE FROM {self._table} WHERE version = %s",
            (version,),
        )
