# ============================================================================
# sqlmirror/schema/chunks.py
# SQL Chunk Library
# ============================================================================
#
# PURPOSE:
# Reusable, parametrized SQL fragments. Every entry is either a Chunk value
# ({up, down}) or a pure function returning one (or a column definition).
# Nothing here performs I/O or keeps state between calls.
#
# KEY CONCEPTS:
# - Extension / Function: named chunks, deduplicated by name when assembled
# - Column generator: (table_name) -> "name type-and-constraints"
# - Trigger generator: (table_name, resolved_columns) -> Chunk
# - Plugin: a bundle of the above attached to a table declaration
#
# Templates are normalised with sql() so the generated text (and thus the
# checksum of a generated file) does not depend on source indentation.
#
# ============================================================================

import re
import textwrap
from types import MappingProxyType
from typing import Mapping, Optional, Sequence, Tuple

from sqlmirror.errors import InvalidSchemaConfig
from sqlmirror.schema.models import Chunk, Extension, Function, Plugin

INDENT = "    "


def sql(template: str) -> str:
    """Strip common leading whitespace and surrounding blank lines."""
    return textwrap.dedent(template).strip()


# ============================================================================
# Tables & Types
# ============================================================================

def id_column(table_name: str) -> str:
    return f"{table_name}_id uuid DEFAULT uuid_generate_v4 () PRIMARY KEY"


_QUOTED_NAME = re.compile(r'"((?:[^"]|"")+)"(?:\s+(.*))?', re.DOTALL)


def _split_column(column: str) -> Tuple[str, str]:
    """Split a definition into its (still escaped) name and the rest."""
    column = sql(column)
    quoted = _QUOTED_NAME.fullmatch(column)
    if quoted:
        return quoted.group(1), quoted.group(2) or ""
    parts = column.split(None, 1)
    if not parts:
        return "", ""
    return parts[0], parts[1] if len(parts) > 1 else ""


def column_name(column: str) -> str:
    """Name of a column definition, without quotes."""
    return _split_column(column)[0].replace('""', '"')


def _format_column(column: str) -> str:
    name, definition = _split_column(column)
    if not name or not definition:
        raise InvalidSchemaConfig(
            f"Column definition '{column}' needs a name and a type",
            details={"column": column},
        )
    # Continuation lines of multi-line definitions sit one level deeper
    definition = definition.replace("\n", "\n" + INDENT * 2)
    return f'"{name}" {definition}'


def render_table(table_name: str, columns: Sequence[str], disable_id: bool = False) -> Chunk:
    """
    Render the CREATE/DROP pair for one table.

    Args:
        table_name: Table identifier (also the foreign-key target name)
        columns: Resolved column definitions, "name type-and-constraints"
        disable_id: Skip the generated <table>_id uuid primary key

    Returns:
        Chunk with one column per line
    """
    definitions = [] if disable_id else [id_column(table_name)]
    definitions.extend(columns)

    if definitions:
        body = ",\n".join(INDENT + _format_column(column) for column in definitions)
        up = f'CREATE TABLE IF NOT EXISTS "{table_name}" (\n{body}\n);'
    else:
        up = f'CREATE TABLE IF NOT EXISTS "{table_name}" ();'

    return Chunk(up=up, down=drop_table(table_name))


def drop_table(table_name: str) -> str:
    return f'DROP TABLE IF EXISTS "{table_name}";'


def sql_type(name: str, definition: str) -> Chunk:
    """CREATE TYPE "name" AS <definition>, e.g. sql_type("mood", "ENUM ('sad', 'ok')")."""
    return Chunk(
        up=f'CREATE TYPE "{name}" AS {sql(definition)};',
        down=f'DROP TYPE IF EXISTS "{name}";',
    )


# ============================================================================
# Columns
# ============================================================================

def email(column_name: str = "email") -> str:
    return f"{column_name} VARCHAR(255) UNIQUE NOT NULL"


def text(column_name: str, nullable: bool = True) -> str:
    return f"{column_name} TEXT{'' if nullable else ' NOT NULL'}"


def created_at(column_name: str = "created_at") -> str:
    return f"{column_name} TIMESTAMP DEFAULT (now())"


def updated_at(column_name: str = "updated_at") -> str:
    return f"{column_name} TIMESTAMP"


def ref(column_name: str, table_name: str, nullable: bool = False, on_delete: Optional[str] = None) -> str:
    """uuid column pointing at <table_name>(<table_name>_id)."""
    column = f'{column_name} uuid{"" if nullable else " NOT NULL"} REFERENCES "{table_name}"("{table_name}_id")'
    if on_delete:
        column += f" ON DELETE {on_delete.upper()}"
    return column


# ============================================================================
# Extensions
# ============================================================================

UUID_EXTENSION = Extension(
    name="uuid-ossp",
    up='CREATE EXTENSION IF NOT EXISTS "uuid-ossp";',
    down='DROP EXTENSION IF EXISTS "uuid-ossp";',
)

PGCRYPTO_EXTENSION = Extension(
    name="pgcrypto",
    up='CREATE EXTENSION IF NOT EXISTS "pgcrypto";',
    down='DROP EXTENSION IF EXISTS "pgcrypto";',
)


# ============================================================================
# Functions & Triggers
# ============================================================================

UPDATED_AT_FUNCTION = Function(
    name="updated_at_column",
    up=sql("""
        CREATE OR REPLACE FUNCTION updated_at_column()
        RETURNS trigger AS
        $BODY$
        BEGIN
            IF (NEW.updated_at IS NOT DISTINCT FROM OLD.updated_at) THEN
                NEW.updated_at = NOW();
            END IF;
            RETURN NEW;
        END;
        $BODY$
        LANGUAGE plpgsql VOLATILE
        COST 100;
    """),
    down="DROP FUNCTION IF EXISTS updated_at_column();",
)


def updated_at_trigger(table_name: str, columns: Sequence[str]) -> Chunk:
    """Keep <table>.updated_at current on every UPDATE."""
    if "updated_at" not in {column_name(column) for column in columns}:
        raise InvalidSchemaConfig(
            f"Table '{table_name}' has an updated_at trigger but no updated_at column",
            details={"table": table_name},
        )
    return Chunk(
        up=sql(f"""
            CREATE TRIGGER "updated_at_on_{table_name}" BEFORE UPDATE ON "{table_name}"
            FOR EACH ROW
            EXECUTE PROCEDURE updated_at_column();
        """),
        down=f'DROP TRIGGER IF EXISTS "updated_at_on_{table_name}" ON "{table_name}";',
    )


# ============================================================================
# Plugins
# ============================================================================

def _created_at_column(table_name: str) -> str:
    return created_at()


def _updated_at_column(table_name: str) -> str:
    return updated_at()


CREATED_AT_PLUGIN = Plugin(name="created_at", columns=[_created_at_column])

UPDATED_AT_PLUGIN = Plugin(
    name="updated_at",
    functions=[UPDATED_AT_FUNCTION],
    columns=[_updated_at_column],
    triggers=[updated_at_trigger],
)

TIMESTAMPS_PLUGIN = Plugin(
    name="timestamps",
    functions=[UPDATED_AT_FUNCTION],
    columns=[_created_at_column, _updated_at_column],
    triggers=[updated_at_trigger],
)

# Read-only lookup used when literal configs name plugins by string
PLUGINS: Mapping[str, Plugin] = MappingProxyType({
    plugin.name: plugin
    for plugin in (CREATED_AT_PLUGIN, UPDATED_AT_PLUGIN, TIMESTAMPS_PLUGIN)
})
