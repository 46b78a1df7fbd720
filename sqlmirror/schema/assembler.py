# ============================================================================
# sqlmirror/schema/assembler.py
# Schema Assembler: declarative config -> matched up/down SQL documents
# ============================================================================
#
# PURPOSE:
# Renders a SchemaConfig into two documents that mirror each other:
#   up:   extensions, functions, then tables (referenced before referencing)
#   down: tables (referencing before referenced), functions, extensions
#
# DEPENDENCIES:
# - networkx: table reference graph, topological order, cycle detection.
#
# Each document starts with a generation comment and is wrapped in a single
# BEGIN/COMMIT TRANSACTION block. Note that some statements (e.g. CREATE
# EXTENSION on certain setups) may not be transactional in every engine.
#
# ============================================================================

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

import networkx as nx

from sqlmirror.errors import CyclicDependencyError, InvalidSchemaConfig
from sqlmirror.schema import chunks
from sqlmirror.schema.models import Chunk, Extension, Function, SchemaConfig, Table

logger = logging.getLogger(__name__)

HEADER = "-- This file was generated via sql-mirror at {timestamp}"
BEGIN = "BEGIN TRANSACTION;"
COMMIT = "COMMIT TRANSACTION;"


@dataclass(frozen=True)
class GeneratedSql:
    up: str
    down: str


def _dedupe_by_name(items: Sequence[Union[Extension, Function]]) -> List[Any]:
    # First occurrence wins
    seen: Dict[str, Any] = {}
    for item in items:
        seen.setdefault(item.name, item)
    return list(seen.values())


def collect_extensions(config: SchemaConfig) -> List[Extension]:
    plugin_extensions = [
        extension
        for table in config.tables
        for plugin in table.plugins
        for extension in plugin.extensions
    ]
    return _dedupe_by_name([*config.extensions, *plugin_extensions])


def collect_functions(config: SchemaConfig) -> List[Function]:
    plugin_functions = [
        function
        for table in config.tables
        for plugin in table.plugins
        for function in plugin.functions
    ]
    return _dedupe_by_name([*config.functions, *plugin_functions])


def sort_tables(tables: Sequence[Table]) -> List[Table]:
    """
    Order tables for creation: every referenced table precedes the tables
    that reference it. The reverse of this order is a valid drop order.

    Ties are broken by declaration order, so the result is deterministic.

    Raises:
        InvalidSchemaConfig: Duplicate table names or references to tables
            that are not part of the config
        CyclicDependencyError: The reference graph has a cycle
    """
    by_name: Dict[str, Table] = {}
    position: Dict[str, int] = {}
    for index, table in enumerate(tables):
        if table.name in by_name:
            raise InvalidSchemaConfig(
                f"Duplicate table name '{table.name}'",
                details={"table": table.name},
            )
        by_name[table.name] = table
        position[table.name] = index

    graph = nx.DiGraph()
    graph.add_nodes_from(by_name)
    for table in tables:
        for reference in table.references:
            if reference.table_name_ref not in by_name:
                raise InvalidSchemaConfig(
                    f"Table '{table.name}' references unknown table '{reference.table_name_ref}'",
                    details={"table": table.name, "reference": reference.table_name_ref},
                )
            # Self references need no ordering; CREATE TABLE accepts them
            if reference.table_name_ref != table.name:
                graph.add_edge(reference.table_name_ref, table.name)

    try:
        ordered = list(nx.lexicographical_topological_sort(graph, key=position.__getitem__))
    except nx.NetworkXUnfeasible:
        cycle = [source for source, _ in nx.find_cycle(graph)]
        raise CyclicDependencyError(
            f"Table references form a cycle: {' -> '.join(cycle + cycle[:1])}",
            details={"cycle": cycle},
        ) from None

    return [by_name[name] for name in ordered]


def resolve_columns(table: Table) -> List[str]:
    """Reference columns, then declared columns, then plugin columns."""
    columns = [
        chunks.ref(reference.column_name, reference.table_name_ref, nullable=reference.nullable)
        for reference in table.references
    ]
    columns.extend(table.columns)
    for plugin in table.plugins:
        columns.extend(generate(table.name) for generate in plugin.columns)
    return columns


def table_triggers(table: Table, columns: Sequence[str], functions: Sequence[Function]) -> List[Chunk]:
    triggers = [
        trigger(table.name, columns)
        for plugin in table.plugins
        for trigger in plugin.triggers
    ]
    triggers.extend(function.trigger(table.name, columns) for function in functions if function.trigger)
    return triggers


def _document(sections: Sequence[str], timestamp: str) -> str:
    body = "\n\n".join(section for section in sections if section)
    parts = [HEADER.format(timestamp=timestamp), BEGIN]
    if body:
        parts.extend(["", body, ""])
    parts.append(COMMIT)
    return "\n".join(parts) + "\n"


def assemble(config: Union[SchemaConfig, Dict[str, Any]], generated_at: Optional[datetime] = None) -> GeneratedSql:
    """
    Render the up and down documents for a schema config.

    Args:
        config: SchemaConfig (or a plain dictionary describing one)
        generated_at: Timestamp for the header comment (defaults to now, UTC)

    Returns:
        GeneratedSql with the up and down documents

    Raises:
        InvalidSchemaConfig: The config is malformed
        CyclicDependencyError: Tables reference each other in a cycle
    """
    config = SchemaConfig.from_data(config)

    ordered = sort_tables(config.tables)
    extensions = collect_extensions(config)
    functions = collect_functions(config)

    up_tables: List[str] = []
    down_tables: List[str] = []
    for table in ordered:
        columns = resolve_columns(table)
        rendered = chunks.render_table(table.name, columns, disable_id=table.options.disable_id)
        triggers = table_triggers(table, columns, functions)

        up_tables.append("\n".join([
            *(sql_type.up for sql_type in table.types),
            rendered.up,
            *(trigger.up for trigger in triggers),
        ]))
        down_tables.append("\n".join([
            *(trigger.down for trigger in reversed(triggers)),
            rendered.down,
            *(sql_type.down for sql_type in reversed(table.types)),
        ]))
    down_tables.reverse()

    timestamp = (generated_at or datetime.now(timezone.utc)).isoformat()

    up = _document([
        "\n".join(extension.up for extension in extensions),
        "\n".join(function.up for function in functions),
        *up_tables,
    ], timestamp)
    down = _document([
        *down_tables,
        "\n".join(function.down for function in reversed(functions)),
        "\n".join(extension.down for extension in reversed(extensions)),
    ], timestamp)

    logger.debug(f"[Assembler] Rendered {len(ordered)} tables, {len(functions)} functions, {len(extensions)} extensions")
    return GeneratedSql(up=up, down=down)


def transaction_body(document: str) -> str:
    """
    Strip the generated header and BEGIN/COMMIT wrapper from a document.

    The migrator executes a file inside its own transaction together with the
    ledger write, so a nested COMMIT must not end that transaction early.
    Text without the wrapper is returned unchanged.
    """
    lines = document.strip("\n").split("\n")
    if lines and lines[0].startswith(HEADER.split("{", 1)[0]):
        lines = lines[1:]
    if len(lines) >= 2 and lines[0].strip() == BEGIN and lines[-1].strip() == COMMIT:
        return "\n".join(lines[1:-1]).strip("\n") + "\n"
    return document


# plpgsql blocks open with a bare BEGIN and close with END; neither matches here
_TRANSACTION_CONTROL = re.compile(
    r"^[ \t]*(?:BEGIN(?![ \t]+ATOMIC\b)|START[ \t]+TRANSACTION|COMMIT|ROLLBACK(?![ \t]+(?:TRANSACTION[ \t]+|WORK[ \t]+)?TO\b)|ABORT|END[ \t]+(?:TRANSACTION|WORK))\b[^;\n]*;",
    re.IGNORECASE | re.MULTILINE,
)


def transaction_control_statements(script: str) -> List[str]:
    """Top-level BEGIN/COMMIT/ROLLBACK statements left in a script body."""
    return [match.group(0).strip() for match in _TRANSACTION_CONTROL.finditer(script)]
