"""Schema layer: SQL chunk library, schema config models and the assembler."""

from .assembler import assemble, transaction_body, transaction_control_statements, GeneratedSql
from .models import Chunk, Extension, Function, Plugin, Reference, SchemaConfig, Table, TableOptions
from . import chunks

__all__ = [
    "assemble",
    "transaction_body",
    "transaction_control_statements",
    "GeneratedSql",
    "Chunk",
    "Extension",
    "Function",
    "Plugin",
    "Reference",
    "SchemaConfig",
    "Table",
    "TableOptions",
    "chunks",
]
