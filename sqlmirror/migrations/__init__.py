"""
Schema Migrations - Database Version Control

KEY CONCEPTS:
- **Migration**: a pair of SQL files (up/down) plus an optional config module
  sharing one semantic version and name
- **Ledger**: the table recording which versions were applied, in order
- **Up**: apply every pending migration in ascending version order
- **Down**: revert the single most recently applied migration
"""

from .migrator import Migrator, MigratorSettings, MigrationStatus
from .naming import MigrationIdentity, MigrationType, parse, serialize, to_snake_case

__all__ = [
    "Migrator",
    "MigratorSettings",
    "MigrationStatus",
    "MigrationIdentity",
    "MigrationType",
    "parse",
    "serialize",
    "to_snake_case",
]
