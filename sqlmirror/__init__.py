# ============================================================================
# sqlmirror/__init__.py
# Versioned PostgreSQL migrations from declarative SQL building blocks
# ============================================================================
#
# WHAT'S IN THIS PACKAGE:
# - schema/: SQL chunk library and the schema assembler (config -> up/down SQL)
# - migrations/: filename codec, semantic versions, config loading, migrator
# - data/: database capability and the migration ledger
# - cli/: command-line entrypoint (up, down, create, status)
#
# ============================================================================

__version__ = "1.0.0"
