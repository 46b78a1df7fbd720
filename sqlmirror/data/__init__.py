# ============================================================================
# sqlmirror/data/__init__.py
# Data Layer Package - database capability and migration ledger
# ============================================================================
#
# WHAT'S IN THIS MODULE:
# - db.py: Database ABC and the psycopg-backed PostgresDatabase
# - ledger.py: the sqlmirror_migration table (state check, insert, delete)
#
# ============================================================================
