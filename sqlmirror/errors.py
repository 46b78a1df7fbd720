"""Module errors: structured error taxonomy for sqlmirror."""
#
# PURPOSE:
# Every failure that sqlmirror raises itself carries a stable error code,
# a human-readable message and a details dictionary (filename, version,
# cycle, ...) so operators can locate the offending migration file.
#
# ERROR CODE FORMAT:
# - NAMING_XXX: Migration filename codec errors
# - SCHEMA_XXX: Schema config / assembler errors
# - LEDGER_XXX: Migration ledger state errors
# - MIGRATION_XXX: Lifecycle controller errors
#
# Database (psycopg) and filesystem (OSError) errors are NOT wrapped here;
# they pass through to the caller unmodified.
#
# USAGE:
#   from sqlmirror.errors import InvalidVersion
#
#   raise InvalidVersion("1.0", details={"filename": "1.0U__init.sql"})
#
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    # Naming Errors
    NAMING_INVALID_TYPE = "NAMING_001"
    NAMING_INVALID_VERSION = "NAMING_002"

    # Schema Errors
    SCHEMA_CYCLIC_DEPENDENCY = "SCHEMA_001"
    SCHEMA_INVALID_CONFIG = "SCHEMA_002"
    SCHEMA_CONFIG_MODULE = "SCHEMA_003"

    # Ledger Errors
    LEDGER_ALREADY_EXISTS = "LEDGER_001"
    LEDGER_NOT_CREATED = "LEDGER_002"
    LEDGER_EMPTY = "LEDGER_003"

    # Migration Errors
    MIGRATION_DUPLICATE_VERSION = "MIGRATION_001"
    MIGRATION_OUT_OF_ORDER = "MIGRATION_002"
    MIGRATION_FILE_NOT_FOUND = "MIGRATION_003"
    MIGRATION_STOPPED = "MIGRATION_004"
    MIGRATION_TRANSACTION_CONTROL = "MIGRATION_005"


class SqlMirrorError(Exception):
    """
    Base exception class for sqlmirror with structured error information.

    Attributes:
        code: ErrorCode enum value (e.g., "NAMING_001")
        message: Human-readable error message
        details: Dictionary with additional context (filename, version, ...)
    """

    code: ErrorCode = ErrorCode.SCHEMA_INVALID_CONFIG

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}

        # Build exception message with code for easy debugging
        super().__init__(f"[{self.code.value}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to dictionary for reporting.

        Returns:
            Dictionary with code, message and details
        """
        return {
            "code": self.code.value,
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class InvalidMigrationType(SqlMirrorError):
    code = ErrorCode.NAMING_INVALID_TYPE


class InvalidVersion(SqlMirrorError):
    code = ErrorCode.NAMING_INVALID_VERSION


class CyclicDependencyError(SqlMirrorError):
    """The table reference graph has no valid creation order."""

    code = ErrorCode.SCHEMA_CYCLIC_DEPENDENCY


class InvalidSchemaConfig(SqlMirrorError):
    code = ErrorCode.SCHEMA_INVALID_CONFIG


class ConfigModuleError(SqlMirrorError):
    """A per-migration config module could not be loaded or evaluated."""

    code = ErrorCode.SCHEMA_CONFIG_MODULE


class MigrationTableAlreadyExists(SqlMirrorError):
    code = ErrorCode.LEDGER_ALREADY_EXISTS


class NoMigrationTableError(SqlMirrorError):
    code = ErrorCode.LEDGER_NOT_CREATED


class NoAppliedMigrationsError(SqlMirrorError):
    code = ErrorCode.LEDGER_EMPTY


class DuplicateMigrationVersionError(SqlMirrorError):
    code = ErrorCode.MIGRATION_DUPLICATE_VERSION


class OutOfOrderMigrationError(SqlMirrorError):
    """An unapplied migration sorts below the last applied version."""

    code = ErrorCode.MIGRATION_OUT_OF_ORDER


class MigrationFileNotFoundError(SqlMirrorError):
    code = ErrorCode.MIGRATION_FILE_NOT_FOUND


class MigrationStoppedError(SqlMirrorError):
    """A stop was requested before the advisory lock was acquired."""

    code = ErrorCode.MIGRATION_STOPPED


class TransactionControlError(SqlMirrorError):
    """A migration file issues its own BEGIN/COMMIT/ROLLBACK."""

    code = ErrorCode.MIGRATION_TRANSACTION_CONTROL


__all__ = [
    "ErrorCode",
    "SqlMirrorError",
    "InvalidMigrationType",
    "InvalidVersion",
    "CyclicDependencyError",
    "InvalidSchemaConfig",
    "ConfigModuleError",
    "MigrationTableAlreadyExists",
    "NoMigrationTableError",
    "NoAppliedMigrationsError",
    "DuplicateMigrationVersionError",
    "OutOfOrderMigrationError",
    "MigrationFileNotFoundError",
    "MigrationStoppedError",
    "TransactionControlError",
]
