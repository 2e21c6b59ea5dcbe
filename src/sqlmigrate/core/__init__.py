"""Core framework infrastructure - config, errors, logging, retry."""

from sqlmigrate.core.config import ConfigManager, find_config_file
from sqlmigrate.core.logging import get_logger, setup_logging
from sqlmigrate.core.retry import RetryConfig, connect_with_retry, retry_with_config
from sqlmigrate.core.errors import (
    ErrorCategory,
    MigrateError,
    ConfigError,
    DiscoveryError,
    NoMigrationsFound,
    InvalidFilename,
    UnreadableMigration,
    OrderingError,
    DuplicateSequenceNumber,
    IntegrityError,
    ChecksumMismatch,
    CheckpointChecksumMismatch,
    CheckpointOverrun,
    HistoryReordered,
    MissingMigrations,
    ExecutionError,
    EmptyMigrationFile,
    StatementExecutionFailed,
    SchemaError,
    UnsupportedSchemaVersion,
    SchemaUpgradeFailed,
    AdoptionError,
    UnknownAdoptionTarget,
    AdoptionWithDryRun,
    StoreError,
    StoreConnectionError,
    is_retryable,
)

__all__ = [
    # Config
    "ConfigManager",
    "find_config_file",
    # Logging
    "setup_logging",
    "get_logger",
    # Retry
    "RetryConfig",
    "connect_with_retry",
    "retry_with_config",
    # Errors
    "ErrorCategory",
    "MigrateError",
    "ConfigError",
    "DiscoveryError",
    "NoMigrationsFound",
    "InvalidFilename",
    "UnreadableMigration",
    "OrderingError",
    "DuplicateSequenceNumber",
    "IntegrityError",
    "ChecksumMismatch",
    "CheckpointChecksumMismatch",
    "CheckpointOverrun",
    "HistoryReordered",
    "MissingMigrations",
    "ExecutionError",
    "EmptyMigrationFile",
    "StatementExecutionFailed",
    "SchemaError",
    "UnsupportedSchemaVersion",
    "SchemaUpgradeFailed",
    "AdoptionError",
    "UnknownAdoptionTarget",
    "AdoptionWithDryRun",
    "StoreError",
    "StoreConnectionError",
    "is_retryable",
]
