"""
Error hierarchy for sqlmigrate.

Every failure the engine can report is a subclass of MigrateError. The
top-level groups mirror what went wrong:

- DiscoveryError: bad directory, no files, unreadable or badly named files
- OrderingError: two files share a sequence number
- IntegrityError: recorded history no longer matches the files on disk
- ExecutionError: a statement could not be run against the backend
- SchemaError: metadata layout is too new or could not be upgraded
- AdoptionError: the skip-ahead target is unusable
- StoreError: a metadata read or write failed in the backend

All of them are terminal for a run. Only StoreConnectionError is transient,
and it is only ever retried while opening the connection.
"""

from enum import Enum
from typing import Optional, Sequence


class ErrorCategory(str, Enum):
    """Classification of error types for retry decisions."""

    TRANSIENT = "transient"  # Connection refused, host unreachable - may retry
    PERMANENT = "permanent"  # Everything else - never retried


class MigrateError(Exception):
    """Base exception for all sqlmigrate errors."""

    category: ErrorCategory = ErrorCategory.PERMANENT

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        filename: Optional[str] = None,
        index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.filename = filename
        self.index = index

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class ConfigError(MigrateError):
    """Invalid combination of flags or configuration values."""

    pass


# =============================================================================
# Discovery / ordering
# =============================================================================


class DiscoveryError(MigrateError):
    """Migration files could not be found or read."""

    pass


class NoMigrationsFound(DiscoveryError):
    """The directory holds no migration files (probably the wrong directory)."""

    def __init__(self, directory: str):
        super().__init__(
            f"no sql migration files found in {directory} (might be the wrong dir)"
        )
        self.directory = directory


class InvalidFilename(DiscoveryError):
    """A migration filename does not start with a sequence number."""

    def __init__(self, filename: str):
        super().__init__(
            f"migration {filename} must start with a numeric sequence prefix",
            filename=filename,
        )


class UnreadableMigration(DiscoveryError):
    """A migration file could not be read or decoded."""

    def __init__(self, filename: str, cause: Optional[BaseException] = None):
        super().__init__(f"cannot read migration {filename}", cause, filename=filename)


class OrderingError(MigrateError):
    """Migration files cannot be put into a single total order."""

    pass


class DuplicateSequenceNumber(OrderingError):
    """Two migration files share the same numeric prefix."""

    def __init__(self, sequence: int, first: str, second: str):
        super().__init__(
            f"cannot have duplicate sequence number {sequence}: {first} and {second}",
            filename=second,
        )
        self.sequence = sequence
        self.filenames = (first, second)


# =============================================================================
# Integrity
# =============================================================================


class IntegrityError(MigrateError):
    """Recorded history disagrees with the migration files."""

    pass


class ChecksumMismatch(IntegrityError):
    """An applied migration was edited after it ran."""

    def __init__(self, filename: str, expected: str, actual: str):
        super().__init__(
            f"checksum does not match {filename}. has the file changed?",
            filename=filename,
        )
        self.expected = expected
        self.actual = actual


class CheckpointChecksumMismatch(IntegrityError):
    """A checkpointed statement differs from the statement now in the file."""

    def __init__(self, filename: str, index: int):
        super().__init__(
            f"checksum does not equal checkpoint. has {filename} (cmd {index}) changed?",
            filename=filename,
            index=index,
        )


class CheckpointOverrun(IntegrityError):
    """More checkpoints exist than the file has statements."""

    def __init__(self, filename: str, checkpoints: int, statements: int):
        super().__init__(
            f"{filename}: {checkpoints} checkpoints >= {statements} statements. "
            "were statements removed after a partial run?",
            filename=filename,
        )
        self.checkpoints = checkpoints
        self.statements = statements


class HistoryReordered(IntegrityError):
    """A migration was inserted before already-applied history."""

    def __init__(self, expected: str, found: str, index: int):
        super().__init__(
            f"{found} was added to history before {expected}. "
            "migrations must be appended",
            filename=found,
            index=index,
        )
        self.expected = expected
        self.found = found


class MissingMigrations(IntegrityError):
    """Applied migrations are no longer present on disk."""

    def __init__(self, filenames: Sequence[str]):
        names = ", ".join(filenames)
        super().__init__(
            f"cannot continue with missing migrations: {names}",
            filename=filenames[0] if filenames else None,
        )
        self.filenames = list(filenames)


# =============================================================================
# Execution
# =============================================================================


class ExecutionError(MigrateError):
    """A migration could not be executed."""

    pass


class EmptyMigrationFile(ExecutionError):
    """The file contains no executable statements."""

    def __init__(self, filename: str):
        super().__init__(
            f"{filename} contains no executable statements", filename=filename
        )


class StatementExecutionFailed(ExecutionError):
    """The backend rejected a statement."""

    def __init__(self, filename: str, index: int, statement: str, cause: BaseException):
        super().__init__(
            f"{filename}: statement {index} failed", cause, filename=filename, index=index
        )
        self.statement = statement


# =============================================================================
# Schema
# =============================================================================


class SchemaError(MigrateError):
    """The metadata tables are in a layout this version cannot use."""

    pass


class UnsupportedSchemaVersion(SchemaError):
    """The database was written by a newer version of this tool."""

    def __init__(self, found: int, supported: int):
        super().__init__(
            f"metadata schema version {found} is newer than supported version "
            f"{supported}. upgrade sqlmigrate"
        )
        self.found = found
        self.supported = supported


class SchemaUpgradeFailed(SchemaError):
    """The one-time metadata upgrade failed and was rolled back."""

    pass


# =============================================================================
# Adoption
# =============================================================================


class AdoptionError(MigrateError):
    """Skip-ahead could not be performed."""

    pass


class UnknownAdoptionTarget(AdoptionError):
    """The skip-ahead filename is not in the migration directory."""

    def __init__(self, filename: str):
        super().__init__(f"{filename} does not exist", filename=filename)


class AdoptionWithDryRun(AdoptionError):
    """Skip-ahead writes history, which a dry run must never do."""

    def __init__(self) -> None:
        super().__init__("cannot skip ahead with dry mode")


# =============================================================================
# Store
# =============================================================================


class StoreError(MigrateError):
    """A metadata operation failed in the backend."""

    def __init__(self, operation: str, cause: Optional[BaseException] = None, **kwargs):
        super().__init__(operation, cause, **kwargs)
        self.operation = operation


class StoreConnectionError(StoreError):
    """Could not connect to the backend. May succeed on retry."""

    category = ErrorCategory.TRANSIENT


def is_retryable(error: BaseException) -> bool:
    """Check whether an error may succeed on retry."""
    return isinstance(error, MigrateError) and error.category == ErrorCategory.TRANSIENT
