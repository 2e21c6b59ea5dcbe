"""Migration services - discovery, checksums, validation and execution."""

from sqlmigrate.services.checksum import fingerprint
from sqlmigrate.services.engine import EngineState, MigrationContext, MigrationEngine
from sqlmigrate.services.fileset import FileSet
from sqlmigrate.services.history import HistoryValidator
from sqlmigrate.services.schema import SchemaUpgrader
from sqlmigrate.services.statements import split_statements

__all__ = [
    "EngineState",
    "FileSet",
    "HistoryValidator",
    "MigrationContext",
    "MigrationEngine",
    "SchemaUpgrader",
    "fingerprint",
    "split_statements",
]
