"""Domain models - pure data structures with no database dependencies."""

from sqlmigrate.domain.migration import Migration, MigrationFile, decode_content

__all__ = [
    "Migration",
    "MigrationFile",
    "decode_content",
]
