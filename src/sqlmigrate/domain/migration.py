"""
Migration domain models.

A MigrationFile is what sits on disk; a Migration is the persisted record of a
file that ran to completion.
"""
from dataclasses import dataclass
from pathlib import Path

from sqlmigrate.core.errors import UnreadableMigration


@dataclass(frozen=True)
class MigrationFile:
    """A named, ordered migration file.

    Content is never cached: every call to ``read`` goes back to disk so that
    checksum verification always sees the file as it is now.
    """
    name: str
    path: Path
    sequence: int

    def read(self) -> bytes:
        """Read the raw bytes of the file."""
        try:
            return self.path.read_bytes()
        except OSError as e:
            raise UnreadableMigration(self.name, e) from e

    def read_text(self) -> str:
        """Read the file as UTF-8 text."""
        return decode_content(self.name, self.read())


@dataclass(frozen=True)
class Migration:
    """A migration recorded as fully applied."""
    filename: str
    content: str
    checksum: str


def decode_content(filename: str, data: bytes) -> str:
    """Decode migration bytes as UTF-8, reporting the file on failure."""
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise UnreadableMigration(filename, e) from e
