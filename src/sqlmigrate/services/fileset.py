"""FileSet - discovery and ordering of migration files.

Migration files live in one flat directory. Each name starts with a run of
digits; that number is the file's position in history:

    1_create_users.sql
    2_add_email.sql
    10_add_index.sql

Files sort numerically (10 after 2), never lexically. The resulting order is
the single definition of "history order" used by validation and execution.
"""

import re
from pathlib import Path
from typing import Iterable, Iterator, Optional, Union

import structlog

from sqlmigrate.core.errors import (
    DiscoveryError,
    DuplicateSequenceNumber,
    InvalidFilename,
    NoMigrationsFound,
)
from sqlmigrate.domain.migration import MigrationFile

log = structlog.get_logger()

MIGRATION_EXTENSION = ".sql"
HIDDEN_PREFIX = "."

_SEQUENCE_PATTERN = re.compile(r"^\d+")


def sequence_number(filename: str) -> int:
    """Parse the leading digit run of a filename.

    Raises:
        InvalidFilename: If the name does not start with a digit.
    """
    match = _SEQUENCE_PATTERN.match(filename)
    if match is None:
        raise InvalidFilename(filename)
    return int(match.group(0))


def is_migration_file(path: Path) -> bool:
    """Whether a directory entry is a candidate migration file."""
    if path.name.startswith(HIDDEN_PREFIX):
        return False
    if path.suffix != MIGRATION_EXTENSION:
        return False
    return path.is_file()


def order(paths: Iterable[Path]) -> list[MigrationFile]:
    """Sort migration paths by their numeric prefix.

    Raises:
        InvalidFilename: If any name lacks a leading digit run.
        DuplicateSequenceNumber: If two names share the same number.
    """
    files = [
        MigrationFile(name=p.name, path=p, sequence=sequence_number(p.name))
        for p in paths
    ]
    files.sort(key=lambda f: (f.sequence, f.name))

    for prev, current in zip(files, files[1:]):
        if prev.sequence == current.sequence:
            raise DuplicateSequenceNumber(current.sequence, prev.name, current.name)

    return files


def discover(directory: Union[str, Path]) -> list[MigrationFile]:
    """List, filter and order the migration files in ``directory``.

    Subdirectories, hidden files and files without the ``.sql`` extension
    are skipped.

    Raises:
        DiscoveryError: If the directory cannot be listed.
        NoMigrationsFound: If nothing is left after filtering.
    """
    directory = Path(directory)
    try:
        entries = list(directory.iterdir())
    except OSError as e:
        raise DiscoveryError(f"read dir {directory}", e) from e

    candidates = [p for p in entries if is_migration_file(p)]
    if not candidates:
        raise NoMigrationsFound(str(directory))

    files = order(candidates)
    log.debug(
        "migrations_discovered",
        directory=str(directory),
        count=len(files),
    )
    return files


class FileSet:
    """The ordered migration files of one directory.

    Usage:
        files = FileSet.discover("migrations")
        for f in files:
            print(f.sequence, f.name)
    """

    def __init__(self, directory: Path, files: list[MigrationFile]):
        self._directory = directory
        self._files = files
        self._index = {f.name: i for i, f in enumerate(files)}

    @classmethod
    def discover(cls, directory: Union[str, Path]) -> "FileSet":
        """Build a FileSet from a directory on disk."""
        directory = Path(directory)
        return cls(directory, discover(directory))

    @property
    def directory(self) -> Path:
        return self._directory

    @property
    def names(self) -> list[str]:
        return [f.name for f in self._files]

    def index_of(self, name: str) -> Optional[int]:
        """Position of a file by base name, or None if absent."""
        return self._index.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[MigrationFile]:
        return iter(self._files)

    def __getitem__(self, index: int) -> MigrationFile:
        return self._files[index]

    def __repr__(self) -> str:
        return f"FileSet({str(self._directory)!r}, {len(self._files)} files)"
