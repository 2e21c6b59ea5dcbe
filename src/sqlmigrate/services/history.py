"""History validation - recorded migrations must be a prefix of the files.

Two rules keep history trustworthy:
- Migrations must be the same every run (checksums still match)
- Migrations must be appended, never inserted earlier in history
"""

from typing import Optional, Sequence

import structlog

from sqlmigrate.core.errors import ChecksumMismatch, HistoryReordered, MissingMigrations
from sqlmigrate.domain.migration import Migration, MigrationFile
from sqlmigrate.services.checksum import fingerprint

log = structlog.get_logger()


class HistoryValidator:
    """Checks recorded migrations against the ordered files on disk."""

    def __init__(self, logger: Optional[structlog.stdlib.BoundLogger] = None):
        self._log = logger or log.bind(component="history")

    def validate(
        self,
        files: Sequence[MigrationFile],
        migrations: Sequence[Migration],
        start_index: int = 0,
    ) -> None:
        """Verify recorded history from ``start_index`` onwards.

        Files are re-read from disk for every check.

        Raises:
            MissingMigrations: An applied file is no longer on disk.
            HistoryReordered: A file sits at a different position than in history.
            ChecksumMismatch: An applied file was edited after it ran.
        """
        if len(migrations) > len(files):
            on_disk = {f.name for f in files}
            missing = [m.filename for m in migrations if m.filename not in on_disk]
            for filename in missing:
                self._log.error("missing_applied_migration", filename=filename)
            raise MissingMigrations(missing)

        for i in range(start_index, len(migrations)):
            recorded = migrations[i]
            current = files[i]
            if recorded.filename != current.name:
                self._log.error(
                    "history_reordered",
                    index=i,
                    recorded=recorded.filename,
                    found=current.name,
                )
                raise HistoryReordered(recorded.filename, current.name, i)

            actual = fingerprint(current.read())
            if actual != recorded.checksum:
                self._log.error(
                    "checksum_mismatch",
                    filename=recorded.filename,
                    recorded=recorded.checksum,
                    actual=actual,
                )
                raise ChecksumMismatch(recorded.filename, recorded.checksum, actual)

        self._log.debug(
            "history_valid",
            applied=len(migrations),
            checked=max(0, len(migrations) - start_index),
        )
