"""Metadata schema version detection and one-time upgrades."""

from typing import Optional, Sequence

import structlog

from sqlmigrate.core.errors import UnsupportedSchemaVersion
from sqlmigrate.domain.migration import Migration, MigrationFile, decode_content
from sqlmigrate.services.checksum import fingerprint
from sqlmigrate.stores.base import CURRENT_SCHEMA_VERSION, Store

log = structlog.get_logger()


def read_migrations(files: Sequence[MigrationFile]) -> list[Migration]:
    """Read content and checksum of every file from disk."""
    migrations = []
    for f in files:
        data = f.read()
        migrations.append(
            Migration(
                filename=f.name,
                content=decode_content(f.name, data),
                checksum=fingerprint(data),
            )
        )
    return migrations


class SchemaUpgrader:
    """Brings the store's metadata tables to CURRENT_SCHEMA_VERSION."""

    def __init__(
        self,
        store: Store,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
    ):
        self._store = store
        self._log = logger or log.bind(component="schema")

    async def ensure(self, files: Sequence[MigrationFile]) -> int:
        """Create missing metadata tables, upgrading older layouts first.

        Returns:
            The schema version the metadata now has.

        Raises:
            UnsupportedSchemaVersion: Written by a newer version of this tool.
            SchemaUpgradeFailed: The upgrade failed and was rolled back.
        """
        version = await self._store.ensure_version_table(CURRENT_SCHEMA_VERSION)

        if version > CURRENT_SCHEMA_VERSION:
            raise UnsupportedSchemaVersion(version, CURRENT_SCHEMA_VERSION)

        if version < CURRENT_SCHEMA_VERSION:
            self._log.info(
                "upgrading_schema",
                from_version=version,
                to_version=CURRENT_SCHEMA_VERSION,
            )
            await self._store.upgrade_schema(version, read_migrations(files))
            self._log.info("schema_upgraded", version=CURRENT_SCHEMA_VERSION)
            version = CURRENT_SCHEMA_VERSION

        await self._store.ensure_migration_table()
        await self._store.ensure_checkpoint_table()
        return version
