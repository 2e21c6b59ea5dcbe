"""Base contract for migration metadata stores.

A store owns the three metadata tables (migration history, checkpoints and
schema version) of one backend and runs migration statements against the
same connection. The engine talks to every backend through this interface
and never branches on which backend it has.

Implementations should:
- Keep all SQL dialect differences (placeholders, upserts, timestamp
  defaults, numeric ordering of filenames) inside the implementation
- Run each operation as its own committed unit unless inside ``transaction()``
- Wrap driver failures in metadata operations as StoreError
- Leave ``execute`` errors backend-native; the engine wraps them
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, AsyncContextManager, Iterator, Optional, Sequence

from sqlmigrate.core.errors import (
    ChecksumMismatch,
    MigrateError,
    SchemaUpgradeFailed,
    StoreError,
)
from sqlmigrate.domain.migration import Migration

MIGRATIONS_TABLE = "meta"
CHECKPOINTS_TABLE = "metacheckpoints"
VERSION_TABLE = "metaversion"

# Layout of the metadata tables written by this version.
# 0: pre-versioning layout, no content columns, md5 unique
# 1: content stored alongside every migration and checkpoint
CURRENT_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class TLSSettings:
    """Client TLS material for a database connection.

    Attributes:
        key: Path to the client private key (PEM).
        cert: Path to the client certificate (PEM).
        ca: Path to the server CA bundle (PEM).
        server_name: Name to verify the server certificate against.
    """

    key: Optional[str] = None
    cert: Optional[str] = None
    ca: Optional[str] = None
    server_name: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return any((self.key, self.cert, self.ca, self.server_name))


@dataclass(frozen=True)
class StoreSettings:
    """Connection settings shared by every backend.

    ``name`` is the database name, or the file path for SQLite.
    """

    kind: str
    name: str
    user: Optional[str] = None
    password: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    tls: Optional[TLSSettings] = None


class Store(ABC):
    """Pluggable persistence for migration metadata.

    Usage:
        async with SQLiteStore("app.db") as store:
            await store.ensure_migration_table()
            migrations = await store.list_migrations()
    """

    # Driver exception types translated to StoreError by _operation().
    driver_errors: tuple[type[BaseException], ...] = ()

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend identifier (e.g., 'sqlite', 'postgres')."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def open(self) -> None:
        """Connect to the database.

        Raises:
            StoreConnectionError: If the connection cannot be established.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    def transaction(self) -> AsyncContextManager[None]:
        """Group the operations awaited inside into one commit.

        Any exception rolls the whole group back and propagates.
        """
        ...

    @abstractmethod
    async def execute(self, statement: str) -> Any:
        """Run one migration statement. Errors are backend-native."""
        ...

    # ============ Metadata tables ============

    @abstractmethod
    async def ensure_migration_table(self) -> None:
        ...

    @abstractmethod
    async def ensure_checkpoint_table(self) -> None:
        ...

    @abstractmethod
    async def ensure_version_table(self, initial_version: int = CURRENT_SCHEMA_VERSION) -> int:
        """Create the version table and report the recorded version.

        Returns 0 when no version is recorded and legacy metadata tables
        exist. A database with no metadata at all is stamped with
        ``initial_version``, which is returned.
        """
        ...

    @abstractmethod
    async def update_version(self, version: int) -> None:
        ...

    # ============ Migrations ============

    @abstractmethod
    async def list_migrations(self) -> list[Migration]:
        """All recorded migrations, ordered by filename sequence number."""
        ...

    @abstractmethod
    async def insert_migration(self, filename: str, content: str, checksum: str) -> None:
        """Record a completed migration. Fails if the filename exists."""
        ...

    @abstractmethod
    async def upsert_migration(self, filename: str, content: str, checksum: str) -> None:
        """Insert or overwrite a migration record (adoption only)."""
        ...

    # ============ Checkpoints ============

    @abstractmethod
    async def list_checkpoints(self, filename: str) -> list[str]:
        """Checksums of the checkpointed statements of a file, by idx."""
        ...

    @abstractmethod
    async def insert_checkpoint(
        self, filename: str, content: str, checksum: str, idx: int
    ) -> None:
        ...

    @abstractmethod
    async def delete_checkpoints(self, filename: Optional[str] = None) -> None:
        """Delete checkpoints for one file, or all of them."""
        ...

    # ============ Schema upgrades ============

    @abstractmethod
    async def _upgrade_from_v0(self, migrations: Sequence[Migration]) -> None:
        """Rewrite the pre-versioning layout into the current one.

        Runs inside the transaction opened by upgrade_schema.
        """
        ...

    async def upgrade_schema(
        self, from_version: int, migrations: Sequence[Migration]
    ) -> None:
        """Bring the metadata tables from ``from_version`` to current.

        ``migrations`` supplies content and checksum for every applied file,
        since older layouts did not store content. The upgrade is all or
        nothing: on failure the tables are left exactly as they were.

        Raises:
            SchemaUpgradeFailed: If there is no upgrade path or it fails.
        """
        upgrades = {
            0: self._upgrade_from_v0,
        }
        step = upgrades.get(from_version)
        if step is None:
            raise SchemaUpgradeFailed(
                f"no upgrade path from metadata schema version {from_version}"
            )

        try:
            async with self.transaction():
                await step(migrations)
                await self.update_version(CURRENT_SCHEMA_VERSION)
        except MigrateError as e:
            if isinstance(e, SchemaUpgradeFailed):
                raise
            raise SchemaUpgradeFailed(
                f"upgrade from version {from_version} failed", e
            ) from e
        except self.driver_errors as e:
            raise SchemaUpgradeFailed(
                f"upgrade from version {from_version} failed", e
            ) from e

    # ============ Helpers ============

    @contextmanager
    def _operation(self, operation: str, **context: Any) -> Iterator[None]:
        """Translate driver errors raised inside the block into StoreError."""
        try:
            yield
        except MigrateError:
            raise
        except self.driver_errors as e:
            raise StoreError(operation, e, **context) from e

    async def __aenter__(self) -> "Store":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()


def legacy_content(
    migrations: Sequence[Migration], filename: str, recorded_checksum: str
) -> str:
    """Find the supplied content for a legacy history row.

    The supplied file must still match the checksum recorded when it ran,
    otherwise the upgrade would store content that never executed.

    Raises:
        SchemaUpgradeFailed: If the file is missing on disk or has changed.
    """
    for m in migrations:
        if m.filename != filename:
            continue
        if m.checksum != recorded_checksum:
            raise SchemaUpgradeFailed(
                f"cannot upgrade metadata: {filename} changed since it was applied",
                ChecksumMismatch(filename, recorded_checksum, m.checksum),
                filename=filename,
            )
        return m.content
    raise SchemaUpgradeFailed(
        f"cannot upgrade metadata: applied migration {filename} is missing on disk",
        filename=filename,
    )
