"""MySQL store - metadata and migrations on mysql.connector's asyncio driver.

The connection runs with autocommit on, so each migration statement and each
checkpoint write is its own committed unit.

MySQL commits implicitly around DDL. The v0 upgrade therefore cannot be
rolled back once its first ALTER has run; it is ordered so every check that
can fail (unfinished checkpoints, missing or changed files) happens before
any DDL is issued.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Sequence

import mysql.connector
import structlog
from mysql.connector.aio import connect

from sqlmigrate.core.errors import SchemaUpgradeFailed, StoreConnectionError
from sqlmigrate.domain.migration import Migration
from sqlmigrate.stores.base import (
    CHECKPOINTS_TABLE,
    CURRENT_SCHEMA_VERSION,
    MIGRATIONS_TABLE,
    VERSION_TABLE,
    Store,
    TLSSettings,
    legacy_content,
)
from sqlmigrate.stores.tls import mysql_ssl_options

log = structlog.get_logger()

DEFAULT_PORT = 3306
DEFAULT_USER = "root"

MIGRATIONS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
    filename VARCHAR(255) UNIQUE NOT NULL,
    md5 VARCHAR(255) NOT NULL,
    content MEDIUMTEXT NOT NULL,
    createdat DATETIME(6) NOT NULL DEFAULT CURRENT_TIMESTAMP(6)
)
"""

CHECKPOINTS_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {CHECKPOINTS_TABLE} (
    filename VARCHAR(255) NOT NULL,
    content MEDIUMTEXT NOT NULL,
    idx INTEGER NOT NULL,
    md5 VARCHAR(255) NOT NULL,
    createdat DATETIME(6) NOT NULL DEFAULT CURRENT_TIMESTAMP(6),
    PRIMARY KEY (filename, idx)
)
"""

VERSION_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {VERSION_TABLE} (
    version INTEGER NOT NULL
)
"""


class MySQLStore(Store):
    """Migration metadata in a MySQL or MariaDB database."""

    driver_errors = (mysql.connector.Error,)

    def __init__(
        self,
        database: str,
        user: str = DEFAULT_USER,
        password: Optional[str] = None,
        host: str = "127.0.0.1",
        port: int = DEFAULT_PORT,
        tls: Optional[TLSSettings] = None,
    ):
        self._database = database
        self._user = user
        self._password = password
        self._host = host
        self._port = port
        self._tls = tls
        self._connection: Any = None
        self._log = log.bind(component="mysql_store", database=database)

    @property
    def name(self) -> str:
        return "mysql"

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def open(self) -> None:
        if self._connection is not None:
            return

        options: dict[str, Any] = {}
        if self._tls and self._tls.enabled:
            options.update(mysql_ssl_options(self._tls))

        try:
            self._connection = await connect(
                host=self._host,
                port=self._port,
                user=self._user,
                password=self._password or "",
                database=self._database,
                autocommit=True,
                **options,
            )
        except (OSError, mysql.connector.Error) as e:
            raise StoreConnectionError(
                f"connect to mysql {self._host}:{self._port}/{self._database}", e
            ) from e

        self._log.debug("mysql_connected", host=self._host, tls=bool(options))

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _conn(self) -> Any:
        if self._connection is None:
            raise RuntimeError("MySQL store not connected")
        return self._connection

    async def _exec(self, query: str, params: Sequence[Any] = ()) -> int:
        # No params means no %-substitution, so literal % in migrations survives
        async with await self._conn().cursor() as cursor:
            await cursor.execute(query, tuple(params) if params else None)
            # Unread rows make cursor.close() raise after autocommit
            if cursor.with_rows:
                await cursor.fetchall()
            return cursor.rowcount

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> list[tuple]:
        async with await self._conn().cursor() as cursor:
            await cursor.execute(query, tuple(params) if params else None)
            return list(await cursor.fetchall())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        conn = self._conn()
        await conn.start_transaction()
        try:
            yield
        except BaseException:
            await conn.rollback()
            raise
        await conn.commit()

    async def execute(self, statement: str) -> Any:
        return await self._exec(statement)

    async def _table_exists(self, table: str) -> bool:
        rows = await self._fetchall(
            """
            SELECT 1 FROM information_schema.tables
            WHERE table_schema = DATABASE() AND table_name = %s
            """,
            (table,),
        )
        return bool(rows)

    # ============ Metadata tables ============

    async def ensure_migration_table(self) -> None:
        with self._operation("create meta table"):
            await self._exec(MIGRATIONS_TABLE_SQL)

    async def ensure_checkpoint_table(self) -> None:
        with self._operation("create metacheckpoints table"):
            await self._exec(CHECKPOINTS_TABLE_SQL)

    async def ensure_version_table(self, initial_version: int = CURRENT_SCHEMA_VERSION) -> int:
        with self._operation("create metaversion table"):
            await self._exec(VERSION_TABLE_SQL)

        with self._operation("get version"):
            rows = await self._fetchall(f"SELECT version FROM {VERSION_TABLE} LIMIT 1")
            if rows:
                return int(rows[0][0])

            if await self._table_exists(MIGRATIONS_TABLE):
                return 0

        await self.update_version(initial_version)
        return initial_version

    async def update_version(self, version: int) -> None:
        with self._operation("update version"):
            await self._exec(f"DELETE FROM {VERSION_TABLE}")
            await self._exec(
                f"INSERT INTO {VERSION_TABLE} (version) VALUES (%s)", (version,)
            )

    # ============ Migrations ============

    async def list_migrations(self) -> list[Migration]:
        query = f"""
            SELECT filename, content, md5 FROM {MIGRATIONS_TABLE}
            ORDER BY CAST(filename AS UNSIGNED), filename
        """
        with self._operation("get migrations"):
            rows = await self._fetchall(query)
        return [
            Migration(filename=filename, content=content, checksum=md5)
            for filename, content, md5 in rows
        ]

    async def insert_migration(self, filename: str, content: str, checksum: str) -> None:
        with self._operation("insert migration", filename=filename):
            await self._exec(
                f"INSERT INTO {MIGRATIONS_TABLE} (filename, content, md5) VALUES (%s, %s, %s)",
                (filename, content, checksum),
            )

    async def upsert_migration(self, filename: str, content: str, checksum: str) -> None:
        # VALUES() keeps MariaDB compatibility
        with self._operation("upsert migration", filename=filename):
            await self._exec(
                f"""
                INSERT INTO {MIGRATIONS_TABLE} (filename, content, md5) VALUES (%s, %s, %s)
                ON DUPLICATE KEY UPDATE md5 = VALUES(md5), content = VALUES(content)
                """,
                (filename, content, checksum),
            )

    # ============ Checkpoints ============

    async def list_checkpoints(self, filename: str) -> list[str]:
        with self._operation("get checkpoints", filename=filename):
            rows = await self._fetchall(
                f"SELECT md5 FROM {CHECKPOINTS_TABLE} WHERE filename = %s ORDER BY idx",
                (filename,),
            )
        return [md5 for (md5,) in rows]

    async def insert_checkpoint(
        self, filename: str, content: str, checksum: str, idx: int
    ) -> None:
        with self._operation("insert checkpoint", filename=filename, index=idx):
            await self._exec(
                f"""
                INSERT INTO {CHECKPOINTS_TABLE} (filename, content, idx, md5)
                VALUES (%s, %s, %s, %s)
                """,
                (filename, content, idx, checksum),
            )

    async def delete_checkpoints(self, filename: Optional[str] = None) -> None:
        with self._operation("delete checkpoints", filename=filename):
            if filename is None:
                await self._exec(f"DELETE FROM {CHECKPOINTS_TABLE}")
            else:
                await self._exec(
                    f"DELETE FROM {CHECKPOINTS_TABLE} WHERE filename = %s", (filename,)
                )

    # ============ Schema upgrades ============

    async def _upgrade_from_v0(self, migrations: Sequence[Migration]) -> None:
        if await self._table_exists(CHECKPOINTS_TABLE):
            rows = await self._fetchall(f"SELECT COUNT(*) FROM {CHECKPOINTS_TABLE}")
            pending = rows[0][0]
            if pending:
                raise SchemaUpgradeFailed(
                    f"cannot upgrade metadata with {pending} unfinished checkpoints; "
                    "finish the interrupted migration with the previous version first"
                )

        legacy_rows = await self._fetchall(f"SELECT filename, md5 FROM {MIGRATIONS_TABLE}")
        contents = [
            (legacy_content(migrations, filename, md5), filename)
            for filename, md5 in legacy_rows
        ]

        await self._exec(f"ALTER TABLE {MIGRATIONS_TABLE} DROP INDEX md5")
        await self._exec(f"ALTER TABLE {MIGRATIONS_TABLE} ADD COLUMN content MEDIUMTEXT")
        for content, filename in contents:
            await self._exec(
                f"UPDATE {MIGRATIONS_TABLE} SET content = %s WHERE filename = %s",
                (content, filename),
            )
        await self._exec(
            f"ALTER TABLE {MIGRATIONS_TABLE} MODIFY COLUMN content MEDIUMTEXT NOT NULL"
        )

        await self._exec(f"DROP TABLE IF EXISTS {CHECKPOINTS_TABLE}")
        await self._exec(CHECKPOINTS_TABLE_SQL)

        self._log.info("mysql_metadata_upgraded", from_version=0, rows=len(legacy_rows))
