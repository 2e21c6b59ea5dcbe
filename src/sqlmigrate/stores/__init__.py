"""Storage backends for migration metadata - SQLite, Postgres, MySQL."""

from sqlmigrate.core.errors import ConfigError
from sqlmigrate.stores.base import (
    CURRENT_SCHEMA_VERSION,
    Store,
    StoreSettings,
    TLSSettings,
)

STORE_KINDS = ("mysql", "postgres", "sqlite")


def create_store(settings: StoreSettings) -> Store:
    """Build the store for ``settings.kind``.

    Driver modules are imported lazily so that a SQLite-only install does not
    need the Postgres or MySQL drivers.

    Raises:
        ConfigError: If the kind is not one of STORE_KINDS.
    """
    if settings.kind == "sqlite":
        from sqlmigrate.stores.sqlite import SQLiteStore

        return SQLiteStore(settings.name)

    if settings.kind == "postgres":
        from sqlmigrate.stores.postgres import DEFAULT_PORT, DEFAULT_USER, PostgresStore

        return PostgresStore(
            database=settings.name,
            user=settings.user or DEFAULT_USER,
            password=settings.password,
            host=settings.host or "127.0.0.1",
            port=settings.port or DEFAULT_PORT,
            tls=settings.tls,
        )

    if settings.kind == "mysql":
        from sqlmigrate.stores.mysql import DEFAULT_PORT, DEFAULT_USER, MySQLStore

        return MySQLStore(
            database=settings.name,
            user=settings.user or DEFAULT_USER,
            password=settings.password,
            host=settings.host or "127.0.0.1",
            port=settings.port or DEFAULT_PORT,
            tls=settings.tls,
        )

    raise ConfigError(
        f"unknown db type {settings.kind} ({', '.join(STORE_KINDS)} allowed)"
    )


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "STORE_KINDS",
    "Store",
    "StoreSettings",
    "TLSSettings",
    "create_store",
]
