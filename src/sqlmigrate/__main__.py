"""sqlmigrate - Entry Point

Usage:
    python -m sqlmigrate --db NAME [-t TYPE] [--dir DIR] [-d] [--skip FILE]

Examples:
    python -m sqlmigrate -t sqlite --db app.db --dir migrations
    python -m sqlmigrate -t postgres --db app -u deploy --dir migrations -d
    python -m sqlmigrate --db app --skip 0042_add_index.sql
    python -m sqlmigrate --config config/production.toml
"""

import argparse
import asyncio
import getpass
import sys
from pathlib import Path
from typing import Callable, Optional, Sequence

from sqlmigrate import __version__
from sqlmigrate.core.config import ConfigManager, find_config_file
from sqlmigrate.core.errors import AdoptionWithDryRun, ConfigError, MigrateError
from sqlmigrate.core.logging import LOG_LEVELS, get_logger, setup_logging
from sqlmigrate.core.retry import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_WAIT_SECONDS,
    RetryConfig,
    connect_with_retry,
)
from sqlmigrate.services.engine import MigrationEngine
from sqlmigrate.stores import STORE_KINDS, StoreSettings, TLSSettings, create_store


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="sqlmigrate",
        description="Apply numbered SQL migration files to MySQL, Postgres or SQLite",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"sqlmigrate {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument("--dir", default=None, help="migrations directory")
    parser.add_argument(
        "-t", "--type", default=None, help=f"type of database ({', '.join(STORE_KINDS)})"
    )
    parser.add_argument("--db", default=None, help="database name (file path for sqlite)")
    parser.add_argument("-u", "--user", default=None, help="database user")
    parser.add_argument("-H", "--host", default=None, help="database host")
    parser.add_argument("-p", "--port", type=int, default=None, help="database port")
    parser.add_argument(
        "--pass",
        dest="password",
        default=None,
        help="password (if not provided it will be requested)",
    )

    parser.add_argument("--ssl-key", default=None, help="path to client key pem")
    parser.add_argument("--ssl-cert", default=None, help="path to client cert pem")
    parser.add_argument("--ssl-ca", default=None, help="path to server ca pem")
    parser.add_argument("--ssl-server", default=None, help="server name for ssl")

    parser.add_argument(
        "-d",
        "--dry-run",
        action="store_true",
        help="show what would be migrated without running anything",
    )
    parser.add_argument(
        "--skip",
        default=None,
        help="record migrations as applied up to this filename (inclusive)",
    )

    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default=None,
        help="Log level",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        default=None,
        help="Emit logs as JSON",
    )

    return parser.parse_args(argv)


def apply_overrides(config: ConfigManager, args: argparse.Namespace) -> None:
    """Layer command-line flags over file and environment configuration."""
    config.set("migrations.dir", args.dir)
    config.set("database.type", args.type)
    config.set("database.name", args.db)
    config.set("database.user", args.user)
    config.set("database.host", args.host)
    config.set("database.port", args.port)
    config.set("database.password", args.password)
    config.set("tls.key", args.ssl_key)
    config.set("tls.cert", args.ssl_cert)
    config.set("tls.ca", args.ssl_ca)
    config.set("tls.server_name", args.ssl_server)
    config.set("logging.level", args.log_level)
    config.set("logging.json", args.log_json)


def build_settings(
    config: ConfigManager,
    prompt: Callable[[str], str] = getpass.getpass,
) -> StoreSettings:
    """Validate configuration and turn it into store settings.

    Prompts for the password when the backend needs one and none is
    configured.

    Raises:
        ConfigError: On missing or conflicting settings.
    """
    kind = config.get_str("database.type", "mysql")
    name = config.get_str("database.name")
    if not name:
        raise ConfigError(
            "database name cannot be empty. specify using the --db flag. "
            "run `sqlmigrate -h` for help"
        )
    if kind not in STORE_KINDS:
        raise ConfigError(f"unknown db type {kind} ({', '.join(STORE_KINDS)} allowed)")

    tls = TLSSettings(
        key=config.get_str("tls.key") or None,
        cert=config.get_str("tls.cert") or None,
        ca=config.get_str("tls.ca") or None,
        server_name=config.get_str("tls.server_name") or None,
    )

    if kind == "sqlite":
        for key, flag in (
            ("database.user", "--user"),
            ("database.host", "--host"),
            ("database.port", "--port"),
            ("database.password", "--pass"),
        ):
            if config.get(key) is not None:
                raise ConfigError(f"sqlite does not support the {flag} flag")
        if tls.enabled:
            raise ConfigError("sqlite does not support ssl")
        return StoreSettings(kind=kind, name=name)

    if kind == "postgres" and tls.server_name:
        raise ConfigError("postgres does not support the --ssl-server flag")

    password = config.get_str("database.password")
    if not password:
        try:
            password = prompt(f"{name} database password: ")
        except EOFError as e:
            raise ConfigError("read pass", e) from e

    port = config.get("database.port")
    return StoreSettings(
        kind=kind,
        name=name,
        user=config.get_str("database.user") or None,
        password=password,
        host=config.get_str("database.host") or None,
        port=int(port) if port is not None else None,
        tls=tls if tls.enabled else None,
    )


async def run_migrate(args: argparse.Namespace) -> int:
    """Run one migration pass. Returns the process exit status."""
    config_path = find_config_file(args.config)
    config = ConfigManager(config_path)
    apply_overrides(config, args)

    try:
        setup_logging(
            level=config.get_str("logging.level", "INFO"),
            json_output=config.get_bool("logging.json"),
        )
    except ConfigError as e:
        print(e, file=sys.stderr)
        return 1
    log = get_logger("cli")

    try:
        if args.dry_run and args.skip:
            raise AdoptionWithDryRun()

        settings = build_settings(config)
        log.info(
            "starting_sqlmigrate",
            version=__version__,
            config=str(config_path) if config_path else "defaults",
            backend=settings.kind,
            dry_run=args.dry_run,
            tls=settings.tls is not None,
        )

        store = create_store(settings)
        retry = RetryConfig(
            max_attempts=config.get_int("connect.max_attempts", DEFAULT_MAX_ATTEMPTS),
            max_wait_seconds=config.get_float(
                "connect.max_wait_seconds", DEFAULT_MAX_WAIT_SECONDS
            ),
        )
        await connect_with_retry(store, retry)

        try:
            engine = MigrationEngine(
                store,
                config.get_str("migrations.dir", "."),
                adopt_to=args.skip,
            )

            if args.dry_run:
                pending = await engine.plan()
                if not pending:
                    print("up to date")
                for f in pending:
                    print("would migrate", f.name)
                return 0

            migrated = await engine.migrate()
            for name in engine.context.executed:
                print("migrated", name)
            print("success" if migrated else "up to date")
            return 0
        finally:
            await store.close()

    except MigrateError as e:
        log.debug("migrate_failed", error_type=type(e).__name__, filename=e.filename)
        print(e, file=sys.stderr)
        return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    try:
        return asyncio.run(run_migrate(args))
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
