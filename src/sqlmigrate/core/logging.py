"""
Structured logging setup using structlog.

Log events go to stderr; stdout is reserved for the run summary
("migrated ...", "up to date") so it can be piped or diffed.
"""
import logging
import sys
from typing import Optional, TextIO

import structlog

from sqlmigrate.core.errors import ConfigError

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# Database drivers that chatter at DEBUG/INFO
DRIVER_LOGGERS = ("aiosqlite", "asyncpg", "mysql.connector")


def resolve_level(name: str) -> int:
    """Map a level name from flags, env or TOML to a logging level."""
    upper = name.strip().upper()
    if upper not in LOG_LEVELS:
        raise ConfigError(
            f"unknown log level {name!r} ({', '.join(LOG_LEVELS)} allowed)"
        )
    return getattr(logging, upper)


def setup_logging(
    level: str = "INFO",
    json_output: bool = False,
    stream: Optional[TextIO] = None,
) -> structlog.stdlib.BoundLogger:
    """Configure structured logging for a run.

    Driver loggers stay at WARNING unless the run itself is at DEBUG.

    Raises:
        ConfigError: The level name is not recognized.
    """
    log_level = resolve_level(level)
    stream = stream or sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setLevel(log_level)
    logging.basicConfig(format="%(message)s", level=log_level, handlers=[handler], force=True)

    driver_level = logging.DEBUG if log_level == logging.DEBUG else logging.WARNING
    for name in DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(driver_level)

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=stream.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Tests reconfigure between runs
        cache_logger_on_first_use=False,
    )

    return get_logger()


def get_logger(name: str = "sqlmigrate") -> structlog.stdlib.BoundLogger:
    """Get a logger named under the ``sqlmigrate`` namespace."""
    if not name.startswith("sqlmigrate"):
        name = f"sqlmigrate.{name}"
    return structlog.get_logger(name)
