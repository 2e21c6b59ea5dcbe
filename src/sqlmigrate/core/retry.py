"""
Retry with exponential backoff for opening backend connections.

Only connection establishment is retried. Migration failures are terminal:
re-running the tool is the retry, and checkpoints make that safe.

Usage:
    from sqlmigrate.core.retry import RetryConfig, connect_with_retry

    config = RetryConfig(max_attempts=5)
    await connect_with_retry(store, config)
"""

from dataclasses import dataclass
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random_exponential,
)

from sqlmigrate.core.errors import is_retryable

log = structlog.get_logger()

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT_SECONDS = 0.5
DEFAULT_MAX_WAIT_SECONDS = 10.0
DEFAULT_EXPONENTIAL_MULTIPLIER = 2.0
DEFAULT_JITTER = True


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including initial).
        min_wait_seconds: Minimum wait time between retries.
        max_wait_seconds: Maximum wait time between retries.
        exponential_multiplier: Multiplier for exponential backoff.
        jitter: Whether to add randomness to wait times.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    min_wait_seconds: float = DEFAULT_MIN_WAIT_SECONDS
    max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS
    exponential_multiplier: float = DEFAULT_EXPONENTIAL_MULTIPLIER
    jitter: bool = DEFAULT_JITTER

    @classmethod
    def from_dict(cls, config_dict: dict[str, Any]) -> "RetryConfig":
        """Create RetryConfig from a dictionary (e.g., a ConfigManager section)."""
        return cls(
            max_attempts=int(config_dict.get("max_attempts", DEFAULT_MAX_ATTEMPTS)),
            min_wait_seconds=float(
                config_dict.get("min_wait_seconds", DEFAULT_MIN_WAIT_SECONDS)
            ),
            max_wait_seconds=float(
                config_dict.get("max_wait_seconds", DEFAULT_MAX_WAIT_SECONDS)
            ),
            exponential_multiplier=float(
                config_dict.get("exponential_multiplier", DEFAULT_EXPONENTIAL_MULTIPLIER)
            ),
            jitter=bool(config_dict.get("jitter", DEFAULT_JITTER)),
        )


F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def _create_retry_callback(
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[RetryCallState], None]:
    """Create a before-sleep callback that logs each retry."""
    context = log_context or {}

    def callback(state: RetryCallState) -> None:
        exception = state.outcome.exception() if state.outcome else None
        log.warning(
            "retry_attempt",
            attempt=state.attempt_number,
            error=str(exception) if exception else None,
            error_type=type(exception).__name__ if exception else None,
            wait_seconds=state.next_action.sleep if state.next_action else 0,
            **context,
        )

    return callback


def retry_with_config(
    config: RetryConfig,
    log_context: Optional[dict[str, Any]] = None,
) -> Callable[[F], F]:
    """Decorator retrying an async function on transient errors.

    Example:
        @retry_with_config(RetryConfig(max_attempts=5))
        async def open_connection():
            ...
    """

    def decorator(func: F) -> F:
        callback = _create_retry_callback(log_context)

        if config.jitter:
            wait_strategy = wait_random_exponential(
                multiplier=config.exponential_multiplier,
                min=config.min_wait_seconds,
                max=config.max_wait_seconds,
            )
        else:
            wait_strategy = wait_exponential(
                multiplier=config.exponential_multiplier,
                min=config.min_wait_seconds,
                max=config.max_wait_seconds,
            )

        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(config.max_attempts),
                wait=wait_strategy,
                retry=retry_if_exception(is_retryable),
                before_sleep=callback,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return async_wrapper  # type: ignore

    return decorator


async def connect_with_retry(store: Any, config: Optional[RetryConfig] = None) -> None:
    """Open a store, retrying transient connection failures.

    Args:
        store: Any object with an async ``open()`` method.
        config: Retry settings; defaults to RetryConfig().
    """
    config = config or RetryConfig()

    @retry_with_config(config, log_context={"operation": "connect"})
    async def _open() -> None:
        await store.open()

    await _open()
