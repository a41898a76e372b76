"""Timeout and exponential-backoff retry for calls to external systems.

Every connector collection, benchmark fetch and target delivery goes
through :func:`retry_with_backoff`, so a slow or flapping dependency costs
a bounded amount of time and never blocks unrelated work.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from seedflow.core.logging import get_logger

logger = get_logger(__name__)


class RetryExhaustedError(Exception):
    """Raised when every attempt failed or timed out."""

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error!r}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass
class RetryResult[T]:
    """Value returned by a successful call plus how many attempts it took."""

    value: T
    attempts: int


async def retry_with_backoff[T](
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    timeout: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    give_up_on: tuple[type[BaseException], ...] = (),
    event: str = "retry.attempt_failed",
    **log_context: object,
) -> RetryResult[T]:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    The delay before attempt ``n`` (1-indexed, n > 1) is
    ``min(base_delay * 2 ** (n - 2), max_delay)``.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        max_attempts: Total number of attempts (>= 1).
        base_delay: Initial backoff delay in seconds.
        max_delay: Upper bound on a single backoff delay.
        timeout: Per-attempt timeout in seconds (None disables it).
        retry_on: Exception types that trigger another attempt.
        give_up_on: Exception types re-raised immediately without retrying.
        event: Log event name emitted for each failed attempt.
        **log_context: Extra structured fields for the log events.

    Returns:
        RetryResult with the operation's value and the attempt count.

    Raises:
        RetryExhaustedError: If all attempts failed.
    """
    attempts = max(1, max_attempts)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            if timeout is not None:
                value = await asyncio.wait_for(operation(), timeout=timeout)
            else:
                value = await operation()
            return RetryResult(value=value, attempts=attempt)
        except give_up_on:
            raise
        except TimeoutError as e:
            last_error = e
        except retry_on as e:
            last_error = e

        logger.warning(
            event,
            attempt=attempt,
            max_attempts=attempts,
            error=str(last_error) or type(last_error).__name__,
            error_type=type(last_error).__name__,
            **log_context,
        )
        if attempt < attempts:
            wait_time = min(base_delay * (2 ** (attempt - 1)), max_delay)
            if wait_time > 0:
                await asyncio.sleep(wait_time)

    raise RetryExhaustedError(attempts, last_error)
