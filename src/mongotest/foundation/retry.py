"""Bounded retry utilities using tenacity.

This module provides the retry policies used while bringing a database
container up: a fixed-interval policy for readiness probing and a linear
backoff policy for replica-set bootstrap.

## Components

### RetryWithBackoff
Class-based retry utility with a pluggable tenacity wait strategy, an
injectable sleep function and structured logging.

### create_retry_logger
Factory function to create retry logging callbacks for tenacity's
`before_sleep` hook.

## Usage

```python
from mongotest.foundation.retry import RetryWithBackoff

probe = RetryWithBackoff.fixed_interval(attempts=5, interval=0.2)
probe.call(client.ping)

bootstrap = RetryWithBackoff.linear(attempts=3, step=0.2, settle_after_final=True)
output = bootstrap.call(conn.run_script, script)
```
"""

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
    wait_incrementing,
)
from tenacity.wait import wait_base

T = TypeVar("T")

DEFAULT_RETRY_EXCEPTIONS: tuple[type[Exception], ...] = (Exception,)


def create_retry_logger(
    logger: logging.Logger,
    get_error_details: Callable[[BaseException], dict[str, Any]] | None = None,
    message: str = "Operation failed, retrying",
    level: int = logging.WARNING,
) -> Callable[[RetryCallState], None]:
    """Create a retry logging callback for tenacity.

    This factory creates a callback function suitable for tenacity's
    `before_sleep` parameter. It logs retry attempts with structured
    context including attempt number, wait time, and error details.

    Args:
        logger: Logger instance to use for logging.
        get_error_details: Optional function to extract additional error
            details from exceptions (e.g. container id, exit code).
        message: Log message.
        level: Log level for each retry record.

    Returns:
        Callback function for tenacity's before_sleep parameter.
    """

    def log_retry(retry_state: RetryCallState) -> None:
        if retry_state.outcome is None or not retry_state.outcome.failed:
            return

        exc = retry_state.outcome.exception()
        wait_time = retry_state.next_action.sleep if retry_state.next_action else 0

        extra: dict[str, Any] = {
            "attempt": retry_state.attempt_number,
            "wait_seconds": round(wait_time, 2),
            "error_type": type(exc).__name__,
        }

        if get_error_details is not None and exc is not None:
            extra.update(get_error_details(exc))

        logger.log(level, message, extra=extra)

    return log_retry


class RetryWithBackoff:
    """Bounded retry with a tenacity wait strategy and structured logging.

    Attributes:
        max_attempts: Maximum number of attempts, including the first one.
        wait: Tenacity wait strategy used between attempts.
        retry_exceptions: Exception types that trigger another attempt. Any
            other exception propagates immediately.
        settle_after_final: When True, the wait computed for the failed final
            attempt is also slept before the error is surfaced, so every
            failed attempt is followed by exactly one wait.
        logger: Logger for retry and exhaustion records.
        sleep: Sleep function (injectable for tests).

    Example:
        ```python
        retry = RetryWithBackoff(max_attempts=5, wait=wait_fixed(0.2))
        result = retry.call(lambda: client.ping())
        ```
    """

    def __init__(
        self,
        max_attempts: int = 3,
        wait: wait_base | None = None,
        retry_exceptions: tuple[type[BaseException], ...] | None = None,
        settle_after_final: bool = False,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        retry_message: str = "Retry attempt failed, retrying",
        retry_log_level: int = logging.WARNING,
    ) -> None:
        """Initialize retry utility.

        Args:
            max_attempts: Maximum number of attempts.
            wait: Wait strategy. Defaults to no wait.
            retry_exceptions: Exception types to retry on. If None, any
                `Exception` is retried.
            settle_after_final: Also wait after the final failed attempt.
            logger: Logger instance. Defaults to "mongotest.retry".
            sleep: Function used to sleep between attempts.
            retry_message: Message logged before each wait.
            retry_log_level: Level of the record logged before each wait.
        """
        if max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {max_attempts}"
            raise ValueError(msg)
        self.max_attempts = max_attempts
        self.wait = wait or wait_fixed(0)
        self.retry_exceptions = retry_exceptions or DEFAULT_RETRY_EXCEPTIONS
        self.settle_after_final = settle_after_final
        self.logger = logger or logging.getLogger("mongotest.retry")
        self.sleep = sleep
        self.retry_message = retry_message
        self.retry_log_level = retry_log_level

    @classmethod
    def fixed_interval(cls, attempts: int, interval: float, **kwargs: Any) -> "RetryWithBackoff":
        """Retry up to `attempts` times with a constant `interval` between attempts."""
        return cls(max_attempts=attempts, wait=wait_fixed(interval), **kwargs)

    @classmethod
    def linear(cls, attempts: int, step: float, **kwargs: Any) -> "RetryWithBackoff":
        """Retry up to `attempts` times, waiting `step * n` after failed attempt n."""
        return cls(max_attempts=attempts, wait=wait_incrementing(start=step, increment=step), **kwargs)

    def _on_exhausted(self, retry_state: RetryCallState) -> Any:
        """Log exhaustion, optionally settle, then re-raise the last error."""
        outcome = retry_state.outcome
        assert outcome is not None
        exception = outcome.exception()
        self.logger.warning(
            "All retry attempts exhausted",
            extra={
                "max_attempts": self.max_attempts,
                "error": str(exception),
                "error_type": type(exception).__name__,
            },
        )
        if self.settle_after_final:
            self.sleep(self.wait(retry_state))
        return outcome.result()

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call a function with retry logic.

        Args:
            func: Function to call.
            *args: Positional arguments to pass to func.
            **kwargs: Keyword arguments to pass to func.

        Returns:
            Result of the first successful call.

        Raises:
            Exception: The last exception raised by func once attempts are
                exhausted, or any exception not in `retry_exceptions`.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(self.retry_exceptions),
            before_sleep=create_retry_logger(self.logger, message=self.retry_message, level=self.retry_log_level),
            retry_error_callback=self._on_exhausted,
            sleep=self.sleep,
        )
        result: T = retrying(func, *args, **kwargs)
        return result
