"""Circuit breaker utilities for the container engine daemon.

This module wraps **pybreaker** so that calls to an unreachable daemon fail
fast with one clearly labelled error instead of every test waiting for its
own connection timeout.

## Circuit Breaker States

- **CLOSED**: Normal operation, requests pass through
- **OPEN**: Daemon is failing, requests fail immediately without calling it
- **HALF_OPEN**: Testing if the daemon has recovered, allows limited requests

## What counts as a failure

Only transport failures should open the breaker. Errors where the daemon
answered (404 for a missing image, 409 for a name conflict) are passed to
`create_circuit_breaker(exclude=...)` so they never count.

## Decorator

`@with_circuit_breaker("docker", error_cls=DaemonUnreachableError)`:
1. Route the call through the breaker, which rejects it while the circuit
   is open and lets a trial call through once the recovery timeout passed
2. Convert CircuitBreakerError to `error_cls`
"""

import functools
import logging
from collections.abc import Callable, Iterable
from typing import Any, NoReturn

import pybreaker

from mongotest.foundation.exceptions import UpstreamError

logger = logging.getLogger("mongotest.foundation.circuit_breaker")

ExclusionRule = type[BaseException] | Callable[[BaseException], bool]


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Logging listener for circuit breaker state changes."""

    def state_change(
        self,
        cb: pybreaker.CircuitBreaker,
        old_state: pybreaker.CircuitBreakerState | None,
        new_state: pybreaker.CircuitBreakerState,
    ) -> None:
        """Log circuit breaker state transitions.

        Args:
            cb: The circuit breaker instance.
            old_state: Previous state.
            new_state: New state.
        """
        logger.warning(
            "Circuit breaker state changed",
            extra={
                "circuit_breaker": cb.name,
                "old_state": str(old_state),
                "new_state": str(new_state),
                "failure_count": cb.fail_counter,
            },
        )

    def failure(
        self,
        cb: pybreaker.CircuitBreaker,
        exc: BaseException,
    ) -> None:
        """Log when a call fails.

        Args:
            cb: The circuit breaker instance.
            exc: Exception that occurred.
        """
        logger.error(
            "Circuit breaker failure",
            extra={
                "circuit_breaker": cb.name,
                "state": str(cb.current_state),
                "failure_count": cb.fail_counter,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
            },
        )


def create_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: int = 60,
    exclude: Iterable[ExclusionRule] | None = None,
) -> pybreaker.CircuitBreaker:
    """Create a circuit breaker for an external service dependency.

    Args:
        name: Unique name for the circuit breaker (e.g., "docker").
        failure_threshold: Number of consecutive failures before opening
            circuit. Default: 5.
        recovery_timeout: Seconds to wait before attempting recovery (moving to
            half-open state). Default: 60.
        exclude: Exception types, or predicates over an exception, that
            must not count as failures.

    Returns:
        Configured CircuitBreaker instance with logging listener.
    """
    return pybreaker.CircuitBreaker(
        name=name,
        fail_max=failure_threshold,
        reset_timeout=recovery_timeout,
        exclude=list(exclude or []),
        listeners=[CircuitBreakerListener()],
    )


def handle_circuit_breaker_error(
    service_name: str,
    error_cls: type[Exception] = UpstreamError,
) -> NoReturn:
    """Raise `error_cls` describing an open circuit for `service_name`.

    Args:
        service_name: Name of the service (for error message).
        error_cls: Exception class to raise.

    Raises:
        Exception: Always raises `error_cls`.
    """
    msg = (
        f"{service_name} is currently unavailable. "
        "The circuit breaker is open due to repeated failures. "
        "It will be retried automatically after the recovery timeout."
    )
    raise error_cls(msg)


def _get_breaker_or_raise(instance: object) -> pybreaker.CircuitBreaker:
    """Get circuit breaker from instance or raise RuntimeError.

    Args:
        instance: Object that should have a _breaker attribute.

    Returns:
        The circuit breaker instance.

    Raises:
        RuntimeError: If instance has no _breaker attribute.
    """
    breaker = getattr(instance, "_breaker", None)
    if breaker is None:
        msg = (
            f"{instance.__class__.__name__} has no circuit breaker. "
            "Ensure the class inherits from CircuitBreakerMixin and "
            "calls _init_circuit_breaker() in __attrs_post_init__."
        )
        raise RuntimeError(msg)
    return breaker


def with_circuit_breaker(service_name: str, error_cls: type[Exception] = UpstreamError):
    """Decorator to wrap method calls with circuit breaker protection.

    Args:
        service_name: Service name for error messages.
        error_cls: Exception raised when the circuit is open.

    Returns:
        Decorator function that wraps methods with circuit breaker logic.

    Example:
        ```python
        @attrs.define(frozen=False, slots=True)
        class ContainerDriver(CircuitBreakerMixin):
            _breaker: pybreaker.CircuitBreaker = attrs.field(init=False)

            @with_circuit_breaker("docker", error_cls=DaemonUnreachableError)
            def start(self, container_id: str) -> None:
                self.client.api.start(container_id)
        ```

    Note:
        This decorator expects the instance to have a `_breaker` attribute
        (typically provided by CircuitBreakerMixin).
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args: Any, **kwargs: Any):
            breaker = _get_breaker_or_raise(self)

            def _impl():
                return func(self, *args, **kwargs)

            try:
                return breaker.call(_impl)
            except pybreaker.CircuitBreakerError:
                handle_circuit_breaker_error(service_name, error_cls)

        return wrapper

    return decorator
