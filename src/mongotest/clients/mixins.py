"""Mixins for client wrapper classes.

This module provides reusable mixins that can be combined with client classes
to add common functionality like circuit breaker support and logging.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

import attrs
import pybreaker

from mongotest.foundation.circuit_breaker import ExclusionRule, create_circuit_breaker


@attrs.define(frozen=False, slots=True)
class CircuitBreakerMixin(ABC):
    """Mixin for clients with circuit breaker support.

    This mixin provides automatic circuit breaker initialization and management.
    Subclasses must implement `_circuit_breaker_config()` to specify their
    circuit breaker parameters, and may override
    `_circuit_breaker_exclusions()` to keep some errors from counting.

    Example:
        ```python
        @attrs.define(frozen=False, slots=True)
        class MyClient(CircuitBreakerMixin):
            url: str

            def _circuit_breaker_config(self) -> tuple[str, int, int]:
                return ("myclient", 5, 60)

            def __attrs_post_init__(self) -> None:
                self._init_circuit_breaker()
        ```
    """

    _breaker: pybreaker.CircuitBreaker = attrs.field(init=False)

    @abstractmethod
    def _circuit_breaker_config(self) -> tuple[str, int, int]:
        """Return circuit breaker configuration.

        Returns:
            Tuple of (name, failure_threshold, recovery_timeout).
            - name: Service name (e.g., "docker")
            - failure_threshold: Number of consecutive failures before opening
            - recovery_timeout: Seconds to wait before attempting recovery
        """

    def _circuit_breaker_exclusions(self) -> Iterable[ExclusionRule]:
        """Return exception types or predicates that must not count as failures."""
        return ()

    def _init_circuit_breaker(self) -> None:
        """Initialize circuit breaker with configuration from subclass.

        This method should be called in `__attrs_post_init__` after the client
        is fully initialized.
        """
        name, failure_threshold, recovery_timeout = self._circuit_breaker_config()
        object.__setattr__(
            self,
            "_breaker",
            create_circuit_breaker(
                name=name,
                failure_threshold=failure_threshold,
                recovery_timeout=recovery_timeout,
                exclude=self._circuit_breaker_exclusions(),
            ),
        )


class LoggerMixin:
    """Mixin that provides automatic logger creation for client classes.

    This mixin automatically creates a logger based on the class's module name.
    The logger is available as `self._logger` or `cls._logger`.
    """

    def __init_subclass__(cls, **kwargs: Any) -> None:
        """Automatically create logger for each client subclass.

        Args:
            **kwargs: Additional keyword arguments passed to super().__init_subclass__.
        """
        super().__init_subclass__(**kwargs)
        module = cls.__module__
        cls._logger = logging.getLogger(module)  # type: ignore[attr-defined]
