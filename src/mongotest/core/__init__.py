"""Core domain models and shared types for mongotest.

This package provides:
- Exception hierarchy for error handling
- `TestConnection` and its lifecycle states
- The container registry, reaper and lifecycle manager (import them from
  their modules: `mongotest.core.registry`, `mongotest.core.reaper`,
  `mongotest.core.lifecycle`)
"""

from .exceptions import MongoTestError
from .models import InstanceState, TestConnection

__all__ = [
    "InstanceState",
    "MongoTestError",
    "TestConnection",
]
