"""Exception classes for foundation utilities.

This module provides the root of the library's exception hierarchy and the
errors raised by foundation components. Container lifecycle errors live in
`mongotest.core.exceptions`, which re-exports everything defined here.
"""


class MongoTestError(Exception):
    """Base exception class for every error raised by mongotest."""


class UpstreamError(MongoTestError):
    """Exception raised when an upstream dependency service fails.

    This exception indicates that a required external service (the container
    engine daemon, or the database inside a container) is unavailable,
    returned an error, or failed to complete a request.
    """


class NoPortAvailableError(MongoTestError):
    """Raised when the operating system refuses to hand out an ephemeral port."""


class CryptoBackendError(MongoTestError):
    """Raised when key generation or certificate encoding fails.

    This is a fatal condition: a broken RNG or crypto backend means nothing
    generated afterwards can be trusted. The library never catches it.
    """
