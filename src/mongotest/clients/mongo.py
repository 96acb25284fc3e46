"""Database client wrapper used for readiness probing.

Only the connection boundary lives here: open a `pymongo.MongoClient`
against a provisioned instance, ping it, and close it. Query helpers are
left to the caller, who can reach the raw client through `client`.
"""

import attrs
import pymongo

from .mixins import LoggerMixin


@attrs.define(frozen=False, slots=True)
class MongoClientWrapper(LoggerMixin):
    """Wrapper around `pymongo.MongoClient` for a single-node test instance.

    The client always connects directly to the one node (`directConnection`),
    so a replica set whose config names `localhost:27017` is still reachable
    through the published loopback port.

    Attributes:
        uri: Endpoint URI, e.g. `mongodb://127.0.0.1:32768`.
        tls_ca_file: Path of the staged CA PEM; enables TLS when set.
        server_selection_timeout_ms: Server selection timeout per operation.
    """

    uri: str
    tls_ca_file: str | None = None
    server_selection_timeout_ms: int = 1000
    _client: pymongo.MongoClient = attrs.field(init=False)

    def __attrs_post_init__(self) -> None:
        """Create the pymongo client (no I/O until the first operation)."""
        options: dict[str, object] = {
            "serverSelectionTimeoutMS": self.server_selection_timeout_ms,
            "directConnection": True,
        }
        if self.tls_ca_file:
            options.update(tls=True, tlsCAFile=self.tls_ca_file, tlsAllowInvalidCertificates=True)
        object.__setattr__(self, "_client", pymongo.MongoClient(self.uri, **options))

    @property
    def client(self) -> pymongo.MongoClient:
        """Get the underlying pymongo client."""
        return self._client

    def ping(self) -> None:
        """Issue the `ping` admin command.

        Raises:
            pymongo.errors.PyMongoError: If the server does not answer.
        """
        self._client.admin.command("ping")

    def close(self) -> None:
        """Close all pooled connections."""
        self._logger.debug("Closing database client", extra={"uri": self.uri})  # type: ignore[attr-defined]
        self._client.close()
