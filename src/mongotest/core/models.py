"""Domain models for provisioned database instances.

This module defines the lifecycle state of a test database, the container
launch description handed to the container driver, and `TestConnection`,
the handle returned to callers.

All classes use `attrs` for concise, correct class definitions.
"""

import enum
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar

import attrs

from mongotest.core.exceptions import ContainerAlreadyExistsError
from mongotest.core.scripts import run_script
from mongotest.foundation.tls import discard_staged_material

if TYPE_CHECKING:
    import pymongo

    from mongotest.clients.container_driver import ContainerDriver
    from mongotest.clients.mongo import MongoClientWrapper
    from mongotest.core.registry import ContainerRegistry

logger = logging.getLogger(__name__)

MONGO_PORT = 27017
TLS_MOUNT_PATH = "/etc/ssl/mongodb.pem"
LOOPBACK_HOST = "127.0.0.1"


class InstanceState(enum.Enum):
    """Lifecycle state of a `TestConnection`.

    States only move forward in declaration order, except `FAILED`, which is
    reachable from any state before `REMOVED`, and `REMOVED`, which teardown
    may reach from anywhere.
    """

    UNINITIALIZED = 0
    PORT_BOUND = 1
    CONTAINER_CREATED = 2
    STARTED = 3
    REPLICA_SET_PENDING = 4
    READY = 5
    FAILED = 6
    REMOVED = 7


@attrs.define(frozen=True, slots=True)
class ContainerSpec:
    """Everything the container driver needs to create a database container.

    Attributes:
        image: Full image reference including tag.
        name: Container name.
        host_port: Loopback port the database port is published on.
        labels: Labels applied to the container.
        tls_pem_path: Host path of the staged CA PEM, when TLS is requested.
        replica_set_name: Replica-set name passed to mongod, if any.
        platform: Optional image platform (e.g. `linux/amd64`).
        internal_port: Database port inside the container.
    """

    image: str
    name: str
    host_port: int
    labels: dict[str, str] = attrs.field(factory=dict)
    tls_pem_path: str | None = None
    replica_set_name: str | None = None
    platform: str | None = None
    internal_port: int = MONGO_PORT

    @property
    def port_name(self) -> str:
        """Internal port in `<port>/tcp` form."""
        return f"{self.internal_port}/tcp"

    def command(self) -> list[str]:
        """Return the mongod arguments for this spec."""
        args: list[str] = []
        if self.tls_pem_path:
            args += ["--tlsMode", "requireTLS", "--tlsCertificateKeyFile", TLS_MOUNT_PATH]
        if self.replica_set_name:
            args += ["--replSet", self.replica_set_name]
        return args


def build_endpoint_uri(port: int, replica_set_name: str | None = None) -> str:
    """Return `mongodb://127.0.0.1:<port>`, with a replicaSet query when named."""
    uri = f"mongodb://{LOOPBACK_HOST}:{port}"
    if replica_set_name:
        uri += f"/?replicaSet={replica_set_name}"
    return uri


@attrs.define(frozen=False, slots=True, eq=False)
class TestConnection:
    """A provisioned (or partially provisioned) database instance.

    Each `TestConnection` corresponds to at most one container, published on
    its own loopback port. Use it as a context manager, or call `teardown()`
    when done; teardown is idempotent.

    Attributes:
        version: Requested image version.
        container_id: Engine id of the container, empty when none exists.
        port: Host port bound to the instance.
        endpoint_uri: Connection string for the database.
        replica_set_name: Replica-set name, if one was requested.
        tls_material: Staged CA PEM file, present only for TLS instances.
        state: Current lifecycle state.
        client: Driver-level client, once connected.
    """

    __test__: ClassVar[bool] = False

    version: str = "latest"
    container_id: str = ""
    port: int | None = None
    endpoint_uri: str = ""
    replica_set_name: str | None = None
    tls_material: Path | None = None
    state: InstanceState = InstanceState.UNINITIALIZED
    client: "MongoClientWrapper | None" = None
    _driver: "ContainerDriver | None" = attrs.field(default=None, repr=False)
    _registry: "ContainerRegistry | None" = attrs.field(default=None, repr=False)
    _shell: str = attrs.field(default="mongosh", repr=False)
    _shell_args: tuple[str, ...] = attrs.field(default=(), repr=False)
    _lock: threading.RLock = attrs.field(factory=threading.RLock, init=False, repr=False)

    def __enter__(self) -> "TestConnection":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.teardown()

    @property
    def is_ready(self) -> bool:
        return self.state is InstanceState.READY

    @property
    def mongo_client(self) -> "pymongo.MongoClient":
        """The underlying `pymongo.MongoClient`.

        Raises:
            RuntimeError: If the instance has no open client.
        """
        if self.client is None:
            msg = "TestConnection has no open client"
            raise RuntimeError(msg)
        return self.client.client

    def advance(self, new_state: InstanceState) -> None:
        """Move to `new_state`, enforcing forward-only transitions.

        Raises:
            RuntimeError: On a backward transition or any transition out of
                `REMOVED`.
        """
        with self._lock:
            current = self.state
            if current is InstanceState.REMOVED:
                if new_state is InstanceState.REMOVED:
                    return
                msg = f"cannot move a removed instance to {new_state.name}"
                raise RuntimeError(msg)
            if new_state in (InstanceState.FAILED, InstanceState.REMOVED):
                self.state = new_state
                return
            if current is InstanceState.FAILED or new_state.value <= current.value:
                msg = f"invalid state transition {current.name} -> {new_state.name}"
                raise RuntimeError(msg)
            self.state = new_state

    def bind_port(self, port: int) -> None:
        """Assign the host port; a port can be assigned only once."""
        with self._lock:
            if self.port is not None:
                msg = f"port already assigned ({self.port})"
                raise RuntimeError(msg)
            self.port = port
            self.advance(InstanceState.PORT_BOUND)

    def bind_container(self, container_id: str) -> None:
        """Record the engine id of the container this instance owns.

        Raises:
            ContainerAlreadyExistsError: If a container id is already held.
        """
        with self._lock:
            if self.container_id:
                msg = f"instance already owns container {self.container_id}"
                raise ContainerAlreadyExistsError(msg, container_id=self.container_id, port=self.port)
            self.container_id = container_id
            self.advance(InstanceState.CONTAINER_CREATED)

    def attach_registry(self, registry: "ContainerRegistry") -> None:
        self._registry = registry

    def exec_command(self, argv: list[str]) -> str:
        """Run `argv` inside the container and return the exec transcript.

        Raises:
            ScriptExecError: If the command exits non-zero or cannot run.
            RuntimeError: If the instance has no container.
        """
        driver, container_id = self._require_container()
        return driver.exec_command(container_id, argv)

    def run_script(self, script: str) -> str:
        """Run a database shell script inside the container.

        Args:
            script: Script text; may span multiple lines.

        Returns:
            The exec transcript.

        Raises:
            ScriptExecError: If the script exits non-zero or cannot run.
        """
        driver, container_id = self._require_container()
        return run_script(driver, container_id, script, shell=self._shell, shell_args=self._shell_args)

    def _require_container(self) -> "tuple[ContainerDriver, str]":
        container_id = self.container_id
        if self._driver is None or not container_id:
            msg = "TestConnection has no running container"
            raise RuntimeError(msg)
        return self._driver, container_id

    def _discard_tls_material(self, path: Path | None) -> None:
        if path is None:
            return
        try:
            discard_staged_material(path)
        except OSError as e:
            logger.error(
                "Could not delete generated CA PEM temporary file - still tearing down the container",
                extra={"path": str(path), "error": str(e)},
            )

    def _close_client(self, client: "MongoClientWrapper | None") -> None:
        if client is None:
            return
        try:
            client.close()
        except Exception as e:
            logger.warning("Could not close database client", extra={"error": str(e)})

    def _claim(self) -> "tuple[Path | None, MongoClientWrapper | None, str]":
        # Caller holds self._lock. Nothing here blocks or touches the registry.
        tls_material, self.tls_material = self.tls_material, None
        client, self.client = self.client, None
        container_id, self.container_id = self.container_id, ""
        self.advance(InstanceState.REMOVED)
        return tls_material, client, container_id

    def _remove_container(self, container_id: str) -> None:
        try:
            if self._driver is not None:
                self._driver.remove(container_id)
                logger.debug("Removed container", extra={"container_id": container_id})
        finally:
            if self._registry is not None:
                self._registry.unregister(container_id)

    def teardown(self) -> None:
        """Release everything this instance owns.

        The instance lock is held only while resources are claimed; the
        staged TLS material is deleted, the client closed and the container
        force-removed afterwards. The registry entry is dropped once removal
        has been attempted, so the reaper still sees a container whose
        removal is in flight. A second call is a no-op.

        Raises:
            ContainerRemoveError: If the engine failed to remove the container.
                The instance is still considered removed.
        """
        with self._lock:
            tls_material, client, container_id = self._claim()
        self._discard_tls_material(tls_material)
        self._close_client(client)
        if container_id:
            self._remove_container(container_id)

    def reap(self, container_id: str) -> None:
        """Tear down on behalf of the reaper without waiting on this instance.

        If another thread is mid-teardown (or the signalled thread was
        interrupted while holding the instance lock), the lock is not
        waited for; `container_id` is force-removed regardless, which the
        engine treats as idempotent.

        Args:
            container_id: Id the instance was registered under.

        Raises:
            ContainerRemoveError: If the engine failed to remove the container.
        """
        if self._lock.acquire(blocking=False):
            try:
                tls_material, client, _ = self._claim()
            finally:
                self._lock.release()
            self._discard_tls_material(tls_material)
            self._close_client(client)
        self._remove_container(container_id)
