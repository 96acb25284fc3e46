"""Provisioning and teardown of containerised test databases.

`ConnectionLifecycleManager.provision()` turns a request for "a working
database" into a `TestConnection` that is either fully ready or, on any
failure, already cleaned up:

1. Allocate a loopback port.
2. Generate and stage CA material when TLS is requested.
3. Create the container (pulling the image once if it is missing),
   register it, and start it.
4. Initiate the replica set when a name was given, with linear backoff.
5. Open a database client and probe readiness at a fixed interval.

Any exception raised during these steps (including `KeyboardInterrupt`)
marks the instance failed, tears down whatever was created, and is then
re-raised unchanged.

## Usage

```python
from mongotest import mongo_container

with mongo_container(replica_set_name="rs0") as conn:
    conn.mongo_client.test.items.insert_one({"x": 1})
```
"""

import contextlib
import logging
import threading
import time
from collections.abc import Callable, Iterator
from functools import lru_cache
from pathlib import Path
from typing import Any, TypeVar

import attrs
import pymongo
from pymongo.errors import PyMongoError

from mongotest.clients.container_driver import ContainerDriver
from mongotest.clients.mongo import MongoClientWrapper
from mongotest.config import MongoTestSettings, get_settings
from mongotest.core.exceptions import (
    ContainerCreateError,
    ImageNotFoundError,
    ReadinessTimeoutError,
    ReplicaSetInitError,
    ScriptExecError,
)
from mongotest.core.models import (
    MONGO_PORT,
    TLS_MOUNT_PATH,
    ContainerSpec,
    InstanceState,
    TestConnection,
    build_endpoint_uri,
)
from mongotest.core.reaper import Reaper, get_default_reaper
from mongotest.core.registry import ContainerRegistry, default_registry
from mongotest.foundation.ports import allocate_port
from mongotest.foundation.retry import RetryWithBackoff
from mongotest.foundation.tls import CAMaterial, generate_ca, stage_ca_material

logger = logging.getLogger(__name__)

T = TypeVar("T")

TLS_SHELL_ARGS = ("--tls", "--tlsCAFile", TLS_MOUNT_PATH, "--tlsAllowInvalidCertificates")


def replica_set_initiate_script(name: str) -> str:
    """Return the shell script initiating a single-member replica set."""
    return f"rs.initiate({{_id: '{name}', members: [{{_id: 0, host: 'localhost:{MONGO_PORT}'}}]}})"


@attrs.define(frozen=False, slots=True)
class ConnectionLifecycleManager:
    """Provisions `TestConnection` instances backed by database containers.

    Every collaborator is injectable so the provisioning algorithm can be
    exercised without a container engine.

    Attributes:
        settings: Runtime configuration.
        registry: Registry that new containers are added to.
        reaper: Reaper covering `registry`. When None and the registry is the
            process-wide one, the default reaper is started on first use
            (if `settings.reaper_enabled`).
        driver_factory: Builds the container driver from settings.
        client_factory: Builds the database client for an endpoint.
        port_allocator: Returns a free loopback port.
        ca_generator: Produces CA material for TLS instances.
        stager: Writes CA material into a private temp directory and returns
            the file path.
        sleep: Sleep function used between retry attempts.
    """

    settings: MongoTestSettings = attrs.field(factory=get_settings)
    registry: ContainerRegistry = attrs.field(factory=default_registry)
    reaper: Reaper | None = None
    driver_factory: Callable[[MongoTestSettings], ContainerDriver] = ContainerDriver.from_env
    client_factory: Callable[..., MongoClientWrapper] = MongoClientWrapper
    port_allocator: Callable[[], int] = allocate_port
    ca_generator: Callable[[], CAMaterial] = generate_ca
    stager: Callable[[CAMaterial], Path] = stage_ca_material
    sleep: Callable[[float], None] = time.sleep
    _driver: ContainerDriver | None = attrs.field(default=None, init=False, repr=False)
    _driver_lock: threading.Lock = attrs.field(factory=threading.Lock, init=False, repr=False)

    @property
    def driver(self) -> ContainerDriver:
        """Container driver shared by every instance of this manager.

        Raises:
            DaemonUnreachableError: If the daemon cannot be reached.
        """
        with self._driver_lock:
            if self._driver is None:
                self._driver = self.driver_factory(self.settings)
            return self._driver

    def close(self) -> None:
        """Close the container driver, if one was opened."""
        with self._driver_lock:
            driver, self._driver = self._driver, None
        if driver is not None:
            driver.close()

    def provision(
        self,
        spawn_container: bool = True,
        replica_set_name: str | None = None,
        tls_enabled: bool = False,
        version: str | None = None,
    ) -> TestConnection:
        """Provision a ready database instance.

        Args:
            spawn_container: When False, connect to `settings.local_uri`
                instead of starting a container.
            replica_set_name: Initiate a single-member replica set with this
                name.
            tls_enabled: Require TLS, using freshly generated CA material.
            version: Image tag; defaults to `settings.default_version`.

        Returns:
            A `TestConnection` in the `READY` state. The caller owns it and
            must tear it down (or use it as a context manager).

        Raises:
            ValueError: If `spawn_container` is False while a replica set or
                TLS is requested.
            MongoTestError: Any provisioning failure; nothing created by this
                call is left running.
        """
        if not spawn_container:
            if replica_set_name or tls_enabled:
                msg = "replica sets and TLS require spawn_container=True"
                raise ValueError(msg)
            return self._connect_local(version)

        driver = self.driver
        conn = TestConnection(
            version=version or self.settings.default_version,
            replica_set_name=replica_set_name,
            driver=driver,
            registry=self.registry,
            shell=self.settings.shell,
            shell_args=TLS_SHELL_ARGS if tls_enabled else (),
        )
        self._run_guarded(conn, lambda: self._provision_container(conn, driver, tls_enabled))
        logger.info(
            "Provisioned database container",
            extra={"container_id": conn.container_id, "port": conn.port, "uri": conn.endpoint_uri},
        )
        return conn

    def _connect_local(self, version: str | None) -> TestConnection:
        conn = TestConnection(version=version or self.settings.default_version, endpoint_uri=self.settings.local_uri)

        def connect() -> None:
            conn.client = self.client_factory(
                conn.endpoint_uri, server_selection_timeout_ms=self.settings.server_selection_timeout_ms
            )
            self._wait_until_ready(conn)
            conn.advance(InstanceState.READY)

        self._run_guarded(conn, connect)
        return conn

    def _run_guarded(self, conn: TestConnection, step: Callable[[], None]) -> None:
        try:
            step()
        except BaseException as e:
            logger.error(
                "Provisioning failed, tearing down",
                extra={"container_id": conn.container_id, "port": conn.port, "error_type": type(e).__name__},
            )
            conn.advance(InstanceState.FAILED)
            self._teardown_quietly(conn)
            raise

    def _teardown_quietly(self, conn: TestConnection) -> None:
        try:
            conn.teardown()
        except Exception as e:
            logger.error(
                "Could not tear down failed instance",
                extra={"container_id": conn.container_id, "port": conn.port, "error": str(e)},
            )

    def _provision_container(self, conn: TestConnection, driver: ContainerDriver, tls_enabled: bool) -> None:
        port = self.port_allocator()
        conn.bind_port(port)

        if tls_enabled:
            conn.tls_material = self.stager(self.ca_generator())

        spec = ContainerSpec(
            image=self.settings.image_name(conn.version),
            name=f"mongo-{port}",
            host_port=port,
            labels={self.settings.label_key: self.settings.label_value},
            tls_pem_path=str(conn.tls_material) if conn.tls_material else None,
            replica_set_name=conn.replica_set_name,
            platform=self.settings.platform,
        )
        container_id = self._create_container(driver, spec)
        conn.bind_container(container_id)
        self.registry.register(conn)
        self._ensure_reaper()

        driver.start(container_id)
        conn.advance(InstanceState.STARTED)

        if conn.replica_set_name:
            conn.advance(InstanceState.REPLICA_SET_PENDING)
            self._initiate_replica_set(conn)

        conn.endpoint_uri = build_endpoint_uri(port, conn.replica_set_name)
        conn.client = self.client_factory(
            conn.endpoint_uri,
            tls_ca_file=str(conn.tls_material) if conn.tls_material else None,
            server_selection_timeout_ms=self.settings.server_selection_timeout_ms,
        )
        self._wait_until_ready(conn)
        conn.advance(InstanceState.READY)

    def _create_container(self, driver: ContainerDriver, spec: ContainerSpec) -> str:
        """Create the container, pulling the image and retrying once when it is missing."""
        try:
            return driver.create_container(spec)
        except ImageNotFoundError:
            logger.info("Image not found locally, pulling", extra={"image": spec.image})

        driver.pull_image(spec.image, platform=spec.platform)
        try:
            return driver.create_container(spec)
        except ImageNotFoundError as e:
            msg = f"image {spec.image} still missing after pull"
            raise ContainerCreateError(msg, port=spec.host_port) from e

    def _ensure_reaper(self) -> None:
        if self.reaper is not None:
            self.reaper.start()
        elif self.settings.reaper_enabled and self.registry is default_registry():
            get_default_reaper(self.settings)

    def _initiate_replica_set(self, conn: TestConnection) -> None:
        name = conn.replica_set_name
        assert name is not None
        retry = RetryWithBackoff.linear(
            attempts=self.settings.rs_init_attempts,
            step=self.settings.rs_init_backoff,
            retry_exceptions=(ScriptExecError,),
            settle_after_final=True,
            logger=logger,
            sleep=self.sleep,
            retry_message="Replica set initiate failed, retrying",
        )
        try:
            output = retry.call(conn.run_script, replica_set_initiate_script(name))
        except ScriptExecError as e:
            msg = f"could not initiate replica set {name}: {e}"
            raise ReplicaSetInitError(
                msg, replica_set_name=name, output=e.output, container_id=conn.container_id, port=conn.port
            ) from e
        logger.debug("Replica set initiated", extra={"replica_set": name, "output": output})

    def _wait_until_ready(self, conn: TestConnection) -> None:
        client = conn.client
        assert client is not None
        attempts = self.settings.readiness_attempts
        probe = RetryWithBackoff.fixed_interval(
            attempts=attempts,
            interval=self.settings.readiness_interval,
            retry_exceptions=(PyMongoError,),
            logger=logger,
            sleep=self.sleep,
            retry_message="Database not answering ping yet",
            retry_log_level=logging.DEBUG,
        )
        try:
            probe.call(client.ping)
        except PyMongoError as e:
            msg = f"database at {conn.endpoint_uri} did not answer a ping after {attempts} attempts: {e}"
            raise ReadinessTimeoutError(
                msg, endpoint_uri=conn.endpoint_uri, attempts=attempts, container_id=conn.container_id, port=conn.port
            ) from e


@lru_cache(maxsize=1)
def get_default_manager() -> ConnectionLifecycleManager:
    """Return the process-wide manager (cached per process)."""
    return ConnectionLifecycleManager()


def provision(
    spawn_container: bool = True,
    replica_set_name: str | None = None,
    tls_enabled: bool = False,
    version: str | None = None,
    *,
    manager: ConnectionLifecycleManager | None = None,
) -> TestConnection:
    """Provision a ready instance with `manager` (default: process-wide manager)."""
    return (manager or get_default_manager()).provision(
        spawn_container=spawn_container,
        replica_set_name=replica_set_name,
        tls_enabled=tls_enabled,
        version=version,
    )


def new_test_connection(spawn_container: bool = True, **kwargs: Any) -> TestConnection:
    """Provision a standalone instance, or connect locally when `spawn_container` is False."""
    return provision(spawn_container=spawn_container, **kwargs)


def new_replica_set_container(replica_set_name: str, **kwargs: Any) -> TestConnection:
    """Provision a container running a single-member replica set."""
    return provision(replica_set_name=replica_set_name, **kwargs)


def new_tls_container(**kwargs: Any) -> TestConnection:
    """Provision a container that only accepts TLS connections."""
    return provision(tls_enabled=True, **kwargs)


@contextlib.contextmanager
def mongo_container(**kwargs: Any) -> Iterator[TestConnection]:
    """Yield a ready instance and tear it down on exit, whatever happened."""
    conn = provision(**kwargs)
    with conn:
        yield conn


def run_with_container(func: Callable[[TestConnection], T], **kwargs: Any) -> T:
    """Call `func` with a freshly provisioned instance and return its result."""
    with mongo_container(**kwargs) as conn:
        return func(conn)


def run_with_client(func: Callable[[pymongo.MongoClient], T], **kwargs: Any) -> T:
    """Call `func` with the client of a freshly provisioned instance."""
    with mongo_container(**kwargs) as conn:
        return func(conn.mongo_client)
