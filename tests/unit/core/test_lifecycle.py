"""Unit tests for core.lifecycle module.

This file tests ConnectionLifecycleManager.provision() and the scoped
acquisition helpers against fake collaborators.

# Test Coverage

The tests cover:
  - Success path: state, endpoint, registry membership, container payload
  - Image handling: pull on missing image, single retry, pull failure
  - Failure cleanup: start failure, interrupt, teardown errors during cleanup
  - Replica set: linear backoff waits, exhaustion, shell arguments under TLS
  - Readiness: fixed interval, stop on first success, exhaustion
  - TLS: staged file lifetime and client options
  - Local mode: no container, argument validation
  - Helpers: mongo_container, run_with_container, run_with_client and the
    new_* wrappers

# Test Structure

Tests use pytest class-based organization. The container driver, database
client and sleep function are fakes; no daemon or database is needed.

# Running Tests

Run with: pytest tests/unit/core/test_lifecycle.py
"""

# pylint: disable=redefined-outer-name

import functools
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pymongo.errors import ConnectionFailure

from mongotest.clients.container_driver import ContainerDriver
from mongotest.clients.mongo import MongoClientWrapper
from mongotest.config import MongoTestSettings
from mongotest.core.exceptions import (
    ContainerCreateError,
    ContainerRemoveError,
    ContainerStartError,
    DaemonUnreachableError,
    ImageNotFoundError,
    ImagePullError,
    ReadinessTimeoutError,
    ReplicaSetInitError,
    ScriptExecError,
)
from mongotest.core.lifecycle import (
    TLS_SHELL_ARGS,
    ConnectionLifecycleManager,
    mongo_container,
    new_replica_set_container,
    new_test_connection,
    new_tls_container,
    replica_set_initiate_script,
    run_with_client,
    run_with_container,
)
from mongotest.core.models import InstanceState
from mongotest.core.reaper import Reaper
from mongotest.core.registry import ContainerRegistry
from mongotest.foundation.tls import CAMaterial, stage_ca_material

PORT = 40000


@pytest.fixture
def settings() -> MongoTestSettings:
    return MongoTestSettings(default_version="7.0", reaper_enabled=False)


@pytest.fixture
def registry() -> ContainerRegistry:
    return ContainerRegistry()


@pytest.fixture
def mock_driver() -> MagicMock:
    driver = MagicMock(spec=ContainerDriver)
    driver.create_container.return_value = "c1"
    driver.exec_command.return_value = "transcript"
    return driver


@pytest.fixture
def mock_client() -> MagicMock:
    client = MagicMock(spec=MongoClientWrapper)
    client.client = MagicMock(name="pymongo-client")
    return client


@pytest.fixture
def client_factory(mock_client: MagicMock) -> MagicMock:
    return MagicMock(return_value=mock_client)


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def manager(
    settings: MongoTestSettings,
    registry: ContainerRegistry,
    mock_driver: MagicMock,
    client_factory: MagicMock,
    sleeps: list[float],
    tmp_path: Path,
) -> ConnectionLifecycleManager:
    """A manager wired to fakes; sleeps are recorded, TLS files go to tmp_path."""
    material = MagicMock(spec=CAMaterial)
    material.bundle_pem.return_value = b"-----BEGIN CERTIFICATE-----\n"
    return ConnectionLifecycleManager(
        settings=settings,
        registry=registry,
        driver_factory=lambda _: mock_driver,
        client_factory=client_factory,
        port_allocator=lambda: PORT,
        ca_generator=lambda: material,
        stager=functools.partial(stage_ca_material, directory=tmp_path),
        sleep=sleeps.append,
    )


# =============================================================================
# Success Path Tests
# =============================================================================


class TestProvisionSuccess:
    """Test suite for a successful provision call."""

    def test_ready_instance(
        self, manager: ConnectionLifecycleManager, registry: ContainerRegistry, mock_driver: MagicMock
    ) -> None:
        """Test that provision returns a ready, registered instance.

        **Why this test is important:**
          - This is the contract every test fixture relies on
          - Registration is what lets the reaper find the container

        **What it tests:**
          - state is READY, container id and endpoint are set
          - The container is registered until teardown
          - Teardown removes it from the registry and the engine
        """
        conn = manager.provision()

        assert conn.state is InstanceState.READY
        assert conn.container_id == "c1"
        assert conn.port == PORT
        assert conn.endpoint_uri == f"mongodb://127.0.0.1:{PORT}"
        assert conn.version == "7.0"
        assert "c1" in registry
        mock_driver.start.assert_called_once_with("c1")

        conn.teardown()

        assert "c1" not in registry
        mock_driver.remove.assert_called_once_with("c1")

    def test_container_spec(self, manager: ConnectionLifecycleManager, mock_driver: MagicMock) -> None:
        manager.provision(version="6.0")

        spec = mock_driver.create_container.call_args[0][0]
        assert spec.image == "registry.hub.docker.com/library/mongo:6.0"
        assert spec.name == f"mongo-{PORT}"
        assert spec.host_port == PORT
        assert spec.labels == {"mongotest": "regression"}
        assert spec.tls_pem_path is None
        assert spec.replica_set_name is None

    def test_client_options(
        self, manager: ConnectionLifecycleManager, client_factory: MagicMock, mock_client: MagicMock
    ) -> None:
        conn = manager.provision()

        client_factory.assert_called_once_with(
            f"mongodb://127.0.0.1:{PORT}", tls_ca_file=None, server_selection_timeout_ms=1000
        )
        assert conn.client is mock_client
        assert conn.mongo_client is mock_client.client

    def test_driver_created_once(self, settings: MongoTestSettings, mock_driver: MagicMock) -> None:
        factory = MagicMock(return_value=mock_driver)
        manager = ConnectionLifecycleManager(settings=settings, registry=ContainerRegistry(), driver_factory=factory)

        assert manager.driver is manager.driver
        factory.assert_called_once_with(settings)

        manager.close()
        mock_driver.close.assert_called_once()

    def test_reaper_started(self, manager: ConnectionLifecycleManager) -> None:
        reaper = MagicMock(spec=Reaper)
        manager.reaper = reaper

        manager.provision()

        reaper.start.assert_called_once()


# =============================================================================
# Image Handling Tests
# =============================================================================


class TestImageHandling:
    """Test suite for pull-on-missing-image behaviour."""

    def test_missing_image_pulled_and_create_retried(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock
    ) -> None:
        mock_driver.create_container.side_effect = [ImageNotFoundError("missing", image="mongo:7.0"), "c1"]

        conn = manager.provision()

        assert conn.is_ready
        mock_driver.pull_image.assert_called_once_with("registry.hub.docker.com/library/mongo:7.0", platform=None)
        assert mock_driver.create_container.call_count == 2

    def test_still_missing_after_pull(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock, registry: ContainerRegistry
    ) -> None:
        """Test that creation is retried exactly once after a pull."""
        mock_driver.create_container.side_effect = ImageNotFoundError("missing", image="mongo:7.0")

        with pytest.raises(ContainerCreateError, match="still missing"):
            manager.provision()

        assert mock_driver.create_container.call_count == 2
        mock_driver.pull_image.assert_called_once()
        mock_driver.remove.assert_not_called()
        assert len(registry) == 0

    def test_pull_failure_propagates(self, manager: ConnectionLifecycleManager, mock_driver: MagicMock) -> None:
        mock_driver.create_container.side_effect = ImageNotFoundError("missing", image="mongo:7.0")
        mock_driver.pull_image.side_effect = ImagePullError("manifest unknown")

        with pytest.raises(ImagePullError):
            manager.provision()

        assert mock_driver.create_container.call_count == 1


# =============================================================================
# Failure Cleanup Tests
# =============================================================================


class TestFailureCleanup:
    """Test suite for teardown on provisioning failure."""

    def test_start_failure_removes_container(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock, registry: ContainerRegistry
    ) -> None:
        """Test that a container created by a failing call is removed.

        **Why this test is important:**
          - Callers never get an instance back, so they cannot clean up
          - Leaked containers hold ports and memory until someone prunes

        **What it tests:**
          - The original error reaches the caller
          - The created container is removed and unregistered
        """
        mock_driver.start.side_effect = ContainerStartError("port in use", container_id="c1")

        with pytest.raises(ContainerStartError):
            manager.provision()

        mock_driver.remove.assert_called_once_with("c1")
        assert len(registry) == 0

    def test_interrupt_cleans_up_and_reraises(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock, registry: ContainerRegistry
    ) -> None:
        mock_driver.start.side_effect = KeyboardInterrupt

        with pytest.raises(KeyboardInterrupt):
            manager.provision()

        mock_driver.remove.assert_called_once_with("c1")
        assert len(registry) == 0

    def test_cleanup_error_does_not_mask_original(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock
    ) -> None:
        mock_driver.start.side_effect = ContainerStartError("boom", container_id="c1")
        mock_driver.remove.side_effect = ContainerRemoveError("stuck", container_id="c1")

        with pytest.raises(ContainerStartError, match="boom"):
            manager.provision()

    def test_unreachable_daemon_creates_nothing(self, settings: MongoTestSettings) -> None:
        allocator = MagicMock(return_value=PORT)
        manager = ConnectionLifecycleManager(
            settings=settings,
            registry=ContainerRegistry(),
            driver_factory=MagicMock(side_effect=DaemonUnreachableError("daemon down")),
            port_allocator=allocator,
        )

        with pytest.raises(DaemonUnreachableError):
            manager.provision()

        allocator.assert_not_called()


# =============================================================================
# Replica Set Tests
# =============================================================================


class TestReplicaSet:
    """Test suite for replica-set initiation."""

    def test_script_and_endpoint(self, manager: ConnectionLifecycleManager, mock_driver: MagicMock) -> None:
        conn = manager.provision(replica_set_name="rs0")

        assert conn.endpoint_uri == f"mongodb://127.0.0.1:{PORT}/?replicaSet=rs0"
        assert mock_driver.create_container.call_args[0][0].replica_set_name == "rs0"
        argv = mock_driver.exec_command.call_args[0][1]
        assert argv[0] == "mongosh"
        assert argv[-1].startswith("/tmp/mongoScript-")

    def test_initiate_script_text(self) -> None:
        assert replica_set_initiate_script("rs0") == (
            "rs.initiate({_id: 'rs0', members: [{_id: 0, host: 'localhost:27017'}]})"
        )

    def test_succeeds_on_third_attempt(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock, sleeps: list[float]
    ) -> None:
        failure = ScriptExecError("not yet", container_id="c1", output="transcript", exit_code=1)
        mock_driver.exec_command.side_effect = [failure, failure, "transcript"]

        conn = manager.provision(replica_set_name="rs0")

        assert conn.is_ready
        assert sleeps == pytest.approx([0.2, 0.4])

    def test_exhaustion_waits_linearly_and_cleans_up(
        self,
        manager: ConnectionLifecycleManager,
        mock_driver: MagicMock,
        sleeps: list[float],
        registry: ContainerRegistry,
    ) -> None:
        """Test that three failed attempts wait 200, 400 and 600 ms before failing.

        **Why this test is important:**
          - mongod needs increasing time before it accepts rs.initiate
          - A failed bootstrap must not leave the container behind

        **What it tests:**
          - Exactly 3 attempts with waits 0.2, 0.4, 0.6
          - ReplicaSetInitError carries the last transcript
          - The container is removed and unregistered
        """
        mock_driver.exec_command.side_effect = ScriptExecError(
            "exit 1", container_id="c1", output="MongoServerError", exit_code=1
        )

        with pytest.raises(ReplicaSetInitError) as exc_info:
            manager.provision(replica_set_name="rs0")

        assert mock_driver.exec_command.call_count == 3
        assert sleeps == pytest.approx([0.2, 0.4, 0.6])
        assert exc_info.value.replica_set_name == "rs0"
        assert exc_info.value.output == "MongoServerError"
        mock_driver.remove.assert_called_once_with("c1")
        assert len(registry) == 0

    def test_tls_replica_set_uses_tls_shell(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock
    ) -> None:
        manager.provision(replica_set_name="rs0", tls_enabled=True)

        argv = mock_driver.exec_command.call_args[0][1]
        assert tuple(argv[1:-1]) == TLS_SHELL_ARGS


# =============================================================================
# Readiness Tests
# =============================================================================


class TestReadiness:
    """Test suite for readiness probing."""

    def test_ready_on_third_probe(
        self, manager: ConnectionLifecycleManager, mock_client: MagicMock, sleeps: list[float]
    ) -> None:
        """Test that success on probe 3 means exactly 3 pings and 2 sleeps.

        **Why this test is important:**
          - Probing must stop on first success to keep provisioning fast

        **What it tests:**
          - ping is called 3 times
          - Exactly two 200 ms sleeps happen
        """
        mock_client.ping.side_effect = [ConnectionFailure("refused"), ConnectionFailure("refused"), None]

        conn = manager.provision()

        assert conn.is_ready
        assert mock_client.ping.call_count == 3
        assert sleeps == [0.2, 0.2]

    def test_exhaustion_raises_and_cleans_up(
        self,
        manager: ConnectionLifecycleManager,
        mock_client: MagicMock,
        mock_driver: MagicMock,
        sleeps: list[float],
    ) -> None:
        mock_client.ping.side_effect = ConnectionFailure("refused")

        with pytest.raises(ReadinessTimeoutError) as exc_info:
            manager.provision()

        assert mock_client.ping.call_count == 5
        assert sleeps == [0.2] * 4
        assert exc_info.value.attempts == 5
        assert exc_info.value.endpoint_uri == f"mongodb://127.0.0.1:{PORT}"
        mock_client.close.assert_called_once()
        mock_driver.remove.assert_called_once_with("c1")


# =============================================================================
# TLS Tests
# =============================================================================


class TestTLS:
    """Test suite for TLS-enabled instances."""

    def test_tls_file_lifetime(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock, client_factory: MagicMock
    ) -> None:
        """Test that the staged CA exists while the instance lives and is gone after teardown.

        **Why this test is important:**
          - mongod reads the bind-mounted file on start
          - Leaving private keys in the temp directory is a leak

        **What it tests:**
          - tls_material is set and the file exists before teardown
          - The same path is mounted and used as the client's CA file
          - The file is deleted by teardown
        """
        conn = manager.provision(tls_enabled=True)
        pem = conn.tls_material

        assert pem is not None
        assert pem.exists()
        assert mock_driver.create_container.call_args[0][0].tls_pem_path == str(pem)
        assert client_factory.call_args[1]["tls_ca_file"] == str(pem)

        conn.teardown()

        assert not pem.exists()

    def test_tls_file_removed_on_failure(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock, tmp_path: Path
    ) -> None:
        mock_driver.start.side_effect = ContainerStartError("boom", container_id="c1")

        with pytest.raises(ContainerStartError):
            manager.provision(tls_enabled=True)

        assert list(tmp_path.iterdir()) == []


# =============================================================================
# Local Mode Tests
# =============================================================================


class TestLocalMode:
    """Test suite for spawn_container=False."""

    def test_connects_to_local_uri(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock, client_factory: MagicMock
    ) -> None:
        conn = manager.provision(spawn_container=False)

        assert conn.is_ready
        assert conn.container_id == ""
        assert conn.endpoint_uri == "mongodb://127.0.0.1:27017"
        client_factory.assert_called_once_with("mongodb://127.0.0.1:27017", server_selection_timeout_ms=1000)
        mock_driver.create_container.assert_not_called()

        conn.teardown()
        mock_driver.remove.assert_not_called()

    @pytest.mark.parametrize("kwargs", [{"replica_set_name": "rs0"}, {"tls_enabled": True}])
    def test_rejects_container_only_options(self, manager: ConnectionLifecycleManager, kwargs: dict) -> None:
        with pytest.raises(ValueError, match="spawn_container=True"):
            manager.provision(spawn_container=False, **kwargs)

    def test_unreachable_local_database(
        self, manager: ConnectionLifecycleManager, mock_client: MagicMock
    ) -> None:
        mock_client.ping.side_effect = ConnectionFailure("refused")

        with pytest.raises(ReadinessTimeoutError):
            manager.provision(spawn_container=False)

        mock_client.close.assert_called_once()


# =============================================================================
# Scoped Helper Tests
# =============================================================================


class TestScopedHelpers:
    """Test suite for the module-level acquisition helpers."""

    def test_mongo_container_tears_down_on_error(
        self, manager: ConnectionLifecycleManager, mock_driver: MagicMock, registry: ContainerRegistry
    ) -> None:
        with pytest.raises(RuntimeError, match="test body failed"):
            with mongo_container(manager=manager) as conn:
                assert conn.is_ready
                raise RuntimeError("test body failed")

        mock_driver.remove.assert_called_once_with("c1")
        assert len(registry) == 0

    def test_run_with_container(self, manager: ConnectionLifecycleManager, mock_driver: MagicMock) -> None:
        result = run_with_container(lambda conn: conn.container_id, manager=manager)

        assert result == "c1"
        mock_driver.remove.assert_called_once_with("c1")

    def test_run_with_client(
        self, manager: ConnectionLifecycleManager, mock_client: MagicMock, mock_driver: MagicMock
    ) -> None:
        result = run_with_client(lambda client: client, manager=manager)

        assert result is mock_client.client
        mock_driver.remove.assert_called_once_with("c1")

    def test_new_wrappers_pass_options(self, manager: ConnectionLifecycleManager, mock_driver: MagicMock) -> None:
        plain = new_test_connection(manager=manager)
        rs = new_replica_set_container("rs1", manager=manager)
        tls = new_tls_container(manager=manager)

        specs = [c[0][0] for c in mock_driver.create_container.call_args_list]
        assert [s.replica_set_name for s in specs] == [None, "rs1", None]
        assert [s.tls_pem_path is not None for s in specs] == [False, False, True]
        for conn in (plain, rs, tls):
            conn.teardown()
