"""Shared fixtures for integration tests.

These tests start real database containers through the local docker daemon.
They are skipped when no daemon is reachable, so the unit suite stays
runnable on machines without docker.

## Container Scoping

Every test provisions its own container through an isolated registry and
tears it down itself; nothing is shared between tests.

## Orphan Container Cleanup

Containers carry the `mongotest=regression` label. If a run is killed
before teardown, remove leftovers with:

    mongotest prune
"""

# pylint: disable=redefined-outer-name

import logging
from collections.abc import Iterator

import docker
import pytest
import requests

from mongotest.config import MongoTestSettings, get_settings
from mongotest.core.lifecycle import ConnectionLifecycleManager
from mongotest.core.registry import ContainerRegistry

# Configure logging for integration tests
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

# Reduce noise from third-party libraries
logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("docker").setLevel(logging.WARNING)


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        if "tests/integration" in str(item.path).replace("\\", "/"):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def docker_client() -> Iterator[docker.DockerClient]:
    """Connect to the local daemon or skip the integration suite."""
    try:
        client = docker.from_env()
        client.ping()
    except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
        pytest.skip(f"docker daemon not reachable: {e}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def settings() -> MongoTestSettings:
    return get_settings()


@pytest.fixture
def registry() -> ContainerRegistry:
    return ContainerRegistry()


@pytest.fixture
def manager(
    docker_client: docker.DockerClient, settings: MongoTestSettings, registry: ContainerRegistry
) -> Iterator[ConnectionLifecycleManager]:
    """A manager over an isolated registry, swept after each test."""
    instance = ConnectionLifecycleManager(settings=settings, registry=registry)
    yield instance
    for conn in registry.snapshot():
        conn.teardown()
    instance.close()
