"""Shared fixtures for client tests.

This module provides common fixtures used across the client test modules,
including a mocked docker SDK client and a driver built on top of it.
"""

# pylint: disable=redefined-outer-name
# Pytest fixtures intentionally redefine fixture names - this is expected behavior

from unittest.mock import MagicMock

import docker
import pytest

from mongotest.clients.container_driver import ContainerDriver
from mongotest.core.models import ContainerSpec


@pytest.fixture
def mock_api() -> MagicMock:
    """Create a mock low-level docker APIClient.

    Returns:
        MagicMock: APIClient mock whose `create_host_config` returns its kwargs.
    """
    api = MagicMock(spec=docker.APIClient)
    api.create_host_config.side_effect = lambda **kwargs: {"host_config": kwargs}
    return api


@pytest.fixture
def mock_docker_client(mock_api: MagicMock) -> MagicMock:
    """Create a mock docker.DockerClient exposing `mock_api` as `.api`."""
    client = MagicMock(spec=docker.DockerClient)
    client.api = mock_api
    return client


@pytest.fixture
def driver(mock_docker_client: MagicMock) -> ContainerDriver:
    """Create a ContainerDriver with a real circuit breaker over the mocked client."""
    return ContainerDriver(client=mock_docker_client, breaker_threshold=3, breaker_timeout=30)


@pytest.fixture
def spec() -> ContainerSpec:
    """A plain container spec without TLS or replica set."""
    return ContainerSpec(
        image="registry.hub.docker.com/library/mongo:7.0",
        name="mongo-32768",
        host_port=32768,
        labels={"mongotest": "regression"},
    )
