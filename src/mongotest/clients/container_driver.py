"""Container driver built on the docker SDK.

This module provides a thin wrapper over the docker engine API covering the
operations needed to run a database container as a test fixture: create,
start, remove, upload an archive, execute a command, and pull an image.

## Usage

```python
from mongotest.clients.container_driver import ContainerDriver

driver = ContainerDriver.from_env()
container_id = driver.create_container(spec)
driver.start(container_id)
print(driver.exec_command(container_id, ["mongosh", "--version"]))
driver.remove(container_id)
```

## Design

The wrapper:
- Uses the low-level `APIClient` (`client.api`) so container config and host
  config are built explicitly
- Translates docker errors into the mongotest exception hierarchy, keeping
  the container id and command in the error for diagnosis
- Routes every engine call through a `docker` circuit breaker; only
  transport failures count, so a stopped daemon fails fast with
  `DaemonUnreachableError`
"""

import contextlib
from collections.abc import Iterable, Iterator
from typing import Any

import attrs
import docker
import docker.errors
import pybreaker
import requests
from docker.types import Mount
from docker.utils import parse_repository_tag

from mongotest.config import MongoTestSettings, get_settings
from mongotest.core.exceptions import (
    ContainerCreateError,
    ContainerError,
    ContainerRemoveError,
    ContainerStartError,
    DaemonUnreachableError,
    ImageNotFoundError,
    ImagePullError,
    MongoTestError,
    ScriptExecError,
)
from mongotest.core.models import LOOPBACK_HOST, TLS_MOUNT_PATH, ContainerSpec
from mongotest.foundation.circuit_breaker import ExclusionRule, with_circuit_breaker

from .mixins import CircuitBreakerMixin, LoggerMixin

TRANSCRIPT_SEPARATOR = "--------------------"


def _daemon_answered(exc: BaseException) -> bool:
    """True for errors proving the daemon is reachable (they must not trip the breaker)."""
    if isinstance(exc, docker.errors.APIError):
        return True
    return isinstance(exc, MongoTestError) and not isinstance(exc, DaemonUnreachableError)


def iter_output_lines(chunks: Iterable[bytes]) -> Iterator[str]:
    """Split a stream of byte chunks into decoded lines.

    Carriage returns added by the pseudo-terminal are stripped. A trailing
    line without newline is still yielded.
    """
    pending = b""
    for chunk in chunks:
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw in complete:
            yield raw.decode("utf-8", errors="replace").rstrip("\r")
    if pending:
        yield pending.decode("utf-8", errors="replace").rstrip("\r")


def transcript_header(container_id: str, argv: list[str]) -> str:
    """Return the echoed command header of an exec transcript."""
    command = "".join(f"{arg} " for arg in argv)
    return f"Executing in container {container_id} - \n\t{command}\n{TRANSCRIPT_SEPARATOR}\n"


@attrs.define(frozen=False, slots=True)
class ContainerDriver(CircuitBreakerMixin, LoggerMixin):
    """Wrapper for the docker SDK with the calls a test database needs.

    Attributes:
        client: Connected `docker.DockerClient`.
        breaker_threshold: Daemon failures before the circuit opens.
        breaker_timeout: Seconds before the circuit half-opens.
    """

    client: docker.DockerClient
    breaker_threshold: int = 3
    breaker_timeout: int = 30
    _breaker: pybreaker.CircuitBreaker = attrs.field(init=False)

    def _circuit_breaker_config(self) -> tuple[str, int, int]:
        """Return circuit breaker configuration for the docker daemon.

        Returns:
            Tuple of (name, failure_threshold, recovery_timeout).
        """
        return ("docker", self.breaker_threshold, self.breaker_timeout)

    def _circuit_breaker_exclusions(self) -> Iterable[ExclusionRule]:
        return (_daemon_answered,)

    def __attrs_post_init__(self) -> None:
        """Initialize the circuit breaker."""
        self._init_circuit_breaker()

    @classmethod
    def from_env(cls, settings: MongoTestSettings | None = None) -> "ContainerDriver":
        """Connect to the daemon configured by the environment.

        Honours `DOCKER_HOST`, `DOCKER_TLS_VERIFY` and `DOCKER_CERT_PATH`.

        Args:
            settings: Settings providing breaker parameters. Defaults to
                `get_settings()`.

        Returns:
            Connected ContainerDriver.

        Raises:
            DaemonUnreachableError: If the daemon does not answer a ping.
        """
        settings = settings or get_settings()
        try:
            client = docker.from_env()
            client.ping()
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            cls._logger.error(  # type: ignore[attr-defined]
                "Could not connect to docker daemon - is the docker daemon running?",
                extra={"error": str(e)},
            )
            msg = f"could not connect to the docker daemon: {e}"
            raise DaemonUnreachableError(msg) from e
        return cls(
            client=client,
            breaker_threshold=settings.docker_breaker_threshold,
            breaker_timeout=settings.docker_breaker_timeout,
        )

    @contextlib.contextmanager
    def _daemon_call(self, operation: str) -> Iterator[None]:
        """Translate transport failures raised inside the block to DaemonUnreachableError."""
        try:
            yield
        except (MongoTestError, docker.errors.APIError):
            raise
        except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
            msg = f"could not reach the docker daemon during {operation}: {e}"
            raise DaemonUnreachableError(msg) from e

    def close(self) -> None:
        """Close the underlying docker client."""
        self.client.close()

    def build_create_kwargs(self, spec: ContainerSpec) -> dict[str, Any]:
        """Build the `create_container` payload for `spec`.

        The database port is published on the loopback interface only. When
        TLS is requested the staged PEM is bind-mounted read-only at
        `TLS_MOUNT_PATH`.
        """
        mounts: list[Mount] = []
        if spec.tls_pem_path:
            mounts.append(Mount(target=TLS_MOUNT_PATH, source=spec.tls_pem_path, type="bind", read_only=True))
        host_config = self.client.api.create_host_config(
            port_bindings={spec.port_name: (LOOPBACK_HOST, spec.host_port)},
            mounts=mounts or None,
        )
        kwargs: dict[str, Any] = {
            "image": spec.image,
            "command": spec.command(),
            "name": spec.name,
            "labels": dict(spec.labels),
            "ports": [spec.internal_port],
            "tty": True,
            "stdin_open": True,
            "host_config": host_config,
        }
        if spec.platform:
            kwargs["platform"] = spec.platform
        return kwargs

    @with_circuit_breaker("docker daemon", error_cls=DaemonUnreachableError)
    def create_container(self, spec: ContainerSpec) -> str:
        """Create (but do not start) a container for `spec`.

        Returns:
            The engine-assigned container id.

        Raises:
            ImageNotFoundError: If the image is not present locally.
            ContainerCreateError: For any other engine refusal.
            DaemonUnreachableError: If the daemon cannot be reached.
        """
        with self._daemon_call("container create"):
            try:
                response = self.client.api.create_container(**self.build_create_kwargs(spec))
            except docker.errors.ImageNotFound as e:
                msg = f"image {spec.image} not found locally"
                raise ImageNotFoundError(msg, image=spec.image, port=spec.host_port) from e
            except docker.errors.APIError as e:
                self._logger.error(  # type: ignore[attr-defined]
                    "Could not create the docker container",
                    extra={"image": spec.image, "port": spec.host_port, "error": str(e)},
                )
                msg = f"could not create container {spec.name} from {spec.image}: {e}"
                raise ContainerCreateError(msg, port=spec.host_port) from e
        container_id: str = response["Id"]
        return container_id

    @with_circuit_breaker("docker daemon", error_cls=DaemonUnreachableError)
    def pull_image(self, image: str, platform: str | None = None) -> None:
        """Pull `image`, consuming the progress stream until it ends.

        Raises:
            ImagePullError: If the engine rejects the pull or reports an
                error in the progress stream.
        """
        repository, tag = parse_repository_tag(image)
        self._logger.info("Starting mongo docker image pull", extra={"image": image})  # type: ignore[attr-defined]
        with self._daemon_call("image pull"):
            try:
                for event in self.client.api.pull(
                    repository, tag=tag or "latest", platform=platform, stream=True, decode=True
                ):
                    if isinstance(event, dict) and event.get("error"):
                        msg = f"could not pull {image}: {event['error']}"
                        raise ImagePullError(msg)
            except docker.errors.APIError as e:
                msg = f"could not pull {image}: {e}"
                raise ImagePullError(msg) from e
        self._logger.info("Done pulling mongo docker image", extra={"image": image})  # type: ignore[attr-defined]

    @with_circuit_breaker("docker daemon", error_cls=DaemonUnreachableError)
    def start(self, container_id: str) -> None:
        """Start a created container.

        Raises:
            ContainerStartError: If the engine refuses to start it (for
                example when the host port was taken in the meantime).
        """
        with self._daemon_call("container start"):
            try:
                self.client.api.start(container_id)
            except docker.errors.APIError as e:
                msg = f"could not start container {container_id}: {e}"
                raise ContainerStartError(msg, container_id=container_id) from e

    @with_circuit_breaker("docker daemon", error_cls=DaemonUnreachableError)
    def remove(self, container_id: str) -> None:
        """Force-remove a container and its anonymous volumes.

        A container that no longer exists is treated as removed.

        Raises:
            ContainerRemoveError: If the engine fails to remove it.
        """
        with self._daemon_call("container remove"):
            try:
                self.client.api.remove_container(container_id, v=True, force=True)
            except docker.errors.NotFound:
                self._logger.debug(  # type: ignore[attr-defined]
                    "Container already absent", extra={"container_id": container_id}
                )
                return
            except docker.errors.APIError as e:
                self._logger.error(  # type: ignore[attr-defined]
                    "Could not remove container", extra={"container_id": container_id, "error": str(e)}
                )
                msg = f"could not remove container {container_id}: {e}"
                raise ContainerRemoveError(msg, container_id=container_id) from e
        self._logger.info("Removed container", extra={"container_id": container_id})  # type: ignore[attr-defined]

    @with_circuit_breaker("docker daemon", error_cls=DaemonUnreachableError)
    def copy_archive(self, container_id: str, dest_directory: str, archive: bytes) -> None:
        """Extract a tar archive into `dest_directory` inside the container.

        Raises:
            ScriptExecError: If the upload is rejected.
        """
        with self._daemon_call("archive upload"):
            try:
                accepted = self.client.api.put_archive(container_id, dest_directory, archive)
            except docker.errors.APIError as e:
                msg = f"could not copy file from host to container {container_id}: {e}"
                raise ScriptExecError(msg, container_id=container_id) from e
        if not accepted:
            msg = f"could not copy file from host to container {container_id}"
            raise ScriptExecError(msg, container_id=container_id)

    @with_circuit_breaker("docker daemon", error_cls=DaemonUnreachableError)
    def exec_command(self, container_id: str, argv: list[str]) -> str:
        """Execute `argv` in the container and return the transcript.

        The exec session is attached to stdin, stdout and stderr through a
        pseudo-terminal. Output is read line by line into a transcript made
        of the echoed command, a separator, the output and a trailing
        separator. The transcript is a debugging aid; success is decided by
        the exit status only.

        Returns:
            The transcript, when the command exits zero.

        Raises:
            ScriptExecError: If the session cannot be created, attached or
                inspected, or the command exits non-zero. `output` on the
                error carries the transcript collected so far.
        """
        header = transcript_header(container_id, argv)
        api = self.client.api
        with self._daemon_call("exec"):
            try:
                exec_id = api.exec_create(
                    container_id, argv, stdout=True, stderr=True, stdin=True, tty=True, privileged=False
                )["Id"]
            except docker.errors.APIError as e:
                self._logger.error(  # type: ignore[attr-defined]
                    "Could not create execution context for provided command",
                    extra={"container_id": container_id, "cmd": argv, "error": str(e)},
                )
                msg = f"could not create execution context for container {container_id}: {e}"
                raise ScriptExecError(msg, container_id=container_id, command=argv, output=header) from e

            lines: list[str] = []
            try:
                for line in iter_output_lines(api.exec_start(exec_id, tty=True, stream=True)):
                    self._logger.debug(line, extra={"container_id": container_id})  # type: ignore[attr-defined]
                    lines.append(line)
            except (docker.errors.DockerException, requests.exceptions.RequestException, OSError) as e:
                partial = header + "".join(f"{line}\n" for line in lines)
                msg = f"could not read lines from container '{container_id}': {e}"
                raise ScriptExecError(msg, container_id=container_id, command=argv, output=partial) from e

            results = "".join(f"{line}\n" for line in lines)
            output = f"{header}{results}\n{TRANSCRIPT_SEPARATOR}\n"

            try:
                inspection = api.exec_inspect(exec_id)
            except docker.errors.APIError as e:
                msg = f"could not inspect command execution in container {container_id}: {e}"
                raise ScriptExecError(msg, container_id=container_id, command=argv, output=output) from e

        exit_code = inspection.get("ExitCode")
        if exit_code:
            self._logger.debug(  # type: ignore[attr-defined]
                "There was an error executing the provided command",
                extra={"container_id": container_id, "cmd": argv, "exit_code": exit_code},
            )
            msg = f"could not execute provided command in container {container_id}: \n{results}"
            raise ScriptExecError(msg, container_id=container_id, command=argv, output=output, exit_code=exit_code)
        return output

    @with_circuit_breaker("docker daemon", error_cls=DaemonUnreachableError)
    def list_labeled(self, label: str) -> list[str]:
        """Return ids of all containers (running or not) carrying `label`."""
        with self._daemon_call("container list"):
            try:
                containers = self.client.api.containers(all=True, filters={"label": label})
            except docker.errors.APIError as e:
                msg = f"could not list containers labelled {label}: {e}"
                raise ContainerError(msg) from e
        return [c["Id"] for c in containers]

    def prune_labeled(self, label: str) -> tuple[list[str], dict[str, ContainerRemoveError]]:
        """Remove every container carrying `label`.

        Returns:
            Tuple of (removed ids, {id: error} for containers that could not
            be removed).
        """
        removed: list[str] = []
        failed: dict[str, ContainerRemoveError] = {}
        for container_id in self.list_labeled(label):
            try:
                self.remove(container_id)
            except ContainerRemoveError as e:
                failed[container_id] = e
            else:
                removed.append(container_id)
        return removed, failed
