"""Exception hierarchy for container lifecycle operations.

All exceptions inherit from `MongoTestError`:

- `DaemonUnreachableError`: The container engine daemon cannot be reached
- `NoPortAvailableError`: No free host port could be allocated
- `ContainerAlreadyExistsError`: An instance already owns a container
- `ImageNotFoundError`: Create reported a missing image (recovered by pulling)
- `ImagePullError`: Pulling the image failed
- `ContainerCreateError` / `ContainerStartError` / `ContainerRemoveError`
- `ScriptExecError`: A command in the container failed or could not run
- `ReplicaSetInitError`: Replica-set bootstrap failed after all attempts
- `ReadinessTimeoutError`: The database never answered a ping
- `CryptoBackendError`: CA material could not be generated (fatal)

## Usage

```python
from mongotest.core.exceptions import MongoTestError, ReadinessTimeoutError

try:
    conn = provision()
except ReadinessTimeoutError as e:
    print(f"container {e.container_id} never became ready")
```
"""

# Re-exported so callers can import every error from one place
from mongotest.foundation.exceptions import (  # noqa: F401
    CryptoBackendError,
    MongoTestError,
    NoPortAvailableError,
    UpstreamError,
)


class ContainerError(MongoTestError):
    """Base class for errors tied to a specific container.

    Attributes:
        container_id: Engine id of the container, empty if none existed yet.
        port: Host port bound to the instance, if any.
    """

    def __init__(self, message: str, *, container_id: str = "", port: int | None = None) -> None:
        super().__init__(message)
        self.container_id = container_id
        self.port = port


class DaemonUnreachableError(UpstreamError):
    """Raised when the container engine daemon cannot be reached.

    This is the most common startup failure: the daemon is not running, or
    `DOCKER_HOST` points somewhere else.
    """


class ContainerAlreadyExistsError(ContainerError):
    """Raised when an instance that already owns a container tries to create another."""


class ImageNotFoundError(ContainerError):
    """Raised by container creation when the image is not present locally.

    Attributes:
        image: The missing image reference.
    """

    def __init__(self, message: str, *, image: str, container_id: str = "", port: int | None = None) -> None:
        super().__init__(message, container_id=container_id, port=port)
        self.image = image


class ImagePullError(ContainerError):
    """Raised when pulling the database image fails."""


class ContainerCreateError(ContainerError):
    """Raised when the engine refuses to create the container."""


class ContainerStartError(ContainerError):
    """Raised when a created container cannot be started."""


class ContainerRemoveError(ContainerError):
    """Raised when the engine fails to remove a container."""


class ScriptExecError(ContainerError):
    """Raised when a command executed in a container fails.

    Attributes:
        command: The argv that was executed.
        output: Full exec transcript collected before the failure.
        exit_code: Exit status of the command, None on transport failure.
    """

    def __init__(
        self,
        message: str,
        *,
        container_id: str = "",
        command: list[str] | None = None,
        output: str = "",
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message, container_id=container_id)
        self.command = list(command or [])
        self.output = output
        self.exit_code = exit_code


class ReplicaSetInitError(ContainerError):
    """Raised when the replica-set initiate script never succeeds.

    Attributes:
        replica_set_name: Requested replica-set name.
        output: Transcript of the last attempt.
    """

    def __init__(
        self,
        message: str,
        *,
        replica_set_name: str,
        output: str = "",
        container_id: str = "",
        port: int | None = None,
    ) -> None:
        super().__init__(message, container_id=container_id, port=port)
        self.replica_set_name = replica_set_name
        self.output = output


class ReadinessTimeoutError(ContainerError):
    """Raised when the database does not answer a ping within the probe window.

    Attributes:
        endpoint_uri: Endpoint that was probed.
        attempts: Number of probes performed.
    """

    def __init__(
        self,
        message: str,
        *,
        endpoint_uri: str,
        attempts: int,
        container_id: str = "",
        port: int | None = None,
    ) -> None:
        super().__init__(message, container_id=container_id, port=port)
        self.endpoint_uri = endpoint_uri
        self.attempts = attempts
