"""Configuration management for mongotest.

This module provides the configuration used when provisioning database
containers. All settings are loaded from environment variables with
defaults that work on a developer machine with a local docker daemon.

## Configuration Sources

Configuration is read from environment variables. The `get_settings()`
function uses `@lru_cache` so settings are loaded once per process; call
`get_settings.cache_clear()` after changing the environment in tests.

## Environment Variables

**Image**
- `MONGOTEST_IMAGE_REPOSITORY`: Image repository
  (default: `registry.hub.docker.com/library/mongo`)
- `MONGOTEST_MONGO_VERSION`: Default image tag (default: `latest`)
- `MONGOTEST_PLATFORM`: Optional platform for create/pull, e.g. `linux/amd64`
- `MONGOTEST_SHELL`: Database shell binary inside the image
  (default: `mongosh`)
- `MONGOTEST_CONTAINER_LABEL`: `key=value` label set on every container
  (default: `mongotest=regression`)

**Endpoints**
- `MONGOTEST_LOCAL_URI`: Endpoint used when no container is spawned
  (default: `mongodb://127.0.0.1:27017`)
- `MONGOTEST_SERVER_SELECTION_TIMEOUT_MS`: Driver server selection timeout
  per readiness probe (default: `1000`)

**Retries**
- `MONGOTEST_READINESS_ATTEMPTS`: Readiness probes (default: `5`)
- `MONGOTEST_READINESS_INTERVAL`: Seconds between probes (default: `0.2`)
- `MONGOTEST_RS_INIT_ATTEMPTS`: Replica-set initiate attempts (default: `3`)
- `MONGOTEST_RS_INIT_BACKOFF`: Linear backoff step in seconds
  (default: `0.2`)

**Daemon circuit breaker**
- `MONGOTEST_DOCKER_BREAKER_THRESHOLD`: Failures before the circuit opens
  (default: `3`)
- `MONGOTEST_DOCKER_BREAKER_TIMEOUT`: Recovery timeout in seconds
  (default: `30`)

**Reaper**
- `MONGOTEST_REAPER_ENABLED`: Start the process reaper (default: `true`)
- `MONGOTEST_REAPER_TIMEOUT`: Seconds a signal handler waits for the sweep
  (default: `30`)

**Logging**
- `MONGOTEST_LOG_LEVEL`: Level used by `configure_logging()`
  (default: `INFO`)

The docker client itself honours the standard `DOCKER_HOST`,
`DOCKER_TLS_VERIFY` and `DOCKER_CERT_PATH` variables.
"""

import os
from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import SettingsConfigDict

_TRUE_VALUES = ("true", "1", "yes", "on")
_FALSE_VALUES = ("false", "0", "no", "off")


def _env_bool(name: str, default: bool) -> bool:
    """Parse a boolean environment variable.

    Raises:
        ValueError: If the value is not a recognised boolean string.
    """
    value = os.getenv(name)
    if value is None or value == "":
        return default
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    msg = f"Invalid boolean value for {name}: {value}"
    raise ValueError(msg)


class MongoTestSettings(BaseModel):
    """Immutable runtime configuration for provisioning test databases.

    Attributes:
        image_repository: Image repository, without tag.
        default_version: Image tag used when the caller does not pick one.
        platform: Optional platform passed to create and pull.
        shell: Database shell binary used to run scripts in the container.
        container_label: `key=value` label applied to every container.
        local_uri: Endpoint used when no container is spawned.
        server_selection_timeout_ms: Driver timeout for each readiness probe.
        readiness_attempts: Maximum readiness probes.
        readiness_interval: Seconds between readiness probes.
        rs_init_attempts: Maximum replica-set initiate attempts.
        rs_init_backoff: Linear backoff step for replica-set initiate.
        docker_breaker_threshold: Daemon failures before the circuit opens.
        docker_breaker_timeout: Seconds before the circuit half-opens.
        reaper_enabled: Whether provisioning starts the process reaper.
        reaper_timeout: Seconds a signal handler waits for the sweep.
        log_level: Level used by `configure_logging()`.
    """

    image_repository: str = "registry.hub.docker.com/library/mongo"
    default_version: str = "latest"
    platform: str | None = None
    shell: str = "mongosh"
    container_label: str = "mongotest=regression"
    local_uri: str = "mongodb://127.0.0.1:27017"
    server_selection_timeout_ms: int = Field(default=1000, gt=0)
    readiness_attempts: int = Field(default=5, ge=1)
    readiness_interval: float = Field(default=0.2, ge=0)
    rs_init_attempts: int = Field(default=3, ge=1)
    rs_init_backoff: float = Field(default=0.2, ge=0)
    docker_breaker_threshold: int = Field(default=3, ge=1)
    docker_breaker_timeout: int = Field(default=30, ge=0)
    reaper_enabled: bool = True
    reaper_timeout: float = Field(default=30.0, gt=0)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(frozen=True)

    @property
    def label_key(self) -> str:
        """Key part of `container_label`."""
        return self.container_label.partition("=")[0]

    @property
    def label_value(self) -> str:
        """Value part of `container_label`."""
        return self.container_label.partition("=")[2]

    def image_name(self, version: str | None = None) -> str:
        """Return `<repository>:<version>`, defaulting to `default_version`."""
        return f"{self.image_repository}:{version or self.default_version}"

    @classmethod
    def from_env(cls) -> "MongoTestSettings":
        """Create settings from environment variables.

        Returns:
            Configured MongoTestSettings instance.

        Raises:
            ValueError: If a variable holds an invalid value.
        """
        label = os.getenv("MONGOTEST_CONTAINER_LABEL", "mongotest=regression")
        if "=" not in label or not label.partition("=")[0]:
            msg = f"MONGOTEST_CONTAINER_LABEL must look like key=value, got {label!r}"
            raise ValueError(msg)

        return cls(
            image_repository=os.getenv("MONGOTEST_IMAGE_REPOSITORY", "registry.hub.docker.com/library/mongo"),
            default_version=os.getenv("MONGOTEST_MONGO_VERSION") or "latest",
            platform=os.getenv("MONGOTEST_PLATFORM") or None,
            shell=os.getenv("MONGOTEST_SHELL") or "mongosh",
            container_label=label,
            local_uri=os.getenv("MONGOTEST_LOCAL_URI") or "mongodb://127.0.0.1:27017",
            server_selection_timeout_ms=int(os.getenv("MONGOTEST_SERVER_SELECTION_TIMEOUT_MS", "1000")),
            readiness_attempts=int(os.getenv("MONGOTEST_READINESS_ATTEMPTS", "5")),
            readiness_interval=float(os.getenv("MONGOTEST_READINESS_INTERVAL", "0.2")),
            rs_init_attempts=int(os.getenv("MONGOTEST_RS_INIT_ATTEMPTS", "3")),
            rs_init_backoff=float(os.getenv("MONGOTEST_RS_INIT_BACKOFF", "0.2")),
            docker_breaker_threshold=int(os.getenv("MONGOTEST_DOCKER_BREAKER_THRESHOLD", "3")),
            docker_breaker_timeout=int(os.getenv("MONGOTEST_DOCKER_BREAKER_TIMEOUT", "30")),
            reaper_enabled=_env_bool("MONGOTEST_REAPER_ENABLED", True),
            reaper_timeout=float(os.getenv("MONGOTEST_REAPER_TIMEOUT", "30")),
            log_level=os.getenv("MONGOTEST_LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> MongoTestSettings:
    """Load and return settings (cached per process).

    Returns:
        A frozen `MongoTestSettings` instance.
    """
    return MongoTestSettings.from_env()
