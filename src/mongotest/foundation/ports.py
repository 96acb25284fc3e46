"""Free TCP port allocation on the loopback interface.

The allocator binds a throwaway listener to port 0, reads back the port the
kernel assigned, and closes the listener before returning. The port is free
at the moment of the call only: another process may bind it between the
release here and the container engine publishing it. Callers running many
suites concurrently will occasionally see a container fail to start with a
port conflict; that failure is reported, not retried.
"""

import logging
import socket

from mongotest.foundation.exceptions import NoPortAvailableError

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "127.0.0.1"


def allocate_port(host: str = LOOPBACK_HOST) -> int:
    """Return a TCP port that is currently free on `host`.

    Args:
        host: Interface to probe. Defaults to the IPv4 loopback address,
            which is where container ports are published.

    Returns:
        The port number assigned by the kernel.

    Raises:
        NoPortAvailableError: If the probe listener could not be bound.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind((host, 0))
            port: int = probe.getsockname()[1]
    except OSError as e:
        logger.error("No ports were available to bind", extra={"host": host, "error": str(e)})
        msg = f"could not allocate a free port on {host}: {e}"
        raise NoPortAvailableError(msg) from e
    logger.debug("Allocated free port", extra={"host": host, "port": port})
    return port
