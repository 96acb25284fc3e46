"""Registry of live database containers.

The registry maps container ids to the `TestConnection` owning each
container. Provisioning registers an instance as soon as its container id
is known, and teardown unregisters it once removal was attempted, so the
reaper can always find every container this process created.

Each method is a single dict operation, atomic under the interpreter, so
the registry takes no lock. The reaper's listener thread can therefore use
it while a signal handler has interrupted the main thread anywhere.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from mongotest.core.models import TestConnection


class ContainerRegistry:
    """Thread-safe mapping of container id to `TestConnection`."""

    def __init__(self) -> None:
        self._entries: dict[str, "TestConnection"] = {}

    def register(self, conn: "TestConnection") -> None:
        """Add `conn` under its container id.

        Raises:
            ValueError: If `conn` has no container id.
        """
        container_id = conn.container_id
        if not container_id:
            msg = "cannot register an instance without a container id"
            raise ValueError(msg)
        self._entries[container_id] = conn

    def unregister(self, container_id: str) -> "TestConnection | None":
        """Remove and return the entry for `container_id`, if present."""
        return self._entries.pop(container_id, None)

    def get(self, container_id: str) -> "TestConnection | None":
        return self._entries.get(container_id)

    def items(self) -> list[tuple[str, "TestConnection"]]:
        """Return a point-in-time list of `(container_id, instance)` pairs."""
        return list(self._entries.copy().items())

    def snapshot(self) -> list["TestConnection"]:
        """Return a point-in-time list of registered instances.

        The list is a copy; it may be iterated while other threads register
        or unregister.
        """
        return list(self._entries.copy().values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, container_id: object) -> bool:
        return container_id in self._entries


_default_registry = ContainerRegistry()


def default_registry() -> ContainerRegistry:
    """Return the process-wide registry."""
    return _default_registry
