"""Signal-triggered cleanup of registered containers.

The reaper is a backstop for test runs interrupted before their own
teardown ran. One background listener thread per process waits for a
shutdown event; termination signals (and an explicit `trigger()`) set the
event, and the listener then tears down every instance in the registry.

The sweep never waits on an instance's lock: the signal handler runs on the
main thread and blocks until the sweep is done, so an instance the main
thread was tearing down when the signal arrived is force-removed by id.

A forceful kill (`SIGKILL`) bypasses all of this. Containers left behind
that way carry the identifying label and can be removed with
`mongotest prune`.

## Usage

```python
from mongotest.core.reaper import Reaper
from mongotest.core.registry import ContainerRegistry

registry = ContainerRegistry()
reaper = Reaper(registry, install_signal_handlers=False)
reaper.start()
...
failed = reaper.sweep()
reaper.close()
```
"""

import atexit
import logging
import os
import signal
import threading
from types import FrameType
from typing import Any

from mongotest.config import MongoTestSettings, get_settings
from mongotest.core.registry import ContainerRegistry, default_registry

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS: tuple[signal.Signals, ...] = tuple(
    getattr(signal, name) for name in ("SIGTERM", "SIGINT", "SIGQUIT", "SIGHUP") if hasattr(signal, name)
)


class Reaper:
    """Tears down every registered instance when the process is told to stop.

    Attributes:
        registry: Registry swept on shutdown.
        timeout: Seconds a signal handler waits for the sweep to finish
            before handing the signal on.
    """

    def __init__(
        self,
        registry: ContainerRegistry,
        *,
        timeout: float = 30.0,
        signals: tuple[signal.Signals, ...] = DEFAULT_SIGNALS,
        install_signal_handlers: bool = True,
    ) -> None:
        self.registry = registry
        self.timeout = timeout
        self._signals = signals
        self._install_signal_handlers = install_signal_handlers
        self._shutdown = threading.Event()
        self._swept = threading.Event()
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._previous_handlers: dict[int, Any] = {}
        self._handlers_installed = False
        self._closed = False

    @property
    def started(self) -> bool:
        return self._thread is not None

    @property
    def handlers_installed(self) -> bool:
        return self._handlers_installed

    def start(self) -> None:
        """Start the listener thread and install signal handlers.

        The listener and the exit hook are set up on the first call. Signal
        handlers can only be installed from the main thread, so a reaper
        first started from another thread installs them on the next call
        made from the main thread. Any other repeated call is a no-op.
        """
        with self._lock:
            if self._closed:
                return
            if self._thread is None:
                self._thread = threading.Thread(target=self._listen, name="mongotest-reaper", daemon=True)
                self._thread.start()
                atexit.register(self._sweep_at_exit)
                logger.debug("Reaper started", extra={"signals": [s.name for s in self._signals]})
            if not self._install_signal_handlers or self._handlers_installed:
                return
            if threading.current_thread() is threading.main_thread():
                self._install_handlers()
            else:
                logger.debug("Not on the main thread, signal handlers deferred")

    def trigger(self) -> None:
        """Ask the listener to sweep the registry."""
        self._shutdown.set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until a triggered sweep finished; return False on timeout."""
        return self._swept.wait(timeout)

    def sweep(self) -> list[str]:
        """Tear down every registered instance.

        Individual teardown errors are logged and do not stop the sweep.

        Returns:
            Ids of containers whose teardown raised.
        """
        failed: list[str] = []
        entries = self.registry.items()
        if entries:
            logger.info("Removing registered containers", extra={"count": len(entries)})
        for container_id, conn in entries:
            try:
                conn.reap(container_id)
            except Exception as e:
                logger.error(
                    "Could not tear down container during sweep",
                    extra={"container_id": container_id, "error": str(e)},
                )
                failed.append(container_id)
        return failed

    def close(self) -> None:
        """Restore signal handlers, drop the exit hook and stop the listener."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._restore_handlers()
            atexit.unregister(self._sweep_at_exit)
            thread = self._thread
        self._shutdown.set()
        if thread is not None:
            thread.join(timeout=self.timeout)

    def _listen(self) -> None:
        self._shutdown.wait()
        if self._closed:
            return
        try:
            self.sweep()
        finally:
            self._swept.set()

    def _sweep_at_exit(self) -> None:
        if not self._closed and len(self.registry):
            self.sweep()

    def _install_handlers(self) -> None:
        for sig in self._signals:
            try:
                self._previous_handlers[sig] = signal.signal(sig, self._handle_signal)
            except (OSError, ValueError) as e:
                logger.warning("Could not install signal handler", extra={"signal": sig.name, "error": str(e)})
        self._handlers_installed = True

    def _restore_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous if previous is not None else signal.SIG_DFL)
        self._previous_handlers.clear()
        self._handlers_installed = False

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        logger.warning(
            "Received termination signal, removing test containers",
            extra={"signal": signal.Signals(signum).name},
        )
        self.trigger()
        if not self._swept.wait(self.timeout):
            logger.error("Timed out waiting for container cleanup", extra={"timeout": self.timeout})

        previous = self._previous_handlers.get(signum, signal.SIG_DFL)
        if callable(previous):
            previous(signum, frame)
            return
        if previous == signal.SIG_IGN:
            return
        signal.signal(signum, signal.SIG_DFL)
        os.kill(os.getpid(), signum)


_default_reaper: Reaper | None = None
_default_reaper_lock = threading.Lock()


def get_default_reaper(settings: MongoTestSettings | None = None) -> Reaper:
    """Return the process-wide reaper over `default_registry()`.

    The reaper is created once. Every call starts it, which is a no-op
    except on the first call and on the first call from the main thread.
    """
    global _default_reaper
    with _default_reaper_lock:
        if _default_reaper is None:
            settings = settings or get_settings()
            _default_reaper = Reaper(default_registry(), timeout=settings.reaper_timeout)
        reaper = _default_reaper
    reaper.start()
    return reaper
