"""
Cancellation of long running stage operations.

A CancelContext is created once per process and handed to every blocking
operation that should stop early when the job-runner asks the driver to quit
(waiting for a task to start, executing a remote script). The
TerminationHandler turns SIGINT/SIGTERM into a cancellation of that context.
"""

import logging
import signal
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancelContext:
    """Thread-safe, one-way cancellation flag with callbacks."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.RLock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """Cancel the context and run the registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = self._callbacks[:]
            self._callbacks.clear()

        for callback in callbacks:
            callback()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the context is cancelled or the timeout expires.

        Returns:
            True if the context was cancelled
        """
        return self._event.wait(timeout)

    def add_callback(self, callback: Callable[[], None]):
        """Register a callback; it runs immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]):
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)


class TerminationHandler:
    """Cancels a CancelContext when the process receives an exit signal."""

    def __init__(self, context: CancelContext):
        self.context = context

    def install(self):
        for sig in TERMINATION_SIGNALS:
            signal.signal(sig, self.handle)

    def handle(self, signum, frame):
        # pylint: disable=unused-argument
        logger.warning(f"Received exit signal {signal.Signals(signum).name}; quitting")
        # The interrupted main thread may hold the context's Event lock
        threading.Thread(target=self.context.cancel, daemon=True).start()
