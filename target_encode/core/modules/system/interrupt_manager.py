"""
Interrupt handling for target-encode batches.

- First Ctrl+C: graceful stop. No new jobs are started, running tools are
  terminated and in-flight jobs are recorded as cancelled.
- Second Ctrl+C: immediate exit via KeyboardInterrupt.

Signal handlers can only be installed from the main thread, so the manager is
created by the CLI and shares its cancel event with the scheduler.
"""

import signal
import threading
from typing import Callable, List, Optional

from ....utils.logging import get_logger

logger = get_logger("interrupt_manager")


class InterruptManager:
    """Turns SIGINT/SIGTERM into a batch cancel event."""

    def __init__(self, cancel_event: Optional[threading.Event] = None, install: bool = True):
        self.cancel_event = cancel_event or threading.Event()
        self._interrupt_count = 0
        self._callbacks: List[Callable] = []
        self._lock = threading.Lock()
        self._original_handlers = {}
        if install:
            self._setup_signal_handlers()

    def _setup_signal_handlers(self):
        for sig in (signal.SIGINT, signal.SIGTERM):
            self._original_handlers[sig] = signal.signal(sig, self._handle_interrupt)
        logger.info("Press Ctrl+C once to stop after cancelling running tools, twice to exit immediately.")

    def _handle_interrupt(self, signum, frame):
        with self._lock:
            self._interrupt_count += 1
            count = self._interrupt_count

        if count == 1:
            logger.warn("Interrupt received. Cancelling running jobs...")
            self.request_cancel()
        else:
            logger.warn("Second interrupt received. Exiting immediately.")
            self.restore()
            raise KeyboardInterrupt("Immediate exit requested")

    def register_callback(self, callback: Callable):
        """Register a callable run once when cancellation is requested."""
        with self._lock:
            self._callbacks.append(callback)

    def request_cancel(self):
        if self.cancel_event.is_set():
            return
        self.cancel_event.set()
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Error in cancel callback: {e}")

    def restore(self):
        """Restore the signal handlers that were active before install."""
        for sig, handler in self._original_handlers.items():
            signal.signal(sig, handler)
        self._original_handlers = {}
