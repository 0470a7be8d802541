"""
Cancellable periodic tasks.

Each task owns a daemon thread that runs a callable at a fixed interval
until `stop()` is called. Failures are logged and the loop keeps going.
"""

import threading
import time
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class PeriodicTask:
    """Runs a callable every `interval` seconds on its own thread."""

    def __init__(self, name: str, interval: float, fn: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.fn = fn
        self.runs = 0
        self.last_run: Optional[float] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        """Start the task thread. Calling start on a running task is a no-op."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_forever, name=f"periodic-{self.name}", daemon=True)
        self._thread.start()
        logger.info("Periodic task started", task=self.name, interval=self.interval)

    def stop(self, timeout: Optional[float] = 5.0):
        """Signal the loop to exit and wait for an in-flight run to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Periodic task stopped", task=self.name, runs=self.runs)

    def run_once(self):
        """Execute one iteration, logging instead of raising."""
        try:
            self.fn()
        except Exception as e:
            logger.error("Periodic task failed", task=self.name, error=str(e))
        finally:
            self.runs += 1
            self.last_run = time.time()

    def _run_forever(self):
        while not self._stop_event.wait(self.interval):
            self.run_once()
