"""Background workers that run a callback on a fixed interval."""
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("gatekeeper.workers")


class PeriodicWorker:
    """
    Run a callback every ``interval_seconds`` on a daemon thread.

    The thread waits on a stop event between runs, so ``stop()`` wakes it
    immediately instead of waiting out the interval. A failing callback is
    logged and the loop carries on with the next cycle.
    """

    def __init__(self, interval_seconds: float, callback: Callable[[], object], name: str):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self.callback = callback
        self.name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread. Calling start on a running worker is a no-op."""
        with self._lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()
        logger.info(
            f"{self.name} started",
            extra={'extra_fields': {'interval_seconds': self.interval_seconds}}
        )

    def stop(self, timeout: float = 5.0) -> bool:
        """
        Signal the worker to stop and wait for the thread to exit.

        Returns:
            True if the thread has exited (or was never started)
        """
        with self._lock:
            thread = self._thread
            self._stop_event.set()

        if thread is None:
            return True

        thread.join(timeout)
        if thread.is_alive():
            logger.warning(f"{self.name} did not stop within {timeout}s")
            return False

        with self._lock:
            if self._thread is thread:
                self._thread = None
        logger.info(f"{self.name} stopped")
        return True

    def _run(self) -> None:
        # wait() returns True only once the stop event is set
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.callback()
            except Exception as e:
                logger.exception(f"{self.name} cycle failed: {e}")
