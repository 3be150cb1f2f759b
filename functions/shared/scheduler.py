"""
Recurring background task runner.

Runs a function on a fixed interval in a daemon thread. A run never
overlaps another run of the same task: a tick that finds the previous run
still in flight is skipped.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class RecurringTask:
    """
    Periodic runner with cooperative cancellation.

    func receives the task's stop event and should check it between units
    of work so stop() can end a run early.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[threading.Event], Any],
        initial_delay: float = 0.0,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.initial_delay = initial_delay
        self._func = func
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def stop_event(self) -> threading.Event:
        return self._stop_event

    @property
    def is_running(self) -> bool:
        """True while a run is in flight."""
        return self._run_lock.locked()

    @property
    def is_started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Any:
        """
        Run func now unless a run is already in flight.

        Returns:
            func's result, or None when skipped or when func raised
        """
        if not self._run_lock.acquire(blocking=False):
            logger.warning(f"{self.name}: previous run still in progress, skipping")
            return None

        started = time.monotonic()
        try:
            result = self._func(self._stop_event)
            logger.info(
                f"{self.name}: run finished",
                extra={"task": self.name, "duration_ms": round((time.monotonic() - started) * 1000, 1)},
            )
            return result
        except Exception as e:
            logger.exception(f"{self.name}: run failed: {e}")
            return None
        finally:
            self._run_lock.release()

    def _loop(self) -> None:
        if self._stop_event.wait(self.initial_delay):
            return
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(self.interval_seconds):
                break
        logger.info(f"{self.name}: stopped")

    def start(self) -> None:
        if self.is_started:
            raise RuntimeError(f"{self.name} is already started")
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"{self.name}: started with {self.interval_seconds}s interval")

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Signal the loop and any in-flight run to stop.

        Returns:
            True if the thread has exited (or was never started)
        """
        self._stop_event.set()
        if self._thread is None:
            return True
        if wait:
            self._thread.join(timeout)
        return not self._thread.is_alive()
