"""Background job invoked on a fixed interval."""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RecurringJob:
    """
    Runs ``action`` every ``interval_seconds`` on a daemon thread.

    A failing run is logged and the job tries again next cycle; it never
    takes the host process down. ``stop`` wakes the thread immediately.
    """

    def __init__(self, name: str, action: Callable[[], object], interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.action = action
        self.interval_seconds = interval_seconds
        self.runs = 0
        self.failures = 0
        self.last_error: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> bool:
        """Run the action a single time; return whether it succeeded."""
        self.runs += 1
        try:
            self.action()
        except Exception as e:
            self.failures += 1
            self.last_error = str(e)
            logger.exception("Recurring job %s failed; retrying next cycle", self.name)
            return False
        self.last_error = None
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        if self.is_running():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"job-{self.name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
