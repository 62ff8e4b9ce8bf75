"""
Fixed-interval background tasks owned by the engine's lifecycle.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs a callable every ``interval`` seconds on a daemon thread.

    A failing run is logged and the task keeps ticking. ``stop`` wakes the
    thread immediately and waits for the current run to finish.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], object]):
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.name = name
        self.interval = interval
        self._func = func
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        logger.debug("Started periodic task %s every %.1fs", self.name, self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug("Stopped periodic task %s", self.name)

    def run_once(self) -> None:
        try:
            self._func()
        except Exception:
            logger.exception("Periodic task %s failed", self.name)

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval):
            self.run_once()
