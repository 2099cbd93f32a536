"""
Fixed-interval background scheduler.

Runs a callback once immediately and then every interval_seconds on a
daemon thread. Ticks never overlap: the next wait only starts after the
current callback returns, so a slow tick delays the schedule instead of
running concurrently with the next one.

stop() only prevents future ticks; a tick that is already running is
allowed to finish.
"""

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class IntervalScheduler:
    def __init__(self, interval_seconds: float, callback: Callable[[], object], name: str = "interval-scheduler"):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._name = name
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            logger.warning(f"{self._name}: already started")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._callback()
            except Exception:
                logger.exception(f"{self._name}: scheduled tick failed")
            if self._stop_event.wait(self.interval_seconds):
                break
