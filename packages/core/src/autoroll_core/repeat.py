"""Background repeaters for the roller's independent loops.

Each loop (roll tick, manual rolls, sheriff refresh, repo refresh) runs on
its own daemon thread and stops when a shared threading.Event is set. An
exception in one iteration is logged and the loop carries on at the next
interval, so one bad tick never takes the roller down.
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import Callable

logger = logging.getLogger(__name__)


class Repeater:
    def __init__(
        self,
        name: str,
        interval: timedelta,
        fn: Callable[[], None],
        stop: threading.Event,
        delay_first: bool = False,
    ):
        if interval <= timedelta(0):
            raise ValueError(f"{name}: interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._stop = stop
        self._delay_first = delay_first
        self._thread: threading.Thread | None = None

    def run_once(self) -> bool:
        """Run fn once. Returns False if it raised."""
        try:
            self._fn()
        except Exception:
            logger.exception("%s failed; retrying in %s.", self.name, self.interval)
            return False
        return True

    def _loop(self) -> None:
        if self._delay_first:
            self._stop.wait(self.interval.total_seconds())
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval.total_seconds())
        logger.debug("%s stopped.", self.name)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)
