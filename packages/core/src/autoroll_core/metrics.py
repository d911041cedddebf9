"""In-process roller metrics.

Liveness timestamps and integer gauges kept on one object that the CLI
creates and hands to the roller; `autoroll status` shows them. There is no
exporter.
"""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional

LAST_SUCCESSFUL_TICK = "last_successful_autoroll_tick"
LAST_SUCCESSFUL_MANUAL_ROLL_CHECK = "last_successful_manual_roll_check"
LAST_AUTOROLL_LANDED = "last_autoroll_landed"
LAST_ROLL_RESULT = "autoroll_last_roll_result"
TICK_ERRORS = "autoroll_tick_errors"


class Metrics:
    def __init__(self, roller: str):
        self.roller = roller
        self._lock = threading.Lock()
        self._liveness: dict[str, datetime] = {}
        self._gauges: dict[str, int] = {}

    def reset_liveness(self, name: str, when: Optional[datetime] = None) -> None:
        with self._lock:
            self._liveness[name] = when or datetime.now(timezone.utc)

    def liveness(self, name: str) -> Optional[datetime]:
        with self._lock:
            return self._liveness.get(name)

    def set_gauge(self, name: str, value: int) -> None:
        with self._lock:
            self._gauges[name] = value

    def inc_gauge(self, name: str, delta: int = 1) -> int:
        with self._lock:
            self._gauges[name] = self._gauges.get(name, 0) + delta
            return self._gauges[name]

    def gauge(self, name: str) -> int:
        with self._lock:
            return self._gauges.get(name, 0)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "roller": self.roller,
                "liveness": {k: v.isoformat() for k, v in self._liveness.items()},
                "gauges": dict(self._gauges),
            }

