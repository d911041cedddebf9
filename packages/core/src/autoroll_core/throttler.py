"""Durable event counter used to rate-limit roller actions.

A Throttler records event timestamps inside a sliding window and reports
itself throttled once more than ``max_events`` events fall inside it. An
admin can also force it throttled until a given time. State is one JSON blob
in the store, loaded at construction and written through on every change.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from autoroll_core.errors import StorageError

if TYPE_CHECKING:
    from autoroll_store.base import BaseStore

logger = logging.getLogger(__name__)

EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Throttler:
    def __init__(self, store: BaseStore, key: str, window: timedelta, max_events: int):
        if max_events < 0:
            raise ValueError(f"max_events must be non-negative, got {max_events}")
        self._store = store
        self.key = key
        self.window = window
        self.max_events = max_events
        self._lock = threading.Lock()
        self._events: list[datetime] = []
        self._throttled_until = EPOCH
        # A roller must not start with unknown throttle state.
        try:
            raw = store.read_blob(key)
        except StorageError as e:
            raise StorageError(f"Failed to load throttler state {key!r}: {e}") from e
        if raw:
            self._load(raw)

    def _load(self, raw: bytes) -> None:
        try:
            data = json.loads(raw)
            self._events = sorted(datetime.fromisoformat(t) for t in data.get("events", []))
            until = data.get("throttled_until")
            self._throttled_until = datetime.fromisoformat(until) if until else EPOCH
        except (ValueError, TypeError) as e:
            raise StorageError(f"Corrupt throttler state {self.key!r}: {e}") from e

    def _save(self) -> None:
        data = {
            "events": [t.isoformat() for t in self._events],
            "throttled_until": self._throttled_until.isoformat(),
        }
        try:
            self._store.write_blob(self.key, json.dumps(data).encode("utf-8"))
        except StorageError as e:
            # In-memory state stays authoritative; the next write retries.
            logger.error("Failed to persist throttler state %s: %s", self.key, e)

    def _in_window(self, now: datetime) -> list[datetime]:
        start = now - self.window
        return [t for t in self._events if start < t <= now]

    @property
    def enabled(self) -> bool:
        return self.window > timedelta(0)

    def inc(self, now: datetime | None = None) -> None:
        """Record an event at ``now``."""
        now = now or _now()
        with self._lock:
            if self.enabled:
                self._events = self._in_window(now) + [t for t in self._events if t > now]
                self._events.append(now)
                self._events.sort()
            self._save()

    def is_throttled(self, now: datetime | None = None) -> bool:
        now = now or _now()
        with self._lock:
            if now < self._throttled_until:
                return True
            if not self.enabled:
                return False
            return len(self._in_window(now)) > self.max_events

    def throttled_until(self) -> datetime:
        """Return the earliest time at which is_throttled() can turn False.

        Counts every stored event, so this is an upper bound when some of them
        have already left the window.
        """
        with self._lock:
            until = EPOCH
            if self.enabled and len(self._events) > self.max_events:
                until = self._events[len(self._events) - self.max_events - 1] + self.window
            return max(until, self._throttled_until)

    def throttle(self, until: datetime) -> None:
        """Force the throttler on until the given time."""
        with self._lock:
            self._throttled_until = until
            self._save()

    def reset(self) -> None:
        with self._lock:
            self._events = []
            self._throttled_until = EPOCH
            self._save()
