from __future__ import annotations

import threading
from typing import TYPE_CHECKING

from autoroll_store.models import MODE_RUNNING, VALID_MODES, ModeChange

if TYPE_CHECKING:
    from autoroll_store.base import BaseStore


class ModeHistory:
    """Append-only mode log for one roller. With no history the roller is running."""

    HISTORY_LENGTH = 25

    def __init__(self, store: BaseStore, roller: str):
        self._store = store
        self.roller = roller
        self._lock = threading.Lock()
        self._history: list[ModeChange] = []
        self.update()

    def add(self, mode: str, user: str, message: str) -> ModeChange:
        if mode not in VALID_MODES:
            raise ValueError(f"Invalid mode {mode!r}; expected one of {', '.join(VALID_MODES)}")
        change = ModeChange(roller=self.roller, mode=mode, user=user, message=message)
        self._store.add_mode_change(change)
        self.update()
        return change

    def update(self) -> None:
        history = self._store.list_mode_changes(self.roller, limit=self.HISTORY_LENGTH)
        with self._lock:
            self._history = history

    def current(self) -> ModeChange:
        with self._lock:
            if self._history:
                return self._history[0]
        return ModeChange(roller=self.roller, mode=MODE_RUNNING, user="autoroller", message="Default mode")

    def history(self) -> list[ModeChange]:
        with self._lock:
            return list(self._history)
