"""In-memory store: the default when no store is configured.

Nothing survives the process, which is what tests and `autoroll run --once`
experiments want. Records are deep-copied on the way in and out so callers
can never mutate stored state by accident.
"""

from __future__ import annotations

import copy
import threading
from typing import TYPE_CHECKING

from autoroll_store.base import BaseStore, StorageError

if TYPE_CHECKING:
    from autoroll_store.models import (
        AutoRollStatus,
        ManualRollRequest,
        ModeChange,
        RollIssue,
        StrategyChange,
    )


class MemoryStore(BaseStore):
    """Keeps everything in dicts guarded by a single lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rolls: dict[tuple[str, int], RollIssue] = {}
        self._roll_order: list[tuple[str, int]] = []
        self._modes: list[ModeChange] = []
        self._strategies: list[StrategyChange] = []
        self._manual: dict[str, ManualRollRequest] = {}
        self._status: dict[str, AutoRollStatus] = {}
        self._blobs: dict[str, bytes] = {}

    def add_roll(self, roll: RollIssue) -> None:
        key = (roll.roller, roll.issue)
        with self._lock:
            if key in self._rolls:
                raise StorageError(f"Roll {roll.issue} already exists for {roll.roller}.")
            self._rolls[key] = copy.deepcopy(roll)
            self._roll_order.append(key)

    def update_roll(self, roll: RollIssue) -> None:
        key = (roll.roller, roll.issue)
        with self._lock:
            if key not in self._rolls:
                raise StorageError(f"No such roll {roll.issue} for {roll.roller}.")
            self._rolls[key] = copy.deepcopy(roll)

    def get_roll(self, roller: str, issue: int) -> RollIssue | None:
        with self._lock:
            roll = self._rolls.get((roller, issue))
            return copy.deepcopy(roll) if roll else None

    def list_rolls(self, roller: str, limit: int | None = None) -> list[RollIssue]:
        with self._lock:
            keys = [k for k in reversed(self._roll_order) if k[0] == roller]
            if limit is not None:
                keys = keys[:limit]
            return [copy.deepcopy(self._rolls[k]) for k in keys]

    def add_mode_change(self, change: ModeChange) -> None:
        with self._lock:
            self._modes.append(copy.deepcopy(change))

    def list_mode_changes(self, roller: str, limit: int | None = None) -> list[ModeChange]:
        with self._lock:
            changes = [copy.deepcopy(c) for c in reversed(self._modes) if c.roller == roller]
        return changes[:limit] if limit is not None else changes

    def add_strategy_change(self, change: StrategyChange) -> None:
        with self._lock:
            self._strategies.append(copy.deepcopy(change))

    def list_strategy_changes(self, roller: str, limit: int | None = None) -> list[StrategyChange]:
        with self._lock:
            changes = [copy.deepcopy(c) for c in reversed(self._strategies) if c.roller == roller]
        return changes[:limit] if limit is not None else changes

    def put_manual_roll(self, req: ManualRollRequest) -> None:
        with self._lock:
            self._manual[req.id] = copy.deepcopy(req)

    def list_manual_rolls(self, roller: str) -> list[ManualRollRequest]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._manual.values() if r.roller == roller]

    def set_status(self, status: AutoRollStatus) -> None:
        with self._lock:
            self._status[status.roller] = copy.deepcopy(status)

    def get_status(self, roller: str) -> AutoRollStatus | None:
        with self._lock:
            status = self._status.get(roller)
            return copy.deepcopy(status) if status else None

    def read_blob(self, key: str) -> bytes | None:
        with self._lock:
            return self._blobs.get(key)

    def write_blob(self, key: str, data: bytes) -> None:
        with self._lock:
            self._blobs[key] = bytes(data)

    def delete_blob(self, key: str) -> None:
        with self._lock:
            self._blobs.pop(key, None)
