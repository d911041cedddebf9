from __future__ import annotations

import copy
import logging
import threading
from typing import TYPE_CHECKING

from autoroll_store.models import RollComment

if TYPE_CHECKING:
    from autoroll_store.base import BaseStore
    from autoroll_store.models import RollIssue

logger = logging.getLogger(__name__)

RECENT_ROLLS_LENGTH = 10


class RecentRolls:
    """The last few roll records for one roller, newest first.

    Writes go straight to the store; reads are served from a cache refreshed
    after every write.
    """

    def __init__(self, store: BaseStore, roller: str):
        self._store = store
        self.roller = roller
        self._lock = threading.RLock()
        self._recent: list[RollIssue] = []
        self.refresh()

    def refresh(self) -> None:
        recent = self._store.list_rolls(self.roller, limit=RECENT_ROLLS_LENGTH)
        with self._lock:
            self._recent = recent

    def add(self, roll: RollIssue) -> None:
        roll.validate()
        roll.roller = self.roller
        with self._lock:
            self._store.add_roll(roll)
            self.refresh()

    def update(self, roll: RollIssue) -> None:
        roll.validate()
        roll.roller = self.roller
        with self._lock:
            self._store.update_roll(roll)
            self.refresh()

    def get(self, issue: int) -> RollIssue | None:
        with self._lock:
            for r in self._recent:
                if r.issue == issue:
                    return copy.deepcopy(r)
        return self._store.get_roll(self.roller, issue)

    def add_comment(self, issue: int, message: str, user: str) -> RollIssue:
        """Attach a comment to a stored roll. Raises KeyError if there is no such roll."""
        with self._lock:
            roll = self.get(issue)
            if roll is None:
                raise KeyError(f"No roll with issue {issue} for {self.roller}")
            roll.comments.append(RollComment(id=f"{issue}_{len(roll.comments)}", message=message, user=user))
            self.update(roll)
        return roll

    def current_roll(self) -> RollIssue | None:
        """The newest roll, if it is still open."""
        with self._lock:
            if self._recent and not self._recent[0].closed:
                return copy.deepcopy(self._recent[0])
        return None

    def last_roll(self) -> RollIssue | None:
        """The newest closed roll."""
        with self._lock:
            for r in self._recent:
                if r.closed:
                    return copy.deepcopy(r)
        return None

    def get_recent_rolls(self) -> list[RollIssue]:
        with self._lock:
            return copy.deepcopy(self._recent)
