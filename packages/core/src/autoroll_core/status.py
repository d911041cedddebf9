from __future__ import annotations

import copy
import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autoroll_store.base import BaseStore
    from autoroll_store.models import AutoRollStatus

logger = logging.getLogger(__name__)

MAX_NOT_ROLLED_REVS = 50


def truncate_not_rolled(revs: list[dict], limit: int = MAX_NOT_ROLLED_REVS) -> list[dict]:
    """Keep only the newest revision when there are too many to show."""
    if len(revs) > limit:
        logger.warning("Truncating not-rolled revisions; %d is more than the maximum of %d", len(revs), limit)
        return revs[:1]
    return list(revs)


class StatusCache:
    """Latest status snapshot of one roller, written through to the store."""

    def __init__(self, store: BaseStore, roller: str):
        self._store = store
        self.roller = roller
        self._lock = threading.RLock()
        self._status: AutoRollStatus | None = None

    def set(self, status: AutoRollStatus) -> None:
        with self._lock:
            self._store.set_status(status)
            self._status = copy.deepcopy(status)

    def get(self) -> AutoRollStatus | None:
        with self._lock:
            if self._status is None:
                self._status = self._store.get_status(self.roller)
            return copy.deepcopy(self._status)

    def refresh(self) -> AutoRollStatus | None:
        with self._lock:
            self._status = self._store.get_status(self.roller)
            return copy.deepcopy(self._status)
