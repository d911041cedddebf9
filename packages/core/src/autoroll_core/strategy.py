"""Next-revision strategies and the strategy change log.

Every strategy receives the not-rolled revisions newest first, the order in
which repo managers return them.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from autoroll_store.models import StrategyChange

if TYPE_CHECKING:
    from autoroll_core.revision import Revision
    from autoroll_store.base import BaseStore

logger = logging.getLogger(__name__)

STRATEGY_BATCH = "batch"
STRATEGY_N_BATCH = "n_batch"
STRATEGY_SINGLE = "single"
STRATEGIES = (STRATEGY_BATCH, STRATEGY_N_BATCH, STRATEGY_SINGLE)

DEFAULT_N_BATCH_SIZE = 20


class NextRollStrategy(ABC):
    name: str = ""

    @abstractmethod
    def get_next(self, not_rolled: list[Revision]) -> Revision | None:
        """Return the revision to roll to, or None if there is nothing to roll."""


class BatchStrategy(NextRollStrategy):
    """Roll everything at once."""

    name = STRATEGY_BATCH

    def get_next(self, not_rolled: list[Revision]) -> Revision | None:
        return not_rolled[0] if not_rolled else None


class SingleStrategy(NextRollStrategy):
    """Roll one revision at a time."""

    name = STRATEGY_SINGLE

    def get_next(self, not_rolled: list[Revision]) -> Revision | None:
        return not_rolled[-1] if not_rolled else None


class NBatchStrategy(NextRollStrategy):
    """Roll at most N revisions at a time."""

    name = STRATEGY_N_BATCH

    def __init__(self, n: int = DEFAULT_N_BATCH_SIZE):
        if n < 1:
            raise ValueError(f"n_batch size must be at least 1, got {n}")
        self.n = n

    def get_next(self, not_rolled: list[Revision]) -> Revision | None:
        if not not_rolled:
            return None
        return not_rolled[max(0, len(not_rolled) - self.n)]


def get_strategy(name: str, n_batch_size: int = DEFAULT_N_BATCH_SIZE) -> NextRollStrategy:
    if name == STRATEGY_BATCH:
        return BatchStrategy()
    if name == STRATEGY_SINGLE:
        return SingleStrategy()
    if name == STRATEGY_N_BATCH:
        return NBatchStrategy(n_batch_size)
    raise ValueError(f"Unknown roll strategy {name!r}; expected one of {', '.join(STRATEGIES)}")


class StrategyHistory:
    """Append-only strategy log for one roller, cached between refreshes.

    The roller calls update() at the start of every tick so that changes made
    through the CLI (a different process) are picked up.
    """

    HISTORY_LENGTH = 25

    def __init__(self, store: BaseStore, roller: str, default: str = STRATEGY_BATCH, valid=STRATEGIES):
        if default not in valid:
            raise ValueError(f"Default strategy {default!r} is not one of {', '.join(valid)}")
        self._store = store
        self.roller = roller
        self.default = default
        self.valid = tuple(valid)
        self._lock = threading.Lock()
        self._history: list[StrategyChange] = []
        self.update()

    def add(self, strategy: str, user: str, message: str) -> StrategyChange:
        if strategy not in self.valid:
            raise ValueError(f"Invalid strategy {strategy!r}; expected one of {', '.join(self.valid)}")
        change = StrategyChange(roller=self.roller, strategy=strategy, user=user, message=message)
        self._store.add_strategy_change(change)
        self.update()
        return change

    def update(self) -> None:
        history = self._store.list_strategy_changes(self.roller, limit=self.HISTORY_LENGTH)
        with self._lock:
            self._history = history

    def current(self) -> StrategyChange:
        with self._lock:
            if self._history:
                return self._history[0]
        return StrategyChange(roller=self.roller, strategy=self.default, user="autoroller", message="Default strategy")

    def history(self) -> list[StrategyChange]:
        with self._lock:
            return list(self._history)
