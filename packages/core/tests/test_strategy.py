"""Tests for next-roll strategies and the mode/strategy/roll histories."""

from __future__ import annotations

import pytest

from autoroll_core.modes import ModeHistory
from autoroll_core.recent_rolls import RecentRolls
from autoroll_core.revision import Revision
from autoroll_core.strategy import (
    STRATEGY_BATCH,
    STRATEGY_SINGLE,
    BatchStrategy,
    NBatchStrategy,
    SingleStrategy,
    StrategyHistory,
    get_strategy,
)
from autoroll_store.memory import MemoryStore
from autoroll_store.models import (
    MODE_RUNNING,
    MODE_STOPPED,
    ROLL_RESULT_FAILURE,
    ROLL_RESULT_IN_PROGRESS,
    RollIssue,
    RollValidationError,
)


def _revs(n):
    """Return n revisions, newest first."""
    return [Revision(id=f"rev{i}") for i in range(n, 0, -1)]


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class TestStrategies:
    def test_batch_takes_newest(self):
        assert BatchStrategy().get_next(_revs(5)).id == "rev5"

    def test_single_takes_oldest(self):
        assert SingleStrategy().get_next(_revs(5)).id == "rev1"

    def test_n_batch_limits_size(self):
        assert NBatchStrategy(3).get_next(_revs(5)).id == "rev3"

    def test_n_batch_smaller_than_n_rolls_everything(self):
        assert NBatchStrategy(20).get_next(_revs(5)).id == "rev5"

    @pytest.mark.parametrize("strategy", [BatchStrategy(), SingleStrategy(), NBatchStrategy(2)])
    def test_nothing_to_roll(self, strategy):
        assert strategy.get_next([]) is None

    def test_n_batch_rejects_zero(self):
        with pytest.raises(ValueError):
            NBatchStrategy(0)

    def test_get_strategy_by_name(self):
        assert isinstance(get_strategy("single"), SingleStrategy)
        assert get_strategy("n_batch", n_batch_size=4).n == 4

    def test_get_strategy_unknown(self):
        with pytest.raises(ValueError, match="Unknown roll strategy"):
            get_strategy("yolo")


# ---------------------------------------------------------------------------
# Histories
# ---------------------------------------------------------------------------


class TestStrategyHistory:
    def test_default_when_empty(self):
        history = StrategyHistory(MemoryStore(), "r", default=STRATEGY_SINGLE)
        assert history.current().strategy == STRATEGY_SINGLE
        assert history.history() == []

    def test_add_becomes_current(self):
        history = StrategyHistory(MemoryStore(), "r")
        history.add(STRATEGY_SINGLE, "me", "slow down")
        history.add(STRATEGY_BATCH, "me", "speed up")
        assert history.current().strategy == STRATEGY_BATCH
        assert len(history.history()) == 2

    def test_add_invalid_strategy(self):
        with pytest.raises(ValueError, match="Invalid strategy"):
            StrategyHistory(MemoryStore(), "r").add("yolo", "me", "")

    def test_invalid_default_rejected(self):
        with pytest.raises(ValueError):
            StrategyHistory(MemoryStore(), "r", default="yolo")

    def test_update_sees_changes_from_other_writers(self):
        store = MemoryStore()
        history = StrategyHistory(store, "r")
        StrategyHistory(store, "r").add(STRATEGY_SINGLE, "other", "")
        assert history.current().strategy == STRATEGY_BATCH
        history.update()
        assert history.current().strategy == STRATEGY_SINGLE


class TestModeHistory:
    def test_running_by_default(self):
        assert ModeHistory(MemoryStore(), "r").current().mode == MODE_RUNNING

    def test_add_mode(self):
        history = ModeHistory(MemoryStore(), "r")
        change = history.add(MODE_STOPPED, "me", "investigating")
        assert history.current() == change

    def test_invalid_mode(self):
        with pytest.raises(ValueError, match="Invalid mode"):
            ModeHistory(MemoryStore(), "r").add("paused", "me", "")


class TestRecentRolls:
    def test_current_and_last_roll(self):
        recent = RecentRolls(MemoryStore(), "r")
        recent.add(RollIssue(issue=1, closed=True, result=ROLL_RESULT_FAILURE))
        recent.add(RollIssue(issue=2, result=ROLL_RESULT_IN_PROGRESS))
        assert recent.current_roll().issue == 2
        assert recent.last_roll().issue == 1
        assert [r.issue for r in recent.get_recent_rolls()] == [2, 1]

    def test_no_current_roll_when_newest_closed(self):
        recent = RecentRolls(MemoryStore(), "r")
        recent.add(RollIssue(issue=1, closed=True, result=ROLL_RESULT_FAILURE))
        assert recent.current_roll() is None

    def test_add_sets_roller(self):
        store = MemoryStore()
        RecentRolls(store, "r").add(RollIssue(issue=3))
        assert store.get_roll("r", 3) is not None

    def test_add_validates(self):
        with pytest.raises(RollValidationError):
            RecentRolls(MemoryStore(), "r").add(RollIssue(issue=4, committed=True))

    def test_add_comment(self):
        recent = RecentRolls(MemoryStore(), "r")
        recent.add(RollIssue(issue=5))
        recent.add_comment(5, "first", "me")
        roll = recent.add_comment(5, "second", "you")
        assert [c.id for c in roll.comments] == ["5_0", "5_1"]
        assert recent.get(5).comments[1].user == "you"

    def test_add_comment_missing_issue(self):
        with pytest.raises(KeyError):
            RecentRolls(MemoryStore(), "r").add_comment(99, "hi", "me")

    def test_get_returns_copy(self):
        recent = RecentRolls(MemoryStore(), "r")
        recent.add(RollIssue(issue=6))
        recent.get(6).closed = True
        assert recent.get(6).closed is False
