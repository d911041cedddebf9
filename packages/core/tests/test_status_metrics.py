"""Tests for the status cache, in-process metrics and background repeaters."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from autoroll_core.metrics import LAST_SUCCESSFUL_TICK, TICK_ERRORS, Metrics
from autoroll_core.repeat import Repeater
from autoroll_core.status import StatusCache, truncate_not_rolled
from autoroll_store.memory import MemoryStore
from autoroll_store.models import AutoRollStatus


class TestStatus:
    def test_truncate_keeps_newest_only(self):
        revs = [{"id": str(i)} for i in range(5)]
        assert truncate_not_rolled(revs, limit=4) == [{"id": "0"}]
        assert truncate_not_rolled(revs, limit=5) == revs

    def test_cache_writes_through(self):
        store = MemoryStore()
        cache = StatusCache(store, "skia-autoroll")
        assert cache.get() is None
        cache.set(AutoRollStatus(roller="skia-autoroll", mode="running"))
        assert store.get_status("skia-autoroll").mode == "running"
        assert cache.get().mode == "running"

    def test_cache_returns_copies(self):
        cache = StatusCache(MemoryStore(), "skia-autoroll")
        cache.set(AutoRollStatus(roller="skia-autoroll", error=""))
        cache.get().error = "mutated"
        assert cache.get().error == ""

    def test_refresh_reads_store(self):
        store = MemoryStore()
        cache = StatusCache(store, "skia-autoroll")
        cache.set(AutoRollStatus(roller="skia-autoroll", state="idle"))
        store.set_status(AutoRollStatus(roller="skia-autoroll", state="active"))
        assert cache.get().state == "idle"
        assert cache.refresh().state == "active"


class TestMetrics:
    def test_gauges(self):
        m = Metrics("skia-autoroll")
        assert m.gauge(TICK_ERRORS) == 0
        assert m.inc_gauge(TICK_ERRORS) == 1
        assert m.inc_gauge(TICK_ERRORS, 2) == 3
        m.set_gauge(TICK_ERRORS, 0)
        assert m.gauge(TICK_ERRORS) == 0

    def test_liveness_snapshot(self):
        m = Metrics("skia-autoroll")
        assert m.liveness(LAST_SUCCESSFUL_TICK) is None
        when = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        m.reset_liveness(LAST_SUCCESSFUL_TICK, when)
        assert m.liveness(LAST_SUCCESSFUL_TICK) == when
        snap = m.snapshot()
        assert snap["roller"] == "skia-autoroll"
        assert snap["liveness"] == {LAST_SUCCESSFUL_TICK: "2024-01-01T12:00:00+00:00"}


class TestRepeater:
    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            Repeater("tick", timedelta(0), lambda: None, threading.Event())

    def test_run_once_swallows_failures(self):
        fn = MagicMock(side_effect=RuntimeError("boom"))
        assert Repeater("tick", timedelta(seconds=1), fn, threading.Event()).run_once() is False
        fn.side_effect = None
        assert Repeater("tick", timedelta(seconds=1), fn, threading.Event()).run_once() is True

    def test_loop_stops_on_event(self):
        stop = threading.Event()
        calls = []

        def fn():
            calls.append(1)
            stop.set()

        repeater = Repeater("tick", timedelta(seconds=30), fn, stop)
        repeater.start()
        repeater.join(timeout=5)
        assert calls == [1]
