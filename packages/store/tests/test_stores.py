"""Tests for autoroll-store implementations."""

from __future__ import annotations

import base64
import json
from unittest.mock import MagicMock

import pytest

from autoroll_store.base import StorageError
from autoroll_store.gist import GistStore
from autoroll_store.memory import MemoryStore
from autoroll_store.models import (
    MANUAL_STATUS_COMPLETE,
    MANUAL_STATUS_PENDING,
    ROLL_RESULT_IN_PROGRESS,
    ROLL_RESULT_SUCCESS,
    AutoRollStatus,
    ManualRollRequest,
    ModeChange,
    RollIssue,
    StrategyChange,
)
from autoroll_store.sqlite import SQLiteStore


def _make_roll(issue=123, roller="skia-autoroll", result=ROLL_RESULT_IN_PROGRESS, closed=False):
    return RollIssue(
        issue=issue,
        roller=roller,
        rolling_from="a" * 40,
        rolling_to="b" * 40,
        subject=f"Roll skia from aaaa to bbbb ({issue})",
        result=result,
        closed=closed,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryStore()
    else:
        s = SQLiteStore(db_path=str(tmp_path / "test.db"))
    yield s
    s.close()


# ---------------------------------------------------------------------------
# Behaviour shared by MemoryStore and SQLiteStore
# ---------------------------------------------------------------------------


class TestRolls:
    def test_add_and_get(self, store):
        store.add_roll(_make_roll())
        roll = store.get_roll("skia-autoroll", 123)
        assert roll is not None
        assert roll.rolling_to == "b" * 40

    def test_get_missing_returns_none(self, store):
        assert store.get_roll("skia-autoroll", 999) is None

    def test_add_duplicate_raises(self, store):
        store.add_roll(_make_roll())
        with pytest.raises(StorageError):
            store.add_roll(_make_roll())

    def test_update_replaces_record(self, store):
        store.add_roll(_make_roll())
        store.update_roll(_make_roll(result=ROLL_RESULT_SUCCESS, closed=True))
        roll = store.get_roll("skia-autoroll", 123)
        assert roll.result == ROLL_RESULT_SUCCESS
        assert roll.closed is True

    def test_update_missing_raises(self, store):
        with pytest.raises(StorageError):
            store.update_roll(_make_roll())

    def test_list_newest_first_with_limit(self, store):
        for issue in (1, 2, 3):
            store.add_roll(_make_roll(issue=issue))
        assert [r.issue for r in store.list_rolls("skia-autoroll")] == [3, 2, 1]
        assert [r.issue for r in store.list_rolls("skia-autoroll", limit=2)] == [3, 2]

    def test_rollers_are_isolated(self, store):
        store.add_roll(_make_roll(issue=1, roller="a"))
        store.add_roll(_make_roll(issue=1, roller="b"))
        assert [r.roller for r in store.list_rolls("a")] == ["a"]

    def test_returned_records_are_copies(self, store):
        store.add_roll(_make_roll())
        roll = store.get_roll("skia-autoroll", 123)
        roll.closed = True
        assert store.get_roll("skia-autoroll", 123).closed is False


class TestHistories:
    def test_mode_history_newest_first(self, store):
        store.add_mode_change(ModeChange(roller="r", mode="running", user="u", message="start"))
        store.add_mode_change(ModeChange(roller="r", mode="stopped", user="u", message="stop"))
        changes = store.list_mode_changes("r")
        assert [c.mode for c in changes] == ["stopped", "running"]
        assert len(store.list_mode_changes("r", limit=1)) == 1

    def test_strategy_history_newest_first(self, store):
        store.add_strategy_change(StrategyChange(roller="r", strategy="batch", user="u", message=""))
        store.add_strategy_change(StrategyChange(roller="r", strategy="single", user="u", message=""))
        assert store.list_strategy_changes("r")[0].strategy == "single"
        assert store.list_strategy_changes("other") == []


class TestManualRolls:
    def test_put_is_upsert(self, store):
        req = ManualRollRequest(id="req1", roller="r", revision="abc", requester="me@example.com")
        store.put_manual_roll(req)
        req.status = MANUAL_STATUS_COMPLETE
        store.put_manual_roll(req)
        reqs = store.list_manual_rolls("r")
        assert len(reqs) == 1
        assert reqs[0].status == MANUAL_STATUS_COMPLETE

    def test_incomplete_filters_complete(self, store):
        store.put_manual_roll(ManualRollRequest(id="a", roller="r", revision="1", requester="x"))
        store.put_manual_roll(
            ManualRollRequest(id="b", roller="r", revision="2", requester="x", status=MANUAL_STATUS_COMPLETE)
        )
        incomplete = store.get_incomplete_manual_rolls("r")
        assert [r.id for r in incomplete] == ["a"]
        assert incomplete[0].status == MANUAL_STATUS_PENDING


class TestStatusAndBlobs:
    def test_status_roundtrip(self, store):
        status = AutoRollStatus(roller="r", mode="running", state="idle", current_roll=_make_roll())
        store.set_status(status)
        got = store.get_status("r")
        assert got.state == "idle"
        assert got.current_roll.issue == 123

    def test_missing_status_is_none(self, store):
        assert store.get_status("nope") is None

    def test_blob_write_read_delete(self, store):
        assert store.read_blob("k") is None
        store.write_blob("k", b"\x00\x01")
        assert store.read_blob("k") == b"\x00\x01"
        store.delete_blob("k")
        assert store.read_blob("k") is None

    def test_delete_missing_blob_is_noop(self, store):
        store.delete_blob("never-written")

    def test_unthrottle_flag(self, store):
        assert store.should_unthrottle("r") is False
        store.request_unthrottle("r")
        assert store.should_unthrottle("r") is True
        store.reset_unthrottle("r")
        assert store.should_unthrottle("r") is False

    def test_throttle_request(self, store):
        assert store.throttle_request("r") is None
        store.request_throttle("r", "2024-01-01T14:00:00+00:00")
        assert store.throttle_request("r") == "2024-01-01T14:00:00+00:00"
        store.reset_throttle_request("r")
        assert store.throttle_request("r") is None


# ---------------------------------------------------------------------------
# SQLiteStore specifics
# ---------------------------------------------------------------------------


class TestSQLiteStore:
    def test_persists_across_connections(self, tmp_path):
        """Data written by one SQLiteStore instance must be readable by another."""
        db_path = str(tmp_path / "test.db")
        store_a = SQLiteStore(db_path=db_path)
        store_a.add_roll(_make_roll())
        store_a.write_blob("r/state", b"active")
        store_a.close()

        store_b = SQLiteStore(db_path=db_path)
        assert store_b.get_roll("skia-autoroll", 123) is not None
        assert store_b.read_blob("r/state") == b"active"
        store_b.close()

    def test_unopenable_path_raises_storage_error(self, tmp_path):
        with pytest.raises(StorageError):
            SQLiteStore(db_path=str(tmp_path / "missing-dir" / "test.db"))


# ---------------------------------------------------------------------------
# GistStore
# ---------------------------------------------------------------------------


def _make_gist_mock(files: dict[str, object] | None = None):
    gist = MagicMock()
    gist.files = {}
    for name, content in (files or {}).items():
        file_mock = MagicMock()
        file_mock.content = json.dumps(content)
        gist.files[name] = file_mock
    return gist


def _make_gist_store(gist):
    """Return a GistStore with a mocked Github client."""
    # Github is a local import inside __init__, so bypass it entirely
    # by constructing the object and injecting the mock client directly.
    import threading

    store = object.__new__(GistStore)
    store._gist_id = "abc123"
    store._gh = MagicMock()
    store._gh.get_gist.return_value = gist
    store._lock = threading.Lock()
    return store


def _written(gist, filename):
    return json.loads(gist.edit.call_args[1]["files"][filename]["content"])


class TestGistStore:
    def test_add_roll_appends(self):
        gist = _make_gist_mock()
        store = _make_gist_store(gist)

        store.add_roll(_make_roll())

        content = _written(gist, "autoroll_rolls.json")
        assert content["skia-autoroll"][0]["issue"] == 123

    def test_add_duplicate_roll_raises(self):
        gist = _make_gist_mock({"autoroll_rolls.json": {"skia-autoroll": [_make_roll().to_dict()]}})
        store = _make_gist_store(gist)
        with pytest.raises(StorageError):
            store.add_roll(_make_roll())
        gist.edit.assert_not_called()

    def test_list_rolls_newest_first(self):
        rolls = [_make_roll(issue=1).to_dict(), _make_roll(issue=2).to_dict()]
        store = _make_gist_store(_make_gist_mock({"autoroll_rolls.json": {"skia-autoroll": rolls}}))
        assert [r.issue for r in store.list_rolls("skia-autoroll")] == [2, 1]

    def test_read_failure_raises_storage_error(self):
        store = _make_gist_store(MagicMock())
        store._gh.get_gist.side_effect = Exception("network error")
        with pytest.raises(StorageError, match="network error"):
            store.list_rolls("skia-autoroll")

    def test_write_failure_raises_storage_error(self):
        gist = _make_gist_mock()
        gist.edit.side_effect = Exception("403")
        store = _make_gist_store(gist)
        with pytest.raises(StorageError):
            store.write_blob("k", b"v")

    def test_invalid_json_treated_as_empty(self):
        gist = MagicMock()
        bad = MagicMock()
        bad.content = "not json"
        gist.files = {"autoroll_status.json": bad}
        store = _make_gist_store(gist)
        assert store.get_status("r") is None

    def test_blobs_are_base64_encoded(self):
        gist = _make_gist_mock()
        store = _make_gist_store(gist)
        store.write_blob("r/state", b"idle")
        assert _written(gist, "autoroll_blobs.json") == {"r/state": base64.b64encode(b"idle").decode("ascii")}

    def test_read_blob_decodes(self):
        encoded = base64.b64encode(b"idle").decode("ascii")
        store = _make_gist_store(_make_gist_mock({"autoroll_blobs.json": {"r/state": encoded}}))
        assert store.read_blob("r/state") == b"idle"
