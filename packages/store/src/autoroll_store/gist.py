"""GistStore: zero-infrastructure roller state via a GitHub Gist.

A Gist gives a roller durable state without provisioning a database: the
same token that drives GitHub rolls can usually read and write it, and any
team member can inspect the JSON by hand.

Data format: one JSON file per collection inside the Gist.

  autoroll_rolls.json       {roller: [roll dicts, oldest first]}
  autoroll_modes.json       {roller: [mode change dicts, oldest first]}
  autoroll_strategies.json  {roller: [strategy change dicts, oldest first]}
  autoroll_manual.json      {request id: request dict}
  autoroll_status.json      {roller: status dict}
  autoroll_blobs.json       {key: base64 data}

Unlike a review history, roller state is on the critical path: a failed
read or write raises StorageError and the caller decides what to do.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from dataclasses import asdict

from autoroll_store.base import BaseStore, StorageError
from autoroll_store.models import (
    AutoRollStatus,
    ManualRollRequest,
    ModeChange,
    RollIssue,
    StrategyChange,
)

logger = logging.getLogger(__name__)

_ROLLS_FILE = "autoroll_rolls.json"
_MODES_FILE = "autoroll_modes.json"
_STRATEGIES_FILE = "autoroll_strategies.json"
_MANUAL_FILE = "autoroll_manual.json"
_STATUS_FILE = "autoroll_status.json"
_BLOBS_FILE = "autoroll_blobs.json"


class GistStore(BaseStore):
    """Stores roller state in a GitHub Gist.

    Every operation is a read-modify-write of one file, so the store is only
    suitable for a single writer. The Gist ID is stored in .autoroll.yml
    under `gist_id`.
    """

    def __init__(self, gist_id: str, token: str):
        try:
            from github import Github
        except ImportError:
            raise ImportError("PyGithub is required for GistStore. Install autoroll.")
        self._gist_id = gist_id
        self._gh = Github(token)
        self._lock = threading.Lock()

    def _get_gist(self):
        return self._gh.get_gist(self._gist_id)

    def _read(self, filename: str) -> dict:
        try:
            gist = self._get_gist()
        except Exception as e:
            raise StorageError(f"Could not read Gist {self._gist_id} ({type(e).__name__}): {e}") from e
        file_obj = gist.files.get(filename)
        if file_obj is None:
            return {}
        try:
            return json.loads(file_obj.content) or {}
        except (json.JSONDecodeError, AttributeError, TypeError):
            logger.warning("GistStore: %s is not valid JSON; treating it as empty.", filename)
            return {}

    def _write(self, filename: str, data: dict) -> None:
        try:
            gist = self._get_gist()
            gist.edit(files={filename: {"content": json.dumps(data, indent=2, sort_keys=True)}})
        except Exception as e:
            raise StorageError(f"Could not write {filename} to Gist {self._gist_id} ({type(e).__name__}): {e}") from e

    def _modify(self, filename: str, fn) -> None:
        with self._lock:
            data = self._read(filename)
            fn(data)
            self._write(filename, data)

    # Rolls.

    def add_roll(self, roll: RollIssue) -> None:
        def _add(data: dict) -> None:
            rolls = data.setdefault(roll.roller, [])
            if any(r.get("issue") == roll.issue for r in rolls):
                raise StorageError(f"Roll {roll.issue} already exists for {roll.roller}.")
            rolls.append(roll.to_dict())

        self._modify(_ROLLS_FILE, _add)

    def update_roll(self, roll: RollIssue) -> None:
        def _update(data: dict) -> None:
            rolls = data.setdefault(roll.roller, [])
            for i, r in enumerate(rolls):
                if r.get("issue") == roll.issue:
                    rolls[i] = roll.to_dict()
                    return
            raise StorageError(f"No such roll {roll.issue} for {roll.roller}.")

        self._modify(_ROLLS_FILE, _update)

    def get_roll(self, roller: str, issue: int) -> RollIssue | None:
        for r in self._read(_ROLLS_FILE).get(roller, []):
            if r.get("issue") == issue:
                return RollIssue.from_dict(r)
        return None

    def list_rolls(self, roller: str, limit: int | None = None) -> list[RollIssue]:
        rolls = [RollIssue.from_dict(r) for r in reversed(self._read(_ROLLS_FILE).get(roller, []))]
        return rolls[:limit] if limit is not None else rolls

    # Mode and strategy history.

    def add_mode_change(self, change: ModeChange) -> None:
        self._modify(_MODES_FILE, lambda data: data.setdefault(change.roller, []).append(asdict(change)))

    def list_mode_changes(self, roller: str, limit: int | None = None) -> list[ModeChange]:
        changes = [ModeChange.from_dict(c) for c in reversed(self._read(_MODES_FILE).get(roller, []))]
        return changes[:limit] if limit is not None else changes

    def add_strategy_change(self, change: StrategyChange) -> None:
        self._modify(_STRATEGIES_FILE, lambda data: data.setdefault(change.roller, []).append(asdict(change)))

    def list_strategy_changes(self, roller: str, limit: int | None = None) -> list[StrategyChange]:
        changes = [StrategyChange.from_dict(c) for c in reversed(self._read(_STRATEGIES_FILE).get(roller, []))]
        return changes[:limit] if limit is not None else changes

    # Manual rolls.

    def put_manual_roll(self, req: ManualRollRequest) -> None:
        self._modify(_MANUAL_FILE, lambda data: data.__setitem__(req.id, asdict(req)))

    def list_manual_rolls(self, roller: str) -> list[ManualRollRequest]:
        reqs = [ManualRollRequest.from_dict(r) for r in self._read(_MANUAL_FILE).values()]
        return sorted((r for r in reqs if r.roller == roller), key=lambda r: (r.timestamp, r.id))

    # Status and blobs.

    def set_status(self, status: AutoRollStatus) -> None:
        self._modify(_STATUS_FILE, lambda data: data.__setitem__(status.roller, status.to_dict()))

    def get_status(self, roller: str) -> AutoRollStatus | None:
        d = self._read(_STATUS_FILE).get(roller)
        return AutoRollStatus.from_dict(d) if d else None

    def read_blob(self, key: str) -> bytes | None:
        encoded = self._read(_BLOBS_FILE).get(key)
        return base64.b64decode(encoded) if encoded is not None else None

    def write_blob(self, key: str, data: bytes) -> None:
        self._modify(_BLOBS_FILE, lambda d: d.__setitem__(key, base64.b64encode(data).decode("ascii")))

    def delete_blob(self, key: str) -> None:
        self._modify(_BLOBS_FILE, lambda d: d.pop(key, None))
