"""SQLiteStore: local file-based store for a single roller host.

Schema:
  rolls             one row per roll CL; the full record is kept as JSON
                      (roll_json) next to the columns we query on.
  mode_changes      append-only mode history.
  strategy_changes  append-only strategy history.
  manual_rolls      manual roll requests keyed by request id.
  status            latest status snapshot per roller.
  blobs             small named values (throttler state, unthrottle flag).
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading

from autoroll_store.base import BaseStore, StorageError
from autoroll_store.models import (
    AutoRollStatus,
    ManualRollRequest,
    ModeChange,
    RollIssue,
    StrategyChange,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS rolls (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    roller      TEXT NOT NULL,
    issue       INTEGER NOT NULL,
    result      TEXT,
    closed      INTEGER DEFAULT 0,
    roll_json   TEXT NOT NULL,
    UNIQUE (roller, issue)
);
CREATE INDEX IF NOT EXISTS idx_rolls_roller ON rolls (roller, seq);

CREATE TABLE IF NOT EXISTS mode_changes (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    roller      TEXT NOT NULL,
    mode        TEXT NOT NULL,
    user        TEXT,
    message     TEXT,
    timestamp   TEXT
);

CREATE TABLE IF NOT EXISTS strategy_changes (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    roller      TEXT NOT NULL,
    strategy    TEXT NOT NULL,
    user        TEXT,
    message     TEXT,
    timestamp   TEXT
);

CREATE TABLE IF NOT EXISTS manual_rolls (
    id          TEXT PRIMARY KEY,
    roller      TEXT NOT NULL,
    status      TEXT,
    timestamp   TEXT,
    req_json    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS status (
    roller      TEXT PRIMARY KEY,
    status_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS blobs (
    key         TEXT PRIMARY KEY,
    data        BLOB
);
"""


class SQLiteStore(BaseStore):
    """Stores roller state in a local SQLite database file.

    The database file path defaults to `.autoroll.db` in the current working
    directory. Configure via .autoroll.yml: `store_path: /path/to/autoroll.db`.
    The connection is shared between the roller's repeater threads, so every
    statement runs under one lock.
    """

    def __init__(self, db_path: str = ".autoroll.db"):
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Could not open SQLite store at {db_path}: {e}") from e
        self._lock = threading.Lock()

    def _execute(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                rows = self._conn.execute(sql, params).fetchall()
                self._conn.commit()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e
        return rows

    # Rolls.

    def add_roll(self, roll: RollIssue) -> None:
        try:
            self._execute(
                "INSERT INTO rolls (roller, issue, result, closed, roll_json) VALUES (?, ?, ?, ?, ?)",
                (roll.roller, roll.issue, roll.result, int(roll.closed), json.dumps(roll.to_dict())),
            )
        except StorageError as e:
            raise StorageError(f"Failed to insert roll {roll.issue}: {e}") from e

    def update_roll(self, roll: RollIssue) -> None:
        with self._lock:
            try:
                cur = self._conn.execute(
                    "UPDATE rolls SET result=?, closed=?, roll_json=? WHERE roller=? AND issue=?",
                    (roll.result, int(roll.closed), json.dumps(roll.to_dict()), roll.roller, roll.issue),
                )
                self._conn.commit()
            except sqlite3.Error as e:
                raise StorageError(f"Failed to update roll {roll.issue}: {e}") from e
        if cur.rowcount == 0:
            raise StorageError(f"No such roll {roll.issue} for {roll.roller}.")

    def get_roll(self, roller: str, issue: int) -> RollIssue | None:
        rows = self._execute("SELECT roll_json FROM rolls WHERE roller=? AND issue=?", (roller, issue))
        if not rows:
            return None
        return RollIssue.from_dict(json.loads(rows[0]["roll_json"]))

    def list_rolls(self, roller: str, limit: int | None = None) -> list[RollIssue]:
        sql = "SELECT roll_json FROM rolls WHERE roller=? ORDER BY seq DESC"
        params: tuple = (roller,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (roller, limit)
        return [RollIssue.from_dict(json.loads(r["roll_json"])) for r in self._execute(sql, params)]

    # Mode and strategy history.

    def add_mode_change(self, change: ModeChange) -> None:
        self._execute(
            "INSERT INTO mode_changes (roller, mode, user, message, timestamp) VALUES (?, ?, ?, ?, ?)",
            (change.roller, change.mode, change.user, change.message, change.timestamp),
        )

    def list_mode_changes(self, roller: str, limit: int | None = None) -> list[ModeChange]:
        rows = self._execute(
            "SELECT * FROM mode_changes WHERE roller=? ORDER BY seq DESC LIMIT ?",
            (roller, -1 if limit is None else limit),
        )
        return [
            ModeChange(
                roller=r["roller"],
                mode=r["mode"],
                user=r["user"] or "",
                message=r["message"] or "",
                timestamp=r["timestamp"] or "",
            )
            for r in rows
        ]

    def add_strategy_change(self, change: StrategyChange) -> None:
        self._execute(
            "INSERT INTO strategy_changes (roller, strategy, user, message, timestamp) VALUES (?, ?, ?, ?, ?)",
            (change.roller, change.strategy, change.user, change.message, change.timestamp),
        )

    def list_strategy_changes(self, roller: str, limit: int | None = None) -> list[StrategyChange]:
        rows = self._execute(
            "SELECT * FROM strategy_changes WHERE roller=? ORDER BY seq DESC LIMIT ?",
            (roller, -1 if limit is None else limit),
        )
        return [
            StrategyChange(
                roller=r["roller"],
                strategy=r["strategy"],
                user=r["user"] or "",
                message=r["message"] or "",
                timestamp=r["timestamp"] or "",
            )
            for r in rows
        ]

    # Manual rolls.

    def put_manual_roll(self, req: ManualRollRequest) -> None:
        self._execute(
            """
            INSERT INTO manual_rolls (id, roller, status, timestamp, req_json) VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET status=excluded.status, req_json=excluded.req_json
            """,
            (req.id, req.roller, req.status, req.timestamp, json.dumps(req.__dict__)),
        )

    def list_manual_rolls(self, roller: str) -> list[ManualRollRequest]:
        rows = self._execute(
            "SELECT req_json FROM manual_rolls WHERE roller=? ORDER BY timestamp, id",
            (roller,),
        )
        return [ManualRollRequest.from_dict(json.loads(r["req_json"])) for r in rows]

    # Status and blobs.

    def set_status(self, status: AutoRollStatus) -> None:
        self._execute(
            "INSERT OR REPLACE INTO status (roller, status_json) VALUES (?, ?)",
            (status.roller, json.dumps(status.to_dict())),
        )

    def get_status(self, roller: str) -> AutoRollStatus | None:
        rows = self._execute("SELECT status_json FROM status WHERE roller=?", (roller,))
        if not rows:
            return None
        return AutoRollStatus.from_dict(json.loads(rows[0]["status_json"]))

    def read_blob(self, key: str) -> bytes | None:
        rows = self._execute("SELECT data FROM blobs WHERE key=?", (key,))
        return bytes(rows[0]["data"]) if rows else None

    def write_blob(self, key: str, data: bytes) -> None:
        self._execute("INSERT OR REPLACE INTO blobs (key, data) VALUES (?, ?)", (key, data))

    def delete_blob(self, key: str) -> None:
        self._execute("DELETE FROM blobs WHERE key=?", (key,))

    def close(self) -> None:
        with self._lock:
            self._conn.close()
