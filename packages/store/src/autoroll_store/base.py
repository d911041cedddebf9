"""Abstract store interface.

Every persistence concern of a roller lives behind this interface: the
recent-rolls table, mode and strategy history, manual roll requests, the
status snapshot, the unthrottle and throttle requests, and small named
blobs (throttler state). The roller depends on BaseStore, never on a
concrete backend, so SQLite, Gist and in-memory stores are interchangeable.

Implementations are single-writer (the roller) and multi-reader (the CLI).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autoroll_store.models import (
        AutoRollStatus,
        ManualRollRequest,
        ModeChange,
        RollIssue,
        StrategyChange,
    )


class StorageError(Exception):
    """Raised when a backend cannot read or write its data."""


class BaseStore(ABC):
    """Pluggable persistence layer for one or more rollers."""

    # ------------------------------------------------------------------ #
    # Rolls                                                               #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def add_roll(self, roll: RollIssue) -> None:
        """Insert a new roll record. Raises StorageError if it already exists."""

    @abstractmethod
    def update_roll(self, roll: RollIssue) -> None:
        """Replace an existing roll record. Raises StorageError if it is missing."""

    @abstractmethod
    def get_roll(self, roller: str, issue: int) -> RollIssue | None:
        """Return one roll record, or None."""

    @abstractmethod
    def list_rolls(self, roller: str, limit: int | None = None) -> list[RollIssue]:
        """Return roll records for a roller, newest first."""

    # ------------------------------------------------------------------ #
    # Mode and strategy history                                           #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def add_mode_change(self, change: ModeChange) -> None:
        """Append to the mode history."""

    @abstractmethod
    def list_mode_changes(self, roller: str, limit: int | None = None) -> list[ModeChange]:
        """Return mode history, newest first."""

    @abstractmethod
    def add_strategy_change(self, change: StrategyChange) -> None:
        """Append to the strategy history."""

    @abstractmethod
    def list_strategy_changes(self, roller: str, limit: int | None = None) -> list[StrategyChange]:
        """Return strategy history, newest first."""

    # ------------------------------------------------------------------ #
    # Manual rolls                                                        #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def put_manual_roll(self, req: ManualRollRequest) -> None:
        """Insert or replace a manual roll request, keyed by id."""

    @abstractmethod
    def list_manual_rolls(self, roller: str) -> list[ManualRollRequest]:
        """Return all manual roll requests for a roller, oldest first."""

    def get_incomplete_manual_rolls(self, roller: str) -> list[ManualRollRequest]:
        from autoroll_store.models import MANUAL_STATUS_COMPLETE

        return [r for r in self.list_manual_rolls(roller) if r.status != MANUAL_STATUS_COMPLETE]

    # ------------------------------------------------------------------ #
    # Status and flags                                                    #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def set_status(self, status: AutoRollStatus) -> None:
        """Replace the status snapshot for status.roller."""

    @abstractmethod
    def get_status(self, roller: str) -> AutoRollStatus | None:
        """Return the latest status snapshot, or None."""

    @abstractmethod
    def read_blob(self, key: str) -> bytes | None:
        """Return the blob stored under key, or None if absent."""

    @abstractmethod
    def write_blob(self, key: str, data: bytes) -> None:
        """Store data under key, replacing any previous value."""

    @abstractmethod
    def delete_blob(self, key: str) -> None:
        """Remove key if present."""

    def request_unthrottle(self, roller: str) -> None:
        self.write_blob(f"{roller}/unthrottle", b"1")

    def should_unthrottle(self, roller: str) -> bool:
        return self.read_blob(f"{roller}/unthrottle") is not None

    def reset_unthrottle(self, roller: str) -> None:
        self.delete_blob(f"{roller}/unthrottle")

    def request_throttle(self, roller: str, until: str) -> None:
        """Ask the roller to stay throttled until the ISO-8601 time ``until``."""
        self.write_blob(f"{roller}/throttle_request", until.encode("utf-8"))

    def throttle_request(self, roller: str) -> str | None:
        raw = self.read_blob(f"{roller}/throttle_request")
        return raw.decode("utf-8") if raw is not None else None

    def reset_throttle_request(self, roller: str) -> None:
        self.delete_blob(f"{roller}/throttle_request")

    def close(self) -> None:
        """Release any resources held by the store (connections, file handles).

        Optional; subclasses that need cleanup should override this.
        Default is a no-op so callers can always call close() safely.
        """
