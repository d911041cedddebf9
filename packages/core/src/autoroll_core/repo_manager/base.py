"""Repo manager contract.

A repo manager knows how the parent pins the child. It reports which child
revisions have not been rolled yet and creates roll CLs; it does not decide
when to roll. Only the GitHub variant ships here; other pinning schemes
(DEPS files, CIPD packages, SDK manifests) implement the same interface.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from autoroll_core.repeat import Repeater

if TYPE_CHECKING:
    from autoroll_core.revision import Revision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepoState:
    last_roll_rev: Revision
    tip_rev: Revision
    not_rolled: list[Revision] = field(default_factory=list)  # newest first


class RepoManager(ABC):
    @abstractmethod
    def update(self) -> RepoState:
        """Sync and return (last rolled, tip, not rolled newest first).

        Transient failures talking to the child should raise TransientSyncError.
        """

    @abstractmethod
    def create_new_roll(
        self,
        rolling_from: Revision,
        rolling_to: Revision,
        revisions: list[Revision],
        reviewers: list[str],
        cq_extra_trybots: list[str],
        dry_run: bool,
    ) -> int:
        """Upload a roll CL and return its issue number."""

    @abstractmethod
    def get_revision(self, rev_id: str) -> Revision:
        """Resolve a revision ID. Raises UnknownRevisionError."""


class RepoManagerRefresher(RepoManager):
    """Serves the last update() result while refreshing on its own repeater.

    update() still syncs synchronously, so a tick always sees fresh state;
    status readers use cached() and never block on the network. Syncs and
    uploads share one roll branch, so they run one at a time.
    """

    def __init__(self, inner: RepoManager):
        self._inner = inner
        self._lock = threading.Lock()
        self._repo_lock = threading.Lock()
        self._state: RepoState | None = None

    def update(self) -> RepoState:
        with self._repo_lock:
            state = self._inner.update()
        with self._lock:
            self._state = state
        return state

    def cached(self) -> RepoState | None:
        with self._lock:
            return self._state

    def create_new_roll(self, rolling_from, rolling_to, revisions, reviewers, cq_extra_trybots, dry_run) -> int:
        with self._repo_lock:
            return self._inner.create_new_roll(
                rolling_from, rolling_to, revisions, reviewers, cq_extra_trybots, dry_run
            )

    def get_revision(self, rev_id: str) -> Revision:
        return self._inner.get_revision(rev_id)

    def start(self, interval: timedelta, stop: threading.Event) -> Repeater:
        repeater = Repeater("repo-manager-refresh", interval, self.update, stop, delay_first=True)
        repeater.start()
        return repeater
