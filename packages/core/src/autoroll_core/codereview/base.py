"""Base class for roll CLs: handles the shared lifecycle logic.

Subclasses read and mutate a CL on their review system. RollCL runs every
mutation through ``_with_modify`` and emits a RollFinished event once per CL.

A RollCL owns one RollIssue for the lifetime of one CL. Every reconciliation
is computed onto a copy of that record and swapped in only after
``validate()`` passes, so a failed or half-finished reconciliation leaves the
last good record in place. The roller never sees a partially-updated issue.
"""

from __future__ import annotations

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from autoroll_core.errors import AutoRollError
from autoroll_core.state_machine import RollSnapshot

if TYPE_CHECKING:
    from autoroll_core.recent_rolls import RecentRolls
    from autoroll_core.revision import Revision
    from autoroll_store.models import RollIssue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RollFinished:
    """Emitted once per CL, the first time an update sees it finished."""

    issue: int
    issue_url: str
    result: str
    is_dry_run: bool
    rolling_from: str
    rolling_to: str


class RollCL(ABC):
    """One roll CL on a review system."""

    def __init__(self, issue: RollIssue, recent: RecentRolls, rolling_to: Revision, issue_url_base: str):
        self._issue = issue
        self._recent = recent
        self._rolling_to = rolling_to
        self._issue_url = f"{issue_url_base}{issue.issue}"
        self._result = ""  # set by close(); overrides the computed result
        self._finished_emitted = False
        self._events: list[RollFinished] = []

    # ------------------------------------------------------------------ #
    # Review-system hooks                                                 #
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _reconcile(self, issue: RollIssue) -> None:
        """Fetch the CL and rewrite every derived field of ``issue`` in place.

        ``issue`` is a scratch copy; raising leaves the live record untouched.
        """

    @abstractmethod
    def _post_comment(self, message: str) -> None:
        """Post a comment on the CL."""

    @abstractmethod
    def _abandon(self, message: str) -> None:
        """Close the CL without landing it."""

    @abstractmethod
    def _set_dry_run(self, message: str) -> None:
        """Put the CL in dry-run mode."""

    @abstractmethod
    def _set_normal(self, message: str) -> None:
        """Put the CL in commit-queue mode."""

    @abstractmethod
    def _retry_cq(self) -> None:
        """Re-trigger the commit queue."""

    @abstractmethod
    def _retry_dry_run(self) -> None:
        """Re-trigger the dry run."""

    # ------------------------------------------------------------------ #
    # Lifecycle                                                           #
    # ------------------------------------------------------------------ #

    def insert_into_db(self) -> None:
        self._recent.add(copy.deepcopy(self._issue))

    def load(self) -> None:
        """Reconcile without persisting. Used before the record is in the store."""
        scratch = copy.deepcopy(self._issue)
        self._reconcile(scratch)
        scratch.validate()
        self._issue = scratch

    def update(self) -> None:
        """Reconcile with the review system and persist the result."""
        already_finished = self.is_finished()
        scratch = copy.deepcopy(self._issue)
        self._reconcile(scratch)
        if self._result:
            scratch.result = self._result
        stored = self._recent.get(scratch.issue)
        if stored is not None:
            # Comments are attached through the store, never the review system.
            scratch.comments = stored.comments
        scratch.validate()
        self._issue = scratch
        self._recent.update(copy.deepcopy(scratch))
        if self.is_finished() and not already_finished and not self._finished_emitted:
            self._finished_emitted = True
            self._events.append(
                RollFinished(
                    issue=scratch.issue,
                    issue_url=self._issue_url,
                    result=scratch.result,
                    is_dry_run=scratch.is_dry_run,
                    rolling_from=scratch.rolling_from,
                    rolling_to=scratch.rolling_to,
                )
            )

    def pop_events(self) -> list[RollFinished]:
        events, self._events = self._events, []
        return events

    def _with_modify(self, action: str, fn: Callable[[], None]) -> None:
        """Run a mutation, tolerating a CL that was closed underneath us.

        A human may abandon (or land) the CL while the roller is acting on it.
        If the mutation fails and a fresh update shows the CL closed, the
        error is logged and swallowed.
        """
        try:
            fn()
        except Exception as err:
            try:
                self.update()
            except Exception as err2:
                raise AutoRollError(
                    f"Failed to {action} with error:\n{err}\nAnd failed to update it with error:\n{err2}"
                ) from err
            if self.is_closed():
                logger.error("Attempted to %s but %s is already closed! Error: %s", action, self.issue_id(), err)
                return
            raise
        self.update()

    # ------------------------------------------------------------------ #
    # Mutations                                                           #
    # ------------------------------------------------------------------ #

    def add_comment(self, message: str) -> None:
        self._with_modify("add a comment", lambda: self._post_comment(message))

    def close(self, result: str, message: str) -> None:
        logger.info("Closing issue %s (result %r) with message: %s", self.issue_id(), result, message)
        self._result = result
        self._with_modify("close the CL", lambda: self._abandon(message))

    def switch_to_dry_run(self) -> None:
        def _switch() -> None:
            self._set_dry_run("Mode was changed to dry run")
            self._issue.is_dry_run = True

        self._with_modify("switch the CL to dry run", _switch)

    def switch_to_normal(self) -> None:
        def _switch() -> None:
            self._set_normal("Mode was changed to normal")
            self._issue.is_dry_run = False

        self._with_modify("switch the CL out of dry run", _switch)

    def retry_cq(self) -> None:
        def _retry() -> None:
            self._retry_cq()
            self._issue.is_dry_run = False

        self._with_modify("retry the CQ", _retry)

    def retry_dry_run(self) -> None:
        def _retry() -> None:
            self._retry_dry_run()
            self._issue.is_dry_run = True

        self._with_modify("retry the CQ (dry run)", _retry)

    # ------------------------------------------------------------------ #
    # Accessors over the last reconciled state                            #
    # ------------------------------------------------------------------ #

    def is_closed(self) -> bool:
        return self._issue.closed

    def is_finished(self) -> bool:
        # A closed dry run never reports cq_finished on Gerrit; it is still done.
        return self._issue.cq_finished or self._issue.closed

    def is_success(self) -> bool:
        return self._issue.cq_success

    def is_dry_run(self) -> bool:
        return self._issue.is_dry_run

    def is_dry_run_finished(self) -> bool:
        return self._issue.dry_run_finished

    def is_dry_run_success(self) -> bool:
        return self._issue.dry_run_success

    def rolling_to(self) -> Revision:
        return self._rolling_to

    def issue_id(self) -> str:
        return str(self._issue.issue)

    def issue_url(self) -> str:
        return self._issue_url

    def issue(self) -> RollIssue:
        """A copy of the last reconciled record."""
        return copy.deepcopy(self._issue)

    def snapshot(self) -> RollSnapshot:
        i = self._issue
        return RollSnapshot(
            issue=i.issue,
            rolling_to=self._rolling_to.id,
            is_dry_run=i.is_dry_run,
            closed=i.closed,
            committed=i.committed,
            cq_finished=i.cq_finished,
            cq_success=i.cq_success,
            dry_run_finished=i.dry_run_finished,
            dry_run_success=i.dry_run_success,
        )


class CodeReview(ABC):
    """Factory for RollCLs on one review system, chosen once from config."""

    @property
    @abstractmethod
    def issue_url_base(self) -> str: ...

    @property
    def full_history_url(self) -> str:
        return ""

    @abstractmethod
    def retrieve_roll(self, issue: RollIssue, recent: RecentRolls, rolling_to: Revision) -> RollCL:
        """Wrap an existing issue and reconcile it once."""
