"""Roll history data models.

Decoupled from autoroll_core so the store layer can be used independently
and has no knowledge of review systems. Timestamps are ISO-8601 UTC strings,
which keeps every backend's serialisation trivial.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

ROLL_RESULT_IN_PROGRESS = "in-progress"
ROLL_RESULT_DRY_RUN_IN_PROGRESS = "dry-run-in-progress"
ROLL_RESULT_SUCCESS = "success"
ROLL_RESULT_FAILURE = "failure"
ROLL_RESULT_DRY_RUN_SUCCESS = "dry-run-success"
ROLL_RESULT_DRY_RUN_FAILURE = "dry-run-failure"

ROLL_RESULTS = (
    ROLL_RESULT_IN_PROGRESS,
    ROLL_RESULT_DRY_RUN_IN_PROGRESS,
    ROLL_RESULT_SUCCESS,
    ROLL_RESULT_FAILURE,
    ROLL_RESULT_DRY_RUN_SUCCESS,
    ROLL_RESULT_DRY_RUN_FAILURE,
)
SUCCESS_RESULTS = (ROLL_RESULT_SUCCESS, ROLL_RESULT_DRY_RUN_SUCCESS)
FAILURE_RESULTS = (ROLL_RESULT_FAILURE, ROLL_RESULT_DRY_RUN_FAILURE)
IN_PROGRESS_RESULTS = (ROLL_RESULT_IN_PROGRESS, ROLL_RESULT_DRY_RUN_IN_PROGRESS)

TRYBOT_CATEGORY_CQ = "cq"

TRYBOT_STATUS_SCHEDULED = "scheduled"
TRYBOT_STATUS_STARTED = "started"
TRYBOT_STATUS_COMPLETED = "completed"

TRYBOT_RESULT_SUCCESS = "success"
TRYBOT_RESULT_FAILURE = "failure"

MODE_RUNNING = "running"
MODE_DRY_RUN = "dry-run"
MODE_STOPPED = "stopped"
MODE_OFFLINE = "offline"
VALID_MODES = (MODE_RUNNING, MODE_DRY_RUN, MODE_STOPPED, MODE_OFFLINE)

MANUAL_STATUS_PENDING = "pending"
MANUAL_STATUS_STARTED = "started"
MANUAL_STATUS_COMPLETE = "complete"

MANUAL_RESULT_UNKNOWN = ""
MANUAL_RESULT_SUCCESS = "success"
MANUAL_RESULT_FAILURE = "failure"


class RollValidationError(ValueError):
    """Raised when a RollIssue's flags contradict each other."""


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TryResult:
    """One tryjob or check run attached to a roll CL."""

    builder: str
    category: str = TRYBOT_CATEGORY_CQ
    status: str = TRYBOT_STATUS_SCHEDULED
    result: str = ""
    url: str = ""
    created: str = ""

    def finished(self) -> bool:
        return self.status == TRYBOT_STATUS_COMPLETED

    def succeeded(self) -> bool:
        return self.finished() and self.result == TRYBOT_RESULT_SUCCESS

    @classmethod
    def from_dict(cls, d: dict) -> TryResult:
        return cls(
            builder=d.get("builder", ""),
            category=d.get("category", TRYBOT_CATEGORY_CQ),
            status=d.get("status", TRYBOT_STATUS_SCHEDULED),
            result=d.get("result", ""),
            url=d.get("url", ""),
            created=d.get("created", ""),
        )


@dataclass
class RollComment:
    """A human comment attached to a roll record (not posted to the CL)."""

    id: str
    message: str
    user: str
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, d: dict) -> RollComment:
        return cls(
            id=d.get("id", ""),
            message=d.get("message", ""),
            user=d.get("user", ""),
            timestamp=d.get("timestamp", ""),
        )


@dataclass
class RollIssue:
    """Mutable record of one roll attempt.

    The review-system adapters own the instance for the lifetime of the CL
    and rewrite every derived flag on each reconciliation.
    """

    issue: int
    roller: str = ""
    is_dry_run: bool = False
    rolling_from: str = ""
    rolling_to: str = ""
    created: str = ""
    modified: str = ""
    closed: bool = False
    committed: bool = False
    cq_finished: bool = False
    cq_success: bool = False
    dry_run_finished: bool = False
    dry_run_success: bool = False
    patchsets: list[int] = field(default_factory=list)
    subject: str = ""
    result: str = ""
    try_results: list[TryResult] = field(default_factory=list)
    comments: list[RollComment] = field(default_factory=list)

    def compute_result(self) -> str:
        if self.is_dry_run:
            if self.dry_run_finished:
                return ROLL_RESULT_DRY_RUN_SUCCESS if self.dry_run_success else ROLL_RESULT_DRY_RUN_FAILURE
            return ROLL_RESULT_DRY_RUN_IN_PROGRESS
        if self.cq_finished:
            return ROLL_RESULT_SUCCESS if self.cq_success else ROLL_RESULT_FAILURE
        return ROLL_RESULT_IN_PROGRESS

    def validate(self) -> None:
        if not self.issue:
            raise RollValidationError("Issue is required.")
        if self.committed and not self.closed:
            raise RollValidationError(f"Issue {self.issue} cannot be committed without being closed.")
        if self.cq_success and not self.cq_finished:
            raise RollValidationError(f"Issue {self.issue} cannot have CQ success without CQ finished.")
        if self.dry_run_success and not self.dry_run_finished:
            raise RollValidationError(f"Issue {self.issue} cannot have dry run success without dry run finished.")
        if self.result and self.result not in ROLL_RESULTS:
            raise RollValidationError(f"Issue {self.issue} has unknown result {self.result!r}.")
        if self.closed and self.result in IN_PROGRESS_RESULTS:
            raise RollValidationError(f"Issue {self.issue} cannot have a result of {self.result!r} if it is closed.")

    def all_trybots_finished(self) -> bool:
        return all(t.finished() for t in self.try_results)

    def all_trybots_succeeded(self) -> bool:
        return all(t.succeeded() for t in self.try_results)

    def at_least_one_trybot_failure(self) -> bool:
        return any(t.finished() and not t.succeeded() for t in self.try_results)

    def failed(self) -> bool:
        return self.result in FAILURE_RESULTS

    def succeeded(self) -> bool:
        return self.result in SUCCESS_RESULTS

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> RollIssue:
        return cls(
            issue=d.get("issue", 0),
            roller=d.get("roller", ""),
            is_dry_run=d.get("is_dry_run", False),
            rolling_from=d.get("rolling_from", ""),
            rolling_to=d.get("rolling_to", ""),
            created=d.get("created", ""),
            modified=d.get("modified", ""),
            closed=d.get("closed", False),
            committed=d.get("committed", False),
            cq_finished=d.get("cq_finished", False),
            cq_success=d.get("cq_success", False),
            dry_run_finished=d.get("dry_run_finished", False),
            dry_run_success=d.get("dry_run_success", False),
            patchsets=list(d.get("patchsets", [])),
            subject=d.get("subject", ""),
            result=d.get("result", ""),
            try_results=[TryResult.from_dict(t) for t in d.get("try_results", [])],
            comments=[RollComment.from_dict(c) for c in d.get("comments", [])],
        )


@dataclass
class ModeChange:
    roller: str
    mode: str
    user: str
    message: str
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, d: dict) -> ModeChange:
        return cls(
            roller=d.get("roller", ""),
            mode=d.get("mode", ""),
            user=d.get("user", ""),
            message=d.get("message", ""),
            timestamp=d.get("timestamp", ""),
        )


@dataclass
class StrategyChange:
    roller: str
    strategy: str
    user: str
    message: str
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, d: dict) -> StrategyChange:
        return cls(
            roller=d.get("roller", ""),
            strategy=d.get("strategy", ""),
            user=d.get("user", ""),
            message=d.get("message", ""),
            timestamp=d.get("timestamp", ""),
        )


@dataclass
class ManualRollRequest:
    """A request, made by a human, to roll to a specific revision."""

    id: str
    roller: str
    revision: str
    requester: str
    status: str = MANUAL_STATUS_PENDING
    result: str = MANUAL_RESULT_UNKNOWN
    url: str = ""
    timestamp: str = field(default_factory=utcnow_iso)

    @classmethod
    def from_dict(cls, d: dict) -> ManualRollRequest:
        return cls(
            id=d.get("id", ""),
            roller=d.get("roller", ""),
            revision=d.get("revision", ""),
            requester=d.get("requester", ""),
            status=d.get("status", MANUAL_STATUS_PENDING),
            result=d.get("result", MANUAL_RESULT_UNKNOWN),
            url=d.get("url", ""),
            timestamp=d.get("timestamp", ""),
        )


@dataclass
class AutoRollStatus:
    """Externally-visible snapshot of a roller, rewritten every tick."""

    roller: str
    mode: str = ""
    strategy: str = ""
    state: str = ""
    current_roll: RollIssue | None = None
    last_roll: RollIssue | None = None
    current_roll_rev: str = ""
    last_roll_rev: str = ""
    tip_rev: str = ""
    next_roll_rev: str = ""
    not_rolled_revs: list[dict] = field(default_factory=list)  # serialised Revisions
    num_not_rolled: int = 0
    num_failed_rolls: int = 0
    recent: list[RollIssue] = field(default_factory=list)
    throttled_until: int = 0  # unix seconds
    error: str = ""
    issue_url_base: str = ""
    full_history_url: str = ""
    valid_modes: list[str] = field(default_factory=lambda: list(VALID_MODES))
    valid_strategies: list[str] = field(default_factory=list)
    updated: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> AutoRollStatus:
        current = d.get("current_roll")
        last = d.get("last_roll")
        return cls(
            roller=d.get("roller", ""),
            mode=d.get("mode", ""),
            strategy=d.get("strategy", ""),
            state=d.get("state", ""),
            current_roll=RollIssue.from_dict(current) if current else None,
            last_roll=RollIssue.from_dict(last) if last else None,
            current_roll_rev=d.get("current_roll_rev", ""),
            last_roll_rev=d.get("last_roll_rev", ""),
            tip_rev=d.get("tip_rev", ""),
            next_roll_rev=d.get("next_roll_rev", ""),
            not_rolled_revs=list(d.get("not_rolled_revs", [])),
            num_not_rolled=d.get("num_not_rolled", 0),
            num_failed_rolls=d.get("num_failed_rolls", 0),
            recent=[RollIssue.from_dict(r) for r in d.get("recent", [])],
            throttled_until=d.get("throttled_until", 0),
            error=d.get("error", ""),
            issue_url_base=d.get("issue_url_base", ""),
            full_history_url=d.get("full_history_url", ""),
            valid_modes=list(d.get("valid_modes", VALID_MODES)),
            valid_strategies=list(d.get("valid_strategies", [])),
            updated=d.get("updated", ""),
        )
