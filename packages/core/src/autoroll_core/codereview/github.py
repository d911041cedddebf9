"""GitHub review-system support: PyGithub client wrapper and GitHubRoll.

GitHub has no commit queue. A roll PR carries a label saying whether it is a
real roll or a dry run, the repository's checks run on it, and the roller
itself merges the PR through the API once every expected check has passed.
Reconciling a GitHub roll can therefore mutate the PR: close it when it can
no longer merge or a check failed, or merge it when everything is green.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import requests
from github import Github, GithubException

from autoroll_core.codereview.base import CodeReview, RollCL
from autoroll_core.errors import MergeMethodError, ReviewSystemError
from autoroll_store.models import (
    TRYBOT_CATEGORY_CQ,
    TRYBOT_RESULT_FAILURE,
    TRYBOT_RESULT_SUCCESS,
    TRYBOT_STATUS_COMPLETED,
    TRYBOT_STATUS_STARTED,
    TryResult,
)

if TYPE_CHECKING:
    from autoroll_core.recent_rolls import RecentRolls
    from autoroll_core.revision import Revision
    from autoroll_store.models import RollIssue

logger = logging.getLogger(__name__)

COMMIT_LABEL = "autoroller: commit"
DRYRUN_LABEL = "autoroller: dryrun"

MERGE_METHOD_SQUASH = "squash"
MERGE_METHOD_REBASE = "rebase"
MERGE_METHODS = (MERGE_METHOD_SQUASH, MERGE_METHOD_REBASE)

MERGEABLE_STATE_DIRTY = "dirty"
MERGEABLE_STATE_CLEAN = "clean"
MERGEABLE_STATE_UNSTABLE = "unstable"

CHECK_STATE_PENDING = "pending"
CHECK_STATE_ERROR = "error"
CHECK_STATE_FAILURE = "failure"
CHECK_STATE_CANCELLED = "cancelled"
CHECK_STATE_TIMED_OUT = "timed_out"
CHECK_STATE_ACTION_REQUIRED = "action_required"
CHECK_STATE_SUCCESS = "success"
CHECK_STATE_NEUTRAL = "neutral"

MERGE_METHOD_TIMEOUT = 10


@dataclass
class Check:
    """A check run or commit status, flattened to one state string."""

    id: int
    name: str
    state: str
    started_at: str = ""
    html_url: str = ""


def _iso(dt: datetime | None) -> str:
    if dt is None:
        return ""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _check_run_state(run) -> str:
    if run.status != "completed":
        return CHECK_STATE_PENDING
    conclusion = run.conclusion or CHECK_STATE_PENDING
    if conclusion == "skipped":
        return CHECK_STATE_NEUTRAL
    if conclusion == "stale":
        return CHECK_STATE_PENDING
    return conclusion


class GitHubClient:
    """The handful of GitHub operations a roller needs, on one repository."""

    def __init__(self, repo_full_name: str, token: str | None, gh: Github | None = None):
        self.repo_full_name = repo_full_name
        self._gh = gh or Github(token)
        self._repo = None

    @property
    def repo(self):
        if self._repo is None:
            self._repo = self.call(f"get repository {self.repo_full_name}", self._gh.get_repo, self.repo_full_name)
        return self._repo

    @staticmethod
    def call(what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except GithubException as e:
            raise ReviewSystemError(f"Failed to {what}: {e.data or e}", status_code=e.status) from e
        except requests.RequestException as e:
            raise ReviewSystemError(f"Failed to {what}: {e}") from e

    def get_pull_request(self, number: int):
        return self.call(f"get pull request {number}", self.repo.get_pull, number)

    def get_description(self, number: int) -> str:
        return self.get_pull_request(number).body or ""

    def get_checks(self, sha: str) -> list[Check]:
        """Return check runs and legacy commit statuses for a commit."""
        commit = self.call(f"get commit {sha}", self.repo.get_commit, sha)
        checks = [
            Check(
                id=run.id,
                name=run.name,
                state=_check_run_state(run),
                started_at=_iso(run.started_at),
                html_url=run.html_url or "",
            )
            for run in self.call(f"list check runs for {sha}", commit.get_check_runs)
        ]
        combined = self.call(f"get combined status for {sha}", commit.get_combined_status)
        checks.extend(
            Check(
                id=status.id,
                name=status.context,
                state=status.state,
                started_at=_iso(status.created_at),
                html_url=status.target_url or "",
            )
            for status in combined.statuses
        )
        return checks

    def add_comment(self, number: int, message: str) -> None:
        issue = self.call(f"get issue {number}", self.repo.get_issue, number)
        self.call(f"comment on {number}", issue.create_comment, message)

    def close_pull_request(self, number: int) -> None:
        pr = self.get_pull_request(number)
        self.call(f"close pull request {number}", pr.edit, state="closed")

    def merge_pull_request(self, number: int, commit_message: str, merge_method: str) -> None:
        if merge_method not in MERGE_METHODS:
            raise MergeMethodError(f"Unrecognized merge method: {merge_method}")
        pr = self.get_pull_request(number)
        status = self.call(
            f"merge pull request {number}", pr.merge, commit_message=commit_message, merge_method=merge_method
        )
        if not status.merged:
            raise ReviewSystemError(f"Pull request {number} was not merged: {status.message}")

    def add_label(self, number: int, label: str) -> None:
        issue = self.call(f"get issue {number}", self.repo.get_issue, number)
        self.call(f"label {number}", issue.add_to_labels, label)

    def replace_label(self, number: int, old: str, new: str) -> None:
        issue = self.call(f"get issue {number}", self.repo.get_issue, number)
        labels = [label.name for label in issue.labels if label.name != old]
        if new not in labels:
            labels.append(new)
        self.call(f"relabel {number}", issue.set_labels, *labels)

    def create_pull_request(self, base: str, head: str, title: str, body: str):
        return self.call(
            f"create pull request {head} -> {base}", self.repo.create_pull, base=base, head=head, title=title, body=body
        )


def fetch_merge_method(
    url: str, session: requests.Session | None = None, timeout: int = MERGE_METHOD_TIMEOUT
) -> str:
    """Return the merge method to use, from a plain-text override URL if one is configured.

    Any failure (network error, timeout, non-2xx or an unknown value) raises
    MergeMethodError; the caller must not merge.
    """
    if not url:
        return MERGE_METHOD_SQUASH
    session = session or requests.Session()
    try:
        response = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise MergeMethodError(f"Could not GET from {url}: {e}") from e
    if response.status_code // 100 != 2:
        raise MergeMethodError(f"GET {url} returned {response.status_code}")
    method = response.text.rstrip("\n").strip()
    if method not in MERGE_METHODS:
        raise MergeMethodError(f"Unrecognized merge method: {method!r}")
    return method


def try_results_from_checks(checks: list[Check], checks_num: int, wait_for: list[str]) -> list[TryResult]:
    results = []
    for check in checks:
        if not check.id:
            continue
        status, result = TRYBOT_STATUS_STARTED, ""
        if check.state in (CHECK_STATE_ERROR, CHECK_STATE_FAILURE):
            if check.name in wait_for:
                logger.info("%s has state %s. Waiting for it to succeed.", check.name, check.state)
            else:
                status, result = TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_FAILURE
        elif check.state in (CHECK_STATE_CANCELLED, CHECK_STATE_TIMED_OUT, CHECK_STATE_ACTION_REQUIRED):
            status, result = TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_FAILURE
        elif check.state in (CHECK_STATE_SUCCESS, CHECK_STATE_NEUTRAL):
            # Skipped checks show up as neutral, so count them as passing.
            status, result = TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_SUCCESS
        results.append(
            TryResult(
                builder=f"{check.name} #{check.id}",
                category=TRYBOT_CATEGORY_CQ,
                status=status,
                result=result,
                url=check.html_url,
                created=check.started_at,
            )
        )
    if len(results) != checks_num:
        logger.warning("Found %d checks but expected %d.", len(results), checks_num)
        # Pad so that a passing subset is never read as "all passed".
        now = datetime.now(timezone.utc).isoformat()
        for i in range(len(results), checks_num):
            results.append(
                TryResult(
                    builder=f"Missing check #{i + 1}",
                    category=TRYBOT_CATEGORY_CQ,
                    status=TRYBOT_STATUS_STARTED,
                    created=now,
                )
            )
    return results


def apply_pull_request(issue: RollIssue, pr) -> None:
    """Rewrite the derived fields of issue from a PyGithub PullRequest."""
    if issue.issue != pr.number:
        raise ReviewSystemError(f"Pull request number {pr.number} differs from existing issue number {issue.issue}!")
    closed = pr.state == "closed"
    merged = bool(pr.merged)
    issue.cq_finished = closed or merged
    issue.cq_success = merged
    if issue.is_dry_run:
        issue.dry_run_finished = issue.all_trybots_finished() or closed or merged
        issue.dry_run_success = (issue.dry_run_finished and issue.all_trybots_succeeded()) or merged
    else:
        issue.dry_run_finished = False
        issue.dry_run_success = False
    if not pr.commits:
        raise ReviewSystemError(f"Pull request {pr.number} has no commits!")
    issue.patchsets = list(range(1, pr.commits + 1))
    issue.closed = closed or merged
    issue.committed = merged
    issue.created = _iso(pr.created_at)
    issue.modified = _iso(pr.updated_at)
    issue.subject = pr.title or ""
    issue.result = issue.compute_result()


@dataclass
class GitHubConfig:
    repo_owner: str
    repo_name: str
    checks_num: int = 0
    checks_wait_for: list[str] = field(default_factory=list)
    merge_method_url: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.repo_owner}/{self.repo_name}"


class GitHubRoll(RollCL):
    def __init__(
        self,
        issue: RollIssue,
        client: GitHubClient,
        config: GitHubConfig,
        recent: RecentRolls,
        rolling_to: Revision,
        issue_url_base: str,
        session: requests.Session | None = None,
    ):
        super().__init__(issue, recent, rolling_to, issue_url_base)
        self._client = client
        self._config = config
        self._session = session

    def _reconcile(self, issue: RollIssue) -> None:
        pr = self._client.get_pull_request(issue.issue)
        checks = self._client.get_checks(pr.head.sha)
        issue.try_results = try_results_from_checks(checks, self._config.checks_num, self._config.checks_wait_for)
        apply_pull_request(issue, pr)

        checks_num = self._config.checks_num
        modified = False
        if pr.state != "closed" and pr.mergeable_state == MERGEABLE_STATE_DIRTY:
            self._client.add_comment(issue.issue, "PullRequest is no longer mergeable. Closing it.")
            self._client.close_pull_request(issue.issue)
            modified = True
        elif len(issue.try_results) >= checks_num and issue.at_least_one_trybot_failure() and pr.state != "closed":
            failed = [t.url for t in issue.try_results if t.finished() and not t.succeeded()]
            self._client.add_comment(issue.issue, f"Trybots failed. These were the failed builds: {' , '.join(failed)}")
            self._client.close_pull_request(issue.issue)
            modified = True
        elif (
            not issue.is_dry_run
            and len(issue.try_results) >= checks_num
            and issue.all_trybots_succeeded()
            and pr.state != "closed"
            and pr.mergeable_state in (MERGEABLE_STATE_CLEAN, MERGEABLE_STATE_UNSTABLE)
        ):
            # "unstable" is accepted because GitHub can report a completed
            # check as pending; every check was verified above.
            merge_method = fetch_merge_method(self._config.merge_method_url, self._session)
            self._client.add_comment(issue.issue, "Auto-roller completed checks. About to merge.")
            description = self._client.get_description(issue.issue)
            self._client.merge_pull_request(issue.issue, description, merge_method)
            modified = True
            if len(checks) != checks_num:
                logger.error(
                    "PR %d landed with %d checks but %d were expected. Check the roller's checks_num.",
                    issue.issue,
                    len(checks),
                    checks_num,
                )

        if modified:
            apply_pull_request(issue, self._client.get_pull_request(issue.issue))

    def _post_comment(self, message: str) -> None:
        self._client.add_comment(self._issue.issue, message)

    def _abandon(self, message: str) -> None:
        self._client.add_comment(self._issue.issue, message)
        self._client.close_pull_request(self._issue.issue)

    def _set_dry_run(self, message: str) -> None:
        self._client.replace_label(self._issue.issue, COMMIT_LABEL, DRYRUN_LABEL)

    def _set_normal(self, message: str) -> None:
        self._client.replace_label(self._issue.issue, DRYRUN_LABEL, COMMIT_LABEL)

    # TODO: retrigger failed checks through the check-suite rerequest API.
    def _retry_cq(self) -> None:
        logger.info("GitHub has no way to retry the CQ on %d; waiting for checks.", self._issue.issue)

    def _retry_dry_run(self) -> None:
        logger.info("GitHub has no way to retry the dry run on %d; waiting for checks.", self._issue.issue)


class GitHubCodeReview(CodeReview):
    def __init__(self, client: GitHubClient, config: GitHubConfig, session: requests.Session | None = None):
        self.client = client
        self.config = config
        self.session = session

    @property
    def issue_url_base(self) -> str:
        return f"https://github.com/{self.config.full_name}/pull/"

    @property
    def full_history_url(self) -> str:
        label = COMMIT_LABEL.replace(" ", "+")
        return f"https://github.com/{self.config.full_name}/pulls?q=is%3Apr+label%3A%22{label}%22"

    def retrieve_roll(self, issue: RollIssue, recent: RecentRolls, rolling_to: Revision) -> GitHubRoll:
        roll = GitHubRoll(issue, self.client, self.config, recent, rolling_to, self.issue_url_base, self.session)
        roll.load()
        return roll
