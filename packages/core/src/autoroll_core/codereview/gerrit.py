"""Gerrit review-system support: REST client, label config presets and GerritRoll.

Gerrit answers every JSON request with the ``)]}'`` XSSI guard prefix, which
must be stripped before decoding. Authenticated requests go to the ``/a/``
path prefix with HTTP basic auth; credentials come from explicit settings or,
failing that, from ``~/.netrc``.
"""

from __future__ import annotations

import json
import logging
import netrc
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlparse

import requests

from autoroll_core.codereview.base import CodeReview, RollCL
from autoroll_core.errors import ReviewSystemError

if TYPE_CHECKING:
    from autoroll_core.codereview.buildbucket import BuildbucketClient
    from autoroll_core.recent_rolls import RecentRolls
    from autoroll_core.revision import Revision
    from autoroll_store.models import RollIssue

logger = logging.getLogger(__name__)

XSSI_PREFIX = ")]}'"
DEFAULT_TIMEOUT = 60

CHANGE_STATUS_NEW = "NEW"
CHANGE_STATUS_MERGED = "MERGED"
CHANGE_STATUS_ABANDONED = "ABANDONED"

# Patchset kinds which do not change the diff; tryjobs are not re-run for them.
TRIVIAL_PATCHSET_KINDS = ("TRIVIAL_REBASE", "NO_CHANGE", "NO_CODE_CHANGE", "MERGE_FIRST_PARENT_UPDATE")


def gerrit_time_to_iso(value: str) -> str:
    """Convert a Gerrit timestamp ("2006-01-02 15:04:05.000000000", UTC) to ISO-8601."""
    if not value:
        return ""
    seconds, _, frac = value.partition(".")
    try:
        dt = datetime.strptime(seconds, "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError as e:
        raise ReviewSystemError(f"Unparseable Gerrit timestamp {value!r}") from e
    if frac:
        dt = dt.replace(microsecond=int(frac[:6].ljust(6, "0")))
    return dt.isoformat()


@dataclass
class Patchset:
    number: int
    kind: str = "REWORK"
    created: str = ""

    @property
    def trivial(self) -> bool:
        return self.kind in TRIVIAL_PATCHSET_KINDS


@dataclass
class ChangeInfo:
    """The parts of a Gerrit ChangeInfo the roller reads."""

    issue: int
    status: str = CHANGE_STATUS_NEW
    subject: str = ""
    created: str = ""
    updated: str = ""
    project: str = ""
    patchsets: list[Patchset] = field(default_factory=list)
    # label name -> highest vote currently applied
    labels: dict[str, int] = field(default_factory=dict)

    @property
    def committed(self) -> bool:
        return self.status == CHANGE_STATUS_MERGED

    def is_closed(self) -> bool:
        return self.status in (CHANGE_STATUS_MERGED, CHANGE_STATUS_ABANDONED)

    def non_trivial_patchsets(self) -> list[Patchset]:
        return [p for p in self.patchsets if not p.trivial]

    def labels_match(self, want: dict[str, int]) -> bool:
        return all(self.labels.get(name, 0) == value for name, value in want.items())

    @classmethod
    def from_json(cls, d: dict) -> ChangeInfo:
        patchsets = sorted(
            (
                Patchset(number=rev.get("_number", 0), kind=rev.get("kind", "REWORK"), created=rev.get("created", ""))
                for rev in (d.get("revisions") or {}).values()
            ),
            key=lambda p: p.number,
        )
        labels = {}
        for name, entry in (d.get("labels") or {}).items():
            votes = [v.get("value", 0) for v in entry.get("all", []) if v.get("value") is not None]
            labels[name] = max(votes, key=abs) if votes else 0
        return cls(
            issue=d.get("_number", 0),
            status=d.get("status", CHANGE_STATUS_NEW),
            subject=d.get("subject", ""),
            created=gerrit_time_to_iso(d.get("created", "")),
            updated=gerrit_time_to_iso(d.get("updated", "")),
            project=d.get("project", ""),
            patchsets=patchsets,
            labels=labels,
        )


@dataclass(frozen=True)
class GerritConfig:
    """How one Gerrit deployment expresses CQ and dry-run state in labels."""

    self_approve_labels: dict = field(default_factory=dict)
    set_cq_labels: dict = field(default_factory=dict)
    set_dry_run_labels: dict = field(default_factory=dict)
    no_cq_labels: dict = field(default_factory=dict)
    cq_active_labels: dict = field(default_factory=dict)
    cq_failure_labels: dict = field(default_factory=dict)
    dry_run_active_labels: dict = field(default_factory=dict)
    dry_run_success_labels: dict = field(default_factory=dict)
    dry_run_failure_labels: dict = field(default_factory=dict)
    dry_run_uses_tryjob_results: bool = False
    can_query_trybots: bool = False

    def cq_running(self, ci: ChangeInfo) -> bool:
        if ci.is_closed():
            return False
        if self.cq_failure_labels and ci.labels_match(self.cq_failure_labels):
            return False
        return bool(self.cq_active_labels) and ci.labels_match(self.cq_active_labels)

    def cq_success(self, ci: ChangeInfo) -> bool:
        return ci.committed

    def dry_run_running(self, ci: ChangeInfo) -> bool:
        if ci.is_closed():
            return False
        if self.dry_run_success_labels and ci.labels_match(self.dry_run_success_labels):
            return False
        if self.dry_run_failure_labels and ci.labels_match(self.dry_run_failure_labels):
            return False
        return bool(self.dry_run_active_labels) and ci.labels_match(self.dry_run_active_labels)

    def dry_run_success(self, ci: ChangeInfo, tryjobs_passed: bool) -> bool:
        if ci.is_closed():
            return ci.committed
        if self.dry_run_running(ci):
            return False
        if self.dry_run_failure_labels and ci.labels_match(self.dry_run_failure_labels):
            return False
        if self.dry_run_success_labels and ci.labels_match(self.dry_run_success_labels):
            return True
        return tryjobs_passed


GERRIT_CONFIGS = {
    "chromium": GerritConfig(
        self_approve_labels={"Code-Review": 1},
        set_cq_labels={"Commit-Queue": 2},
        set_dry_run_labels={"Commit-Queue": 1},
        no_cq_labels={"Commit-Queue": 0},
        cq_active_labels={"Commit-Queue": 2},
        dry_run_active_labels={"Commit-Queue": 1},
        dry_run_uses_tryjob_results=True,
        can_query_trybots=True,
    ),
    "chromium-no-cr-label": GerritConfig(
        set_cq_labels={"Commit-Queue": 2},
        set_dry_run_labels={"Commit-Queue": 1},
        no_cq_labels={"Commit-Queue": 0},
        cq_active_labels={"Commit-Queue": 2},
        dry_run_active_labels={"Commit-Queue": 1},
        dry_run_uses_tryjob_results=True,
        can_query_trybots=True,
    ),
    "android": GerritConfig(
        self_approve_labels={"Code-Review": 2},
        set_cq_labels={"Autosubmit": 1, "Presubmit-Ready": 1},
        set_dry_run_labels={"Autosubmit": 0, "Presubmit-Ready": 1},
        no_cq_labels={"Autosubmit": 0, "Presubmit-Ready": 0},
        cq_active_labels={"Autosubmit": 1, "Presubmit-Ready": 1},
        cq_failure_labels={"Presubmit-Verified": -1},
        dry_run_active_labels={"Presubmit-Ready": 1},
        dry_run_success_labels={"Presubmit-Verified": 1},
        dry_run_failure_labels={"Presubmit-Verified": -1},
    ),
}


def get_gerrit_config(name: str) -> GerritConfig:
    try:
        return GERRIT_CONFIGS[name]
    except KeyError:
        raise ValueError(f"Unknown Gerrit config {name!r}; expected one of {', '.join(GERRIT_CONFIGS)}")


class GerritClient:
    """Thin JSON-over-HTTPS client for the Gerrit change endpoints the roller uses."""

    def __init__(
        self,
        url: str,
        config: GerritConfig,
        user: str | None = None,
        password: str | None = None,
        timeout: int = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        self.url = url.rstrip("/")
        self.config = config
        self.timeout = timeout
        self.session = session or requests.Session()
        if not (user and password):
            user, password = self._netrc_credentials()
        self._auth = (user, password) if user and password else None

    def _netrc_credentials(self) -> tuple[str | None, str | None]:
        host = urlparse(self.url).hostname or ""
        try:
            entry = netrc.netrc().authenticators(host)
        except (FileNotFoundError, netrc.NetrcParseError) as e:
            logger.debug("No usable .netrc for %s: %s", host, e)
            return None, None
        if not entry:
            return None, None
        return entry[0], entry[2]

    def _request(self, method: str, path: str, body: dict | None = None) -> dict | list | None:
        if not path.startswith("/"):
            path = "/" + path
        if self._auth and not path.startswith("/a/"):
            path = "/a" + path
        url = self.url + path
        try:
            response = self.session.request(method, url, json=body, auth=self._auth, timeout=self.timeout)
        except requests.RequestException as e:
            raise ReviewSystemError(f"Gerrit request to {url} failed: {e}") from e
        if response.status_code // 100 != 2:
            raise ReviewSystemError(
                f"Gerrit request to {url} returned {response.status_code}: {response.text[:500]}",
                status_code=response.status_code,
            )
        text = response.text
        if not text:
            return None
        if text.startswith(XSSI_PREFIX):
            text = text[len(XSSI_PREFIX) :]
        try:
            return json.loads(text)
        except ValueError as e:
            raise ReviewSystemError(f"Mal-formed json response from {url}: {e}") from e

    def get_issue_properties(self, issue: int) -> ChangeInfo:
        data = self._request("GET", f"/changes/{issue}/detail?o=ALL_REVISIONS&o=DETAILED_LABELS")
        if not isinstance(data, dict):
            raise ReviewSystemError(f"Unexpected response for change {issue}.")
        return ChangeInfo.from_json(data)

    def set_review(self, ci: ChangeInfo, message: str, labels: dict[str, int] | None = None) -> None:
        body: dict = {"message": message}
        if labels:
            body["labels"] = labels
        self._request("POST", f"/changes/{ci.issue}/revisions/current/review", body)

    def add_comment(self, ci: ChangeInfo, message: str) -> None:
        self.set_review(ci, message)

    def abandon(self, ci: ChangeInfo, message: str) -> None:
        self._request("POST", f"/changes/{ci.issue}/abandon", {"message": message})

    def send_to_cq(self, ci: ChangeInfo, message: str) -> None:
        self.set_review(ci, message, {**self.config.self_approve_labels, **self.config.set_cq_labels})

    def send_to_dry_run(self, ci: ChangeInfo, message: str) -> None:
        self.set_review(ci, message, {**self.config.self_approve_labels, **self.config.set_dry_run_labels})


def reconcile_from_change_info(issue: RollIssue, ci: ChangeInfo, config: GerritConfig) -> None:
    """Rewrite the derived fields of issue from a Gerrit ChangeInfo."""
    if issue.issue != ci.issue:
        raise ReviewSystemError(f"CL ID {ci.issue} differs from existing issue number {issue.issue}!")
    tryjobs_passed = config.dry_run_uses_tryjob_results and issue.all_trybots_succeeded()
    issue.cq_finished = not issue.is_dry_run and not config.cq_running(ci)
    issue.cq_success = not issue.is_dry_run and config.cq_success(ci)
    issue.dry_run_finished = issue.is_dry_run and not config.dry_run_running(ci)
    issue.dry_run_success = issue.is_dry_run and config.dry_run_success(ci, tryjobs_passed)
    issue.closed = ci.is_closed()
    issue.committed = ci.committed
    issue.created = ci.created
    issue.modified = ci.updated
    issue.patchsets = [p.number for p in ci.patchsets]
    issue.subject = ci.subject
    issue.result = issue.compute_result()


class GerritRoll(RollCL):
    def __init__(
        self,
        issue: RollIssue,
        client: GerritClient,
        recent: RecentRolls,
        rolling_to: Revision,
        issue_url_base: str,
        buildbucket: BuildbucketClient | None = None,
    ):
        super().__init__(issue, recent, rolling_to, issue_url_base)
        self._client = client
        self._buildbucket = buildbucket
        self._ci: ChangeInfo | None = None

    def _reconcile(self, issue: RollIssue) -> None:
        ci = self._client.get_issue_properties(issue.issue)
        if not ci.patchsets:
            raise ReviewSystemError(f"Issue {issue.issue} has no patchsets!")
        if self._client.config.can_query_trybots and self._buildbucket is not None:
            # Use try results from the most recent non-trivial patchset.
            nontrivial = ci.non_trivial_patchsets()
            if not nontrivial:
                kinds = ", ".join(f"{p.number}:{p.kind}" for p in ci.patchsets)
                raise ReviewSystemError(f"No non-trivial patchsets for {issue.issue}; patchsets: {kinds}")
            issue.try_results = self._buildbucket.get_trybot_results(
                self._client.url, issue.issue, nontrivial[-1].number
            )
        reconcile_from_change_info(issue, ci, self._client.config)
        self._ci = ci

    def _change(self) -> ChangeInfo:
        return self._ci or ChangeInfo(issue=self._issue.issue)

    def _post_comment(self, message: str) -> None:
        self._client.add_comment(self._change(), message)

    def _abandon(self, message: str) -> None:
        self._client.abandon(self._change(), message)

    def _set_dry_run(self, message: str) -> None:
        self._client.send_to_dry_run(self._change(), message)

    def _set_normal(self, message: str) -> None:
        self._client.send_to_cq(self._change(), message)

    def _retry_cq(self) -> None:
        self._client.send_to_cq(self._change(), "CQ failed but there are no new commits. Retrying...")

    def _retry_dry_run(self) -> None:
        self._client.send_to_dry_run(self._change(), "Dry run failed but there are no new commits. Retrying...")


class GerritCodeReview(CodeReview):
    def __init__(self, client: GerritClient, buildbucket: BuildbucketClient | None = None):
        self.client = client
        self.buildbucket = buildbucket

    @property
    def issue_url_base(self) -> str:
        return self.client.url + "/c/"

    @property
    def full_history_url(self) -> str:
        return self.client.url + "/q/status:closed+owner:self"

    def retrieve_roll(self, issue: RollIssue, recent: RecentRolls, rolling_to: Revision) -> GerritRoll:
        roll = GerritRoll(issue, self.client, recent, rolling_to, self.issue_url_base, self.buildbucket)
        roll.load()
        return roll
