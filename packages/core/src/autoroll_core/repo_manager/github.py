"""GitHubRepoManager: the parent pins the child by commit hash in a text file.

Everything goes through the GitHub API, so no checkout is needed: the pinned
hash is read from ``revision_file`` on the parent branch, not-rolled commits
come from the child's compare API, and a roll is a force-reset branch with
one commit rewriting the file plus a labelled pull request.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

import requests
from github import GithubException

from autoroll_core.codereview.github import COMMIT_LABEL, DRYRUN_LABEL, GitHubClient
from autoroll_core.commit_msg import build_commit_msg, split_commit_msg
from autoroll_core.errors import ReviewSystemError, TransientSyncError, UnknownRevisionError
from autoroll_core.repo_manager.base import RepoManager, RepoState
from autoroll_core.revision import Revision

if TYPE_CHECKING:
    from github import Github

logger = logging.getLogger(__name__)

DEFAULT_ROLL_BRANCH = "roll_branch"

# GitHub links "(#123)" to the repository the text lives in; qualify it.
_PULL_REQUEST_IN_LOG_RE = re.compile(r" \((#[0-9]+)\)$", re.MULTILINE)


class GitHubRepoManager(RepoManager):
    def __init__(
        self,
        gh: Github,
        parent_repo: str,
        child_repo: str,
        revision_file: str,
        child_name: str,
        parent_name: str,
        parent_branch: str = "main",
        child_branch: str = "main",
        roll_branch: str = DEFAULT_ROLL_BRANCH,
        server_url: str = "",
        commit_msg_template: str | None = None,
    ):
        self.parent = GitHubClient(parent_repo, None, gh=gh)
        self.child = GitHubClient(child_repo, None, gh=gh)
        self.revision_file = revision_file
        self.child_name = child_name
        self.parent_name = parent_name
        self.parent_branch = parent_branch
        self.child_branch = child_branch
        self.roll_branch = roll_branch
        self.server_url = server_url
        self.commit_msg_template = commit_msg_template

    def _child_call(self, what: str, fn, *args, **kwargs):
        # The child is only read; any failure here means "try again later".
        try:
            return fn(*args, **kwargs)
        except (GithubException, requests.RequestException) as e:
            raise TransientSyncError(f"Failed to {what} in {self.child.repo_full_name}: {e}") from e

    def _revision_from_commit(self, commit) -> Revision:
        git_commit = commit.commit
        message = git_commit.message or ""
        subject = message.split("\n", 1)[0]
        owner_repo = self.child.repo_full_name
        subject = _PULL_REQUEST_IN_LOG_RE.sub(rf" ({owner_repo}\1)", subject)
        author = git_commit.author.email if git_commit.author else ""
        timestamp = git_commit.author.date.isoformat() if git_commit.author and git_commit.author.date else ""
        return Revision(
            id=commit.sha,
            display_id=commit.sha[:12],
            description=subject,
            author=author or "",
            timestamp=timestamp,
            url=commit.html_url or "",
        )

    def get_revision(self, rev_id: str) -> Revision:
        try:
            commit = self.child.repo.get_commit(rev_id)
        except GithubException as e:
            if e.status in (404, 422):
                raise UnknownRevisionError(rev_id) from e
            raise TransientSyncError(f"Failed to get commit {rev_id}: {e}") from e
        except requests.RequestException as e:
            raise TransientSyncError(f"Failed to get commit {rev_id}: {e}") from e
        return self._revision_from_commit(commit)

    def _read_pinned_revision(self, ref: str) -> str:
        contents = self.parent.call(
            f"read {self.revision_file}", self.parent.repo.get_contents, self.revision_file, ref=ref
        )
        return contents.decoded_content.decode("utf-8").strip()

    def update(self) -> RepoState:
        last_hash = self._read_pinned_revision(self.parent_branch)
        last = self.get_revision(last_hash)
        branch = self._child_call(f"get branch {self.child_branch}", self.child.repo.get_branch, self.child_branch)
        tip = self._revision_from_commit(branch.commit)
        if tip.id == last.id:
            return RepoState(last_roll_rev=last, tip_rev=tip, not_rolled=[])
        comparison = self._child_call(f"compare {last.id}...{tip.id}", self.child.repo.compare, last.id, tip.id)
        if comparison.status not in ("ahead", "identical"):
            raise TransientSyncError(
                f"Invalid revision range {last.id}..{tip.id}: tip is {comparison.status} of the pinned revision"
            )
        not_rolled = [self._revision_from_commit(c) for c in reversed(list(comparison.commits))]
        return RepoState(last_roll_rev=last, tip_rev=tip, not_rolled=not_rolled)

    def create_new_roll(
        self,
        rolling_from: Revision,
        rolling_to: Revision,
        revisions: list[Revision],
        reviewers: list[str],
        cq_extra_trybots: list[str],
        dry_run: bool,
    ) -> int:
        logger.info("Creating a new GitHub roll %s..%s", rolling_from, rolling_to)
        repo = self.parent.repo
        base = self.parent.call(f"get branch {self.parent_branch}", repo.get_branch, self.parent_branch)
        base_sha = base.commit.sha

        # Start the roll branch fresh from the parent branch.
        try:
            ref = self.parent.call(f"look up {self.roll_branch}", repo.get_git_ref, f"heads/{self.roll_branch}")
        except ReviewSystemError as e:
            if e.status_code != 404:
                raise
            self.parent.call(
                f"create {self.roll_branch}", repo.create_git_ref, f"refs/heads/{self.roll_branch}", base_sha
            )
        else:
            self.parent.call(f"reset {self.roll_branch}", ref.edit, base_sha, force=True)

        msg = build_commit_msg(
            child_name=self.child_name,
            parent_name=self.parent_name,
            rolling_from=rolling_from,
            rolling_to=rolling_to,
            revisions=revisions,
            reviewers=reviewers,
            server_url=self.server_url,
            cq_extra_trybots=cq_extra_trybots,
            child_repo=f"https://github.com/{self.child.repo_full_name}",
            template=self.commit_msg_template,
        )
        title, body = split_commit_msg(msg)

        contents = self.parent.call(
            f"read {self.revision_file}", repo.get_contents, self.revision_file, ref=self.roll_branch
        )
        self.parent.call(
            f"update {self.revision_file}",
            repo.update_file,
            self.revision_file,
            title,
            rolling_to.id + "\n",
            contents.sha,
            branch=self.roll_branch,
        )

        pr = self.parent.create_pull_request(base=self.parent_branch, head=self.roll_branch, title=title, body=body)
        self.parent.add_label(pr.number, DRYRUN_LABEL if dry_run else COMMIT_LABEL)
        return pr.number
