"""Tests for the GitHub repo manager and the caching refresher."""

from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests
from github import GithubException

from autoroll_core.codereview.github import COMMIT_LABEL, DRYRUN_LABEL
from autoroll_core.errors import ReviewSystemError, TransientSyncError, UnknownRevisionError
from autoroll_core.repo_manager.base import RepoManagerRefresher, RepoState
from autoroll_core.repo_manager.github import GitHubRepoManager
from autoroll_core.revision import Revision


def _commit(sha, subject="Change", email="dev@example.com"):
    c = MagicMock()
    c.sha = sha
    c.html_url = f"https://github.com/google/skia/commit/{sha}"
    c.commit.message = f"{subject}\n\nDetails."
    c.commit.author.email = email
    c.commit.author.date = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    return c


def _make_manager(pinned="a" * 40, tip=None, between=(), status="ahead"):
    parent, child = MagicMock(), MagicMock()
    gh = MagicMock()
    gh.get_repo.side_effect = lambda name: {"chromium/src": parent, "google/skia": child}[name]

    parent.get_contents.return_value.decoded_content = (pinned + "\n").encode()
    parent.get_contents.return_value.sha = "filesha"
    parent.get_branch.return_value.commit.sha = "basesha"
    parent.create_pull.return_value.number = 77

    tip = tip or pinned
    commits = {pinned: _commit(pinned), tip: _commit(tip)}
    for c in between:
        commits[c.sha] = c
    child.get_commit.side_effect = lambda sha: commits[sha]
    child.get_branch.return_value.commit = commits[tip]
    child.compare.return_value.status = status
    child.compare.return_value.commits = list(between)

    manager = GitHubRepoManager(
        gh,
        parent_repo="chromium/src",
        child_repo="google/skia",
        revision_file="SKIA_VERSION",
        child_name="Skia",
        parent_name="Chromium",
        server_url="https://autoroll.example.com/r/skia-autoroll",
    )
    return manager, parent, child


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


class TestUpdate:
    def test_up_to_date(self):
        manager, parent, child = _make_manager()
        state = manager.update()
        assert state.last_roll_rev.id == "a" * 40
        assert state.tip_rev.id == "a" * 40
        assert state.not_rolled == []
        parent.get_contents.assert_called_once_with("SKIA_VERSION", ref="main")
        child.compare.assert_not_called()

    def test_not_rolled_newest_first(self):
        b, c = _commit("b" * 40), _commit("c" * 40)
        manager, _, _ = _make_manager(tip="c" * 40, between=(b, c))
        state = manager.update()
        assert [r.id for r in state.not_rolled] == ["c" * 40, "b" * 40]
        assert state.tip_rev.id == "c" * 40

    def test_diverged_is_a_sync_error(self):
        manager, _, _ = _make_manager(tip="c" * 40, status="diverged")
        with pytest.raises(TransientSyncError, match="Invalid revision range"):
            manager.update()

    def test_child_failure_is_a_sync_error(self):
        manager, _, child = _make_manager()
        child.get_branch.side_effect = GithubException(502, {"message": "Bad Gateway"}, None)
        with pytest.raises(TransientSyncError):
            manager.update()

    def test_parent_failure_is_a_review_error(self):
        manager, parent, _ = _make_manager()
        parent.get_contents.side_effect = GithubException(500, {"message": "oops"}, None)
        with pytest.raises(ReviewSystemError):
            manager.update()


class TestGetRevision:
    def test_revision_fields(self):
        manager, _, child = _make_manager()
        child.get_commit.side_effect = lambda sha: _commit(sha, subject="Fix roll (#12)")
        rev = manager.get_revision("d" * 40)
        assert rev.display_id == "d" * 12
        assert rev.description == "Fix roll (google/skia#12)"
        assert rev.author == "dev@example.com"
        assert rev.timestamp == "2024-01-01T10:00:00+00:00"

    @pytest.mark.parametrize("status", [404, 422])
    def test_unknown(self, status):
        manager, _, child = _make_manager()
        child.get_commit.side_effect = GithubException(status, {"message": "No commit found"}, None)
        with pytest.raises(UnknownRevisionError):
            manager.get_revision("nope")

    def test_server_error_is_transient(self):
        manager, _, child = _make_manager()
        child.get_commit.side_effect = GithubException(503, {"message": "busy"}, None)
        with pytest.raises(TransientSyncError):
            manager.get_revision("nope")


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


def _upload(manager, dry_run=False):
    return manager.create_new_roll(
        Revision(id="a" * 40),
        Revision(id="c" * 40),
        [Revision(id="c" * 40), Revision(id="b" * 40)],
        ["sheriff@example.com"],
        [],
        dry_run,
    )


class TestCreateNewRoll:
    def test_resets_existing_branch(self):
        manager, parent, _ = _make_manager()
        assert _upload(manager) == 77
        parent.get_git_ref.return_value.edit.assert_called_once_with("basesha", force=True)
        parent.create_git_ref.assert_not_called()

        args, kwargs = parent.update_file.call_args
        assert args[0] == "SKIA_VERSION"
        assert args[1] == "Roll Skia from aaaaaaaaaaaa to cccccccccccc (2 revisions)"
        assert args[2] == "c" * 40 + "\n"
        assert args[3] == "filesha"
        assert kwargs == {"branch": "roll_branch"}

        pull_kwargs = parent.create_pull.call_args[1]
        assert pull_kwargs["base"] == "main"
        assert pull_kwargs["head"] == "roll_branch"
        assert "Tbr: sheriff@example.com" in pull_kwargs["body"]
        parent.get_issue.return_value.add_to_labels.assert_called_once_with(COMMIT_LABEL)

    def test_creates_missing_branch(self):
        manager, parent, _ = _make_manager()
        parent.get_git_ref.side_effect = GithubException(404, {"message": "Not Found"}, None)
        _upload(manager, dry_run=True)
        parent.create_git_ref.assert_called_once_with("refs/heads/roll_branch", "basesha")
        parent.get_issue.return_value.add_to_labels.assert_called_once_with(DRYRUN_LABEL)

    def test_branch_lookup_failure(self):
        manager, parent, _ = _make_manager()
        parent.get_git_ref.side_effect = GithubException(403, {"message": "Forbidden"}, None)
        with pytest.raises(ReviewSystemError) as exc:
            _upload(manager)
        assert exc.value.status_code == 403
        parent.create_pull.assert_not_called()

    def test_branch_lookup_network_error(self):
        manager, parent, _ = _make_manager()
        parent.get_git_ref.side_effect = requests.ConnectionError("connection reset")
        with pytest.raises(ReviewSystemError, match="look up roll_branch"):
            _upload(manager)
        parent.get_git_ref.assert_called_once_with("heads/roll_branch")
        parent.create_git_ref.assert_not_called()
        parent.create_pull.assert_not_called()


class TestRefresher:
    def test_caches_last_state(self):
        inner = MagicMock()
        state = RepoState(last_roll_rev=Revision(id="a"), tip_rev=Revision(id="b"))
        inner.update.return_value = state
        refresher = RepoManagerRefresher(inner)
        assert refresher.cached() is None
        assert refresher.update() is state
        assert refresher.cached() is state
        refresher.get_revision("a")
        inner.get_revision.assert_called_once_with("a")

    def test_uploads_and_syncs_never_overlap(self):
        active, overlaps = [], []
        guard = threading.Lock()

        def busy(result):
            def run(*args):
                with guard:
                    active.append(1)
                    if len(active) > 1:
                        overlaps.append(args)
                time.sleep(0.02)
                with guard:
                    active.pop()
                return result

            return run

        inner = MagicMock()
        inner.create_new_roll.side_effect = busy(77)
        inner.update.side_effect = busy(RepoState(last_roll_rev=Revision(id="a"), tip_rev=Revision(id="a")))
        refresher = RepoManagerRefresher(inner)

        def upload():
            refresher.create_new_roll(Revision(id="a"), Revision(id="b"), [], [], [], False)

        threads = [threading.Thread(target=fn) for fn in (upload, upload, refresher.update, upload)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert overlaps == []
        assert inner.create_new_roll.call_count == 3
