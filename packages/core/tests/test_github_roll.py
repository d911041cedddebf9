"""Tests for the GitHub review-system adapter."""

from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock

import pytest
import requests
from github import GithubException

from autoroll_core.codereview.github import (
    COMMIT_LABEL,
    DRYRUN_LABEL,
    Check,
    GitHubClient,
    GitHubCodeReview,
    GitHubConfig,
    fetch_merge_method,
    try_results_from_checks,
)
from autoroll_core.errors import MergeMethodError, ReviewSystemError
from autoroll_core.recent_rolls import RecentRolls
from autoroll_core.revision import Revision
from autoroll_store.memory import MemoryStore
from autoroll_store.models import (
    ROLL_RESULT_DRY_RUN_SUCCESS,
    ROLL_RESULT_FAILURE,
    ROLL_RESULT_IN_PROGRESS,
    ROLL_RESULT_SUCCESS,
    TRYBOT_RESULT_FAILURE,
    TRYBOT_RESULT_SUCCESS,
    TRYBOT_STATUS_COMPLETED,
    TRYBOT_STATUS_STARTED,
    RollIssue,
)


def _make_pr(number=9, state="open", merged=False, mergeable_state="clean", commits=1):
    pr = MagicMock()
    pr.number = number
    pr.state = state
    pr.merged = merged
    pr.mergeable_state = mergeable_state
    pr.commits = commits
    pr.head.sha = "headsha"
    pr.title = "Roll skia from aaaa to bbbb"
    pr.created_at = datetime(2024, 1, 1, 12, 0)
    pr.updated_at = datetime(2024, 1, 1, 12, 30)
    return pr


def _checks(*states):
    return [
        Check(id=i + 1, name=f"check-{i}", state=s, html_url=f"https://ci.example.com/{i + 1}")
        for i, s in enumerate(states)
    ]


def _make_client(prs, checks):
    client = MagicMock()
    client.get_pull_request.side_effect = list(prs)
    client.get_checks.return_value = checks
    client.get_description.return_value = "Roll skia from aaaa to bbbb\n\nR=sheriff@example.com"
    return client


def _make_roll(client, checks_num=4, is_dry_run=False, merge_method_url="", session=None, wait_for=None):
    config = GitHubConfig(
        repo_owner="skia",
        repo_name="parent",
        checks_num=checks_num,
        checks_wait_for=wait_for or [],
        merge_method_url=merge_method_url,
    )
    recent = RecentRolls(MemoryStore(), "skia-autoroll")
    issue = RollIssue(issue=9, rolling_from="a", rolling_to="b", is_dry_run=is_dry_run)
    recent.add(issue)
    review = GitHubCodeReview(client, config, session=session)
    return review.retrieve_roll(issue, recent, Revision(id="b"))


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class TestGitHubRoll:
    def test_merges_when_every_check_passes(self):
        client = _make_client([_make_pr(), _make_pr(state="closed", merged=True)], _checks(*["success"] * 4))
        roll = _make_roll(client)
        client.merge_pull_request.assert_called_once_with(
            9, "Roll skia from aaaa to bbbb\n\nR=sheriff@example.com", "squash"
        )
        client.add_comment.assert_called_once_with(9, "Auto-roller completed checks. About to merge.")
        issue = roll.issue()
        assert issue.committed and issue.closed
        assert issue.result == ROLL_RESULT_SUCCESS
        assert issue.created == "2024-01-01T12:00:00+00:00"

    def test_unstable_state_still_merges(self):
        client = _make_client(
            [_make_pr(mergeable_state="unstable"), _make_pr(state="closed", merged=True)], _checks("success")
        )
        _make_roll(client, checks_num=1)
        client.merge_pull_request.assert_called_once()

    def test_merge_method_from_override_url(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200, text="rebase\n")
        client = _make_client([_make_pr(), _make_pr(state="closed", merged=True)], _checks("success"))
        _make_roll(client, checks_num=1, merge_method_url="https://example.com/merge_method", session=session)
        assert client.merge_pull_request.call_args[0][2] == "rebase"

    def test_merge_method_failure_leaves_pr_open(self):
        session = MagicMock()
        session.get.side_effect = requests.Timeout("slow")
        client = _make_client([_make_pr()], _checks("success"))
        with pytest.raises(MergeMethodError):
            _make_roll(client, checks_num=1, merge_method_url="https://example.com/merge_method", session=session)
        client.add_comment.assert_not_called()
        client.merge_pull_request.assert_not_called()
        client.close_pull_request.assert_not_called()

    def test_pending_checks_wait(self):
        client = _make_client([_make_pr()], _checks("success", "pending"))
        roll = _make_roll(client, checks_num=2)
        client.merge_pull_request.assert_not_called()
        assert roll.issue().result == ROLL_RESULT_IN_PROGRESS

    def test_missing_checks_never_merge(self):
        client = _make_client([_make_pr()], _checks("success", "success"))
        roll = _make_roll(client, checks_num=4)
        client.merge_pull_request.assert_not_called()
        assert len(roll.issue().try_results) == 4

    def test_failed_check_closes_pr(self):
        client = _make_client([_make_pr(), _make_pr(state="closed")], _checks("success", "failure"))
        roll = _make_roll(client, checks_num=2)
        message = client.add_comment.call_args[0][1]
        assert message.startswith("Trybots failed.")
        assert "https://ci.example.com/2" in message
        client.close_pull_request.assert_called_once_with(9)
        assert roll.issue().result == ROLL_RESULT_FAILURE

    def test_failed_check_in_wait_for_keeps_waiting(self):
        client = _make_client([_make_pr()], _checks("success", "failure"))
        roll = _make_roll(client, checks_num=2, wait_for=["check-1"])
        client.close_pull_request.assert_not_called()
        assert roll.issue().result == ROLL_RESULT_IN_PROGRESS

    def test_dirty_pr_closed(self):
        client = _make_client([_make_pr(mergeable_state="dirty"), _make_pr(state="closed")], _checks("pending"))
        roll = _make_roll(client, checks_num=1)
        client.add_comment.assert_called_once_with(9, "PullRequest is no longer mergeable. Closing it.")
        assert roll.is_closed()

    def test_closed_dirty_pr_left_alone(self):
        client = _make_client([_make_pr(state="closed", mergeable_state="dirty")], _checks("pending"))
        _make_roll(client, checks_num=1)
        client.close_pull_request.assert_not_called()

    def test_dry_run_never_merges(self):
        client = _make_client([_make_pr()], _checks("success", "neutral"))
        roll = _make_roll(client, checks_num=2, is_dry_run=True)
        client.merge_pull_request.assert_not_called()
        assert roll.issue().result == ROLL_RESULT_DRY_RUN_SUCCESS

    def test_no_commits_is_an_error(self):
        client = _make_client([_make_pr(commits=0)], _checks("pending"))
        with pytest.raises(ReviewSystemError, match="no commits"):
            _make_roll(client, checks_num=1)

    def test_switch_labels(self):
        client = _make_client([_make_pr(), _make_pr()], _checks("pending"))
        roll = _make_roll(client, checks_num=1)
        roll.switch_to_dry_run()
        client.replace_label.assert_called_once_with(9, COMMIT_LABEL, DRYRUN_LABEL)
        assert roll.is_dry_run()

    # (method, args, client call that fails, roll is a dry run)
    MUTATIONS = [
        ("close", (ROLL_RESULT_FAILURE, "stale"), "close_pull_request", False),
        ("add_comment", ("hello",), "add_comment", False),
        ("switch_to_dry_run", (), "replace_label", False),
        ("switch_to_normal", (), "replace_label", True),
    ]

    @pytest.mark.parametrize("method, args, call, is_dry_run", MUTATIONS)
    def test_mutation_on_closed_pr_is_tolerated(self, method, args, call, is_dry_run):
        client = _make_client([_make_pr(), _make_pr(state="closed")], _checks("pending"))
        roll = _make_roll(client, checks_num=1, is_dry_run=is_dry_run)
        getattr(client, call).side_effect = ReviewSystemError("Validation Failed", status_code=422)
        getattr(roll, method)(*args)
        assert roll.is_closed()
        assert roll.is_dry_run() == is_dry_run

    @pytest.mark.parametrize("method, args, call, is_dry_run", MUTATIONS)
    def test_mutation_failure_on_open_pr_propagates(self, method, args, call, is_dry_run):
        client = _make_client([_make_pr(), _make_pr()], _checks("pending"))
        roll = _make_roll(client, checks_num=1, is_dry_run=is_dry_run)
        getattr(client, call).side_effect = ReviewSystemError("Forbidden", status_code=403)
        with pytest.raises(ReviewSystemError, match="Forbidden"):
            getattr(roll, method)(*args)
        assert not roll.is_closed()

    @pytest.mark.parametrize("method, is_dry_run", [("retry_cq", False), ("retry_dry_run", True)])
    def test_retry_on_closed_pr_records_closed(self, method, is_dry_run):
        client = _make_client([_make_pr(), _make_pr(state="closed")], _checks("pending"))
        roll = _make_roll(client, checks_num=1, is_dry_run=is_dry_run)
        getattr(roll, method)()
        assert roll.is_closed()
        client.replace_label.assert_not_called()

    def test_retry_is_a_noop(self):
        client = _make_client([_make_pr(), _make_pr()], _checks("pending"))
        roll = _make_roll(client, checks_num=1)
        roll.retry_cq()
        client.replace_label.assert_not_called()
        assert client.get_pull_request.call_count == 2

    def test_urls(self):
        review = GitHubCodeReview(MagicMock(), GitHubConfig(repo_owner="skia", repo_name="parent"))
        assert review.issue_url_base == "https://github.com/skia/parent/pull/"
        assert "label%3A%22autoroller:+commit%22" in review.full_history_url


# ---------------------------------------------------------------------------
# Checks and merge method
# ---------------------------------------------------------------------------


class TestTryResultsFromChecks:
    def test_states_mapped(self):
        results = try_results_from_checks(_checks("success", "neutral", "cancelled", "pending"), 4, [])
        assert [(r.status, r.result) for r in results] == [
            (TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_SUCCESS),
            (TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_SUCCESS),
            (TRYBOT_STATUS_COMPLETED, TRYBOT_RESULT_FAILURE),
            (TRYBOT_STATUS_STARTED, ""),
        ]

    def test_checks_without_id_skipped(self):
        checks = [Check(id=0, name="ghost", state="success")]
        assert try_results_from_checks(checks, 0, []) == []

    def test_padded_to_expected_count(self):
        results = try_results_from_checks(_checks("success"), 3, [])
        assert len(results) == 3
        assert results[-1].builder == "Missing check #3"
        assert not results[-1].finished()


class TestFetchMergeMethod:
    def test_default_is_squash(self):
        assert fetch_merge_method("") == "squash"

    def test_non_2xx(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=500, text="")
        with pytest.raises(MergeMethodError, match="500"):
            fetch_merge_method("https://example.com/m", session)

    def test_unknown_value(self):
        session = MagicMock()
        session.get.return_value = MagicMock(status_code=200, text="merge")
        with pytest.raises(MergeMethodError, match="Unrecognized"):
            fetch_merge_method("https://example.com/m", session)


class TestGitHubClient:
    def test_call_wraps_github_exception(self):
        def boom():
            raise GithubException(409, {"message": "Conflict"}, None)

        with pytest.raises(ReviewSystemError) as exc:
            GitHubClient.call("close pull request 9", boom)
        assert exc.value.status_code == 409

    def test_merge_rejects_unknown_method(self):
        client = GitHubClient("skia/parent", None, gh=MagicMock())
        with pytest.raises(MergeMethodError):
            client.merge_pull_request(9, "msg", "merge")

    def test_merge_not_merged_raises(self):
        gh = MagicMock()
        gh.get_repo.return_value.get_pull.return_value.merge.return_value = MagicMock(merged=False, message="blocked")
        client = GitHubClient("skia/parent", None, gh=gh)
        with pytest.raises(ReviewSystemError, match="blocked"):
            client.merge_pull_request(9, "msg", "squash")

    def test_replace_label_keeps_others(self):
        gh = MagicMock()
        issue = gh.get_repo.return_value.get_issue.return_value
        keep, old = MagicMock(), MagicMock()
        keep.name, old.name = "infra", COMMIT_LABEL
        issue.labels = [keep, old]
        GitHubClient("skia/parent", None, gh=gh).replace_label(9, COMMIT_LABEL, DRYRUN_LABEL)
        issue.set_labels.assert_called_once_with("infra", DRYRUN_LABEL)
