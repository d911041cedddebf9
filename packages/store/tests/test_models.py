"""Tests for autoroll_store.models."""

from __future__ import annotations

import pytest

from autoroll_store.models import (
    ROLL_RESULT_DRY_RUN_FAILURE,
    ROLL_RESULT_DRY_RUN_IN_PROGRESS,
    ROLL_RESULT_DRY_RUN_SUCCESS,
    ROLL_RESULT_FAILURE,
    ROLL_RESULT_IN_PROGRESS,
    ROLL_RESULT_SUCCESS,
    TRYBOT_RESULT_FAILURE,
    TRYBOT_RESULT_SUCCESS,
    TRYBOT_STATUS_COMPLETED,
    TRYBOT_STATUS_STARTED,
    AutoRollStatus,
    RollComment,
    RollIssue,
    RollValidationError,
    TryResult,
)


class TestComputeResult:
    @pytest.mark.parametrize(
        "kwargs, expected",
        [
            ({}, ROLL_RESULT_IN_PROGRESS),
            ({"cq_finished": True, "cq_success": True}, ROLL_RESULT_SUCCESS),
            ({"cq_finished": True}, ROLL_RESULT_FAILURE),
            ({"is_dry_run": True}, ROLL_RESULT_DRY_RUN_IN_PROGRESS),
            ({"is_dry_run": True, "dry_run_finished": True, "dry_run_success": True}, ROLL_RESULT_DRY_RUN_SUCCESS),
            ({"is_dry_run": True, "dry_run_finished": True}, ROLL_RESULT_DRY_RUN_FAILURE),
        ],
    )
    def test_result_from_flags(self, kwargs, expected):
        assert RollIssue(issue=1, **kwargs).compute_result() == expected

    def test_dry_run_ignores_cq_flags(self):
        roll = RollIssue(issue=1, is_dry_run=True, cq_finished=True, cq_success=True)
        assert roll.compute_result() == ROLL_RESULT_DRY_RUN_IN_PROGRESS


class TestValidate:
    def test_valid_issue_passes(self):
        RollIssue(issue=1, result=ROLL_RESULT_IN_PROGRESS).validate()

    def test_missing_issue(self):
        with pytest.raises(RollValidationError, match="Issue is required"):
            RollIssue(issue=0).validate()

    def test_committed_requires_closed(self):
        with pytest.raises(RollValidationError, match="committed without being closed"):
            RollIssue(issue=1, committed=True).validate()

    def test_cq_success_requires_finished(self):
        with pytest.raises(RollValidationError, match="CQ success without CQ finished"):
            RollIssue(issue=1, cq_success=True).validate()

    def test_dry_run_success_requires_finished(self):
        with pytest.raises(RollValidationError, match="dry run success"):
            RollIssue(issue=1, dry_run_success=True).validate()

    def test_unknown_result(self):
        with pytest.raises(RollValidationError, match="unknown result"):
            RollIssue(issue=1, result="bogus").validate()

    def test_closed_cannot_be_in_progress(self):
        with pytest.raises(RollValidationError, match="if it is closed"):
            RollIssue(issue=1, closed=True, result=ROLL_RESULT_DRY_RUN_IN_PROGRESS).validate()

    def test_validation_error_is_value_error(self):
        assert issubclass(RollValidationError, ValueError)


class TestTrybots:
    def _roll(self, *results):
        return RollIssue(issue=1, try_results=list(results))

    def test_no_trybots_counts_as_finished_and_succeeded(self):
        roll = self._roll()
        assert roll.all_trybots_finished()
        assert roll.all_trybots_succeeded()
        assert not roll.at_least_one_trybot_failure()

    def test_running_trybot(self):
        roll = self._roll(TryResult(builder="a", status=TRYBOT_STATUS_STARTED))
        assert not roll.all_trybots_finished()
        assert not roll.at_least_one_trybot_failure()

    def test_one_failure(self):
        roll = self._roll(
            TryResult(builder="a", status=TRYBOT_STATUS_COMPLETED, result=TRYBOT_RESULT_SUCCESS),
            TryResult(builder="b", status=TRYBOT_STATUS_COMPLETED, result=TRYBOT_RESULT_FAILURE),
        )
        assert roll.all_trybots_finished()
        assert not roll.all_trybots_succeeded()
        assert roll.at_least_one_trybot_failure()


class TestSerialisation:
    def test_roll_from_dict_restores_nested_records(self):
        roll = RollIssue(
            issue=7,
            roller="r",
            patchsets=[1, 2],
            try_results=[TryResult(builder="linux", status=TRYBOT_STATUS_COMPLETED, result=TRYBOT_RESULT_SUCCESS)],
            comments=[RollComment(id="7_0", message="lgtm", user="me", timestamp="t")],
        )
        restored = RollIssue.from_dict(roll.to_dict())
        assert restored == roll
        assert isinstance(restored.try_results[0], TryResult)
        assert isinstance(restored.comments[0], RollComment)

    def test_roll_from_dict_defaults_missing_fields(self):
        roll = RollIssue.from_dict({"issue": 3})
        assert roll.patchsets == []
        assert roll.closed is False

    def test_status_with_current_roll(self):
        status = AutoRollStatus(roller="r", current_roll=RollIssue(issue=5), recent=[RollIssue(issue=4)])
        restored = AutoRollStatus.from_dict(status.to_dict())
        assert restored.current_roll.issue == 5
        assert restored.last_roll is None
        assert [r.issue for r in restored.recent] == [4]

    def test_succeeded_and_failed(self):
        assert RollIssue(issue=1, result=ROLL_RESULT_DRY_RUN_SUCCESS).succeeded()
        assert RollIssue(issue=1, result=ROLL_RESULT_FAILURE).failed()
        assert not RollIssue(issue=1, result=ROLL_RESULT_IN_PROGRESS).failed()
