"""Roll state machine.

step() is a pure function from (previous state, signals) to a Transition: the
next state, the one action the roller must perform, and the throttlers it
must increment. The roller gathers Signals at the start of a tick (after
reconciling the current roll) and performs the action afterwards, so every
rule here can be tested without a review system.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from autoroll_store.models import (
    MODE_DRY_RUN,
    MODE_OFFLINE,
    MODE_RUNNING,
    MODE_STOPPED,
    ROLL_RESULT_DRY_RUN_FAILURE,
    ROLL_RESULT_DRY_RUN_SUCCESS,
    ROLL_RESULT_FAILURE,
)

STATE_IDLE = "idle"
STATE_ACTIVE = "active"
STATE_DRY_RUN_ACTIVE = "dry-run-active"
STATE_SUCCESS = "success"
STATE_FAILURE = "failure"
STATE_DRY_RUN_SUCCESS = "dry-run-success"
STATE_DRY_RUN_FAILURE = "dry-run-failure"
STATE_THROTTLED = "throttled"
STATE_STOPPED = "stopped"
STATES = (
    STATE_IDLE,
    STATE_ACTIVE,
    STATE_DRY_RUN_ACTIVE,
    STATE_SUCCESS,
    STATE_FAILURE,
    STATE_DRY_RUN_SUCCESS,
    STATE_DRY_RUN_FAILURE,
    STATE_THROTTLED,
    STATE_STOPPED,
)

ACTION_NONE = "none"
ACTION_UPLOAD_ROLL = "upload-roll"
ACTION_UPLOAD_DRY_RUN = "upload-dry-run"
ACTION_SWITCH_TO_DRY_RUN = "switch-to-dry-run"
ACTION_SWITCH_TO_NORMAL = "switch-to-normal"
ACTION_RETRY_CQ = "retry-cq"
ACTION_RETRY_DRY_RUN = "retry-dry-run"
ACTION_CLOSE = "close"
ACTIONS = (
    ACTION_NONE,
    ACTION_UPLOAD_ROLL,
    ACTION_UPLOAD_DRY_RUN,
    ACTION_SWITCH_TO_DRY_RUN,
    ACTION_SWITCH_TO_NORMAL,
    ACTION_RETRY_CQ,
    ACTION_RETRY_DRY_RUN,
    ACTION_CLOSE,
)

THROTTLE_SAFETY = "safety"
THROTTLE_FAILURE = "failure"
THROTTLE_SUCCESS = "success"


@dataclass(frozen=True)
class RollSnapshot:
    """What the state machine may know about the current roll CL."""

    issue: int
    rolling_to: str
    is_dry_run: bool = False
    closed: bool = False
    committed: bool = False
    cq_finished: bool = False
    cq_success: bool = False
    dry_run_finished: bool = False
    dry_run_success: bool = False


@dataclass(frozen=True)
class Signals:
    mode: str = MODE_RUNNING
    in_roll_window: bool = True
    roll: RollSnapshot | None = None
    last_rev: str = ""
    next_rev: str = ""
    # True when the repo no longer lists roll.rolling_to as pending.
    roll_target_rolled_past: bool = False
    safety_throttled: bool = False
    failure_throttled: bool = False
    success_throttled: bool = False

    @property
    def throttled(self) -> bool:
        return self.safety_throttled or self.failure_throttled or self.success_throttled

    @property
    def up_to_date(self) -> bool:
        return not self.next_rev or self.next_rev == self.last_rev

    @property
    def roll_is_stale(self) -> bool:
        """The open roll targets something other than the next revision."""
        if self.roll is None:
            return False
        return self.roll_target_rolled_past or self.roll.rolling_to != self.next_rev


@dataclass(frozen=True)
class Transition:
    state: str
    action: str = ACTION_NONE
    message: str = ""
    close_result: str = ""
    increments: tuple[str, ...] = field(default_factory=tuple)


def legal_actions(signals: Signals) -> frozenset[str]:
    """Actions that may be performed given the current roll, if any."""
    roll = signals.roll
    if roll is None:
        return frozenset({ACTION_NONE, ACTION_UPLOAD_ROLL, ACTION_UPLOAD_DRY_RUN})
    if roll.closed:
        return frozenset({ACTION_NONE})
    if roll.is_dry_run:
        return frozenset({ACTION_NONE, ACTION_CLOSE, ACTION_SWITCH_TO_NORMAL, ACTION_RETRY_DRY_RUN})
    return frozenset({ACTION_NONE, ACTION_CLOSE, ACTION_SWITCH_TO_DRY_RUN, ACTION_RETRY_CQ})


def step(state: str, signals: Signals) -> Transition:
    if state not in STATES:
        raise ValueError(f"Unknown state {state!r}")

    roll = signals.roll
    if roll is not None and roll.closed:
        # Bookkeeping only; a closed roll takes no action, even when offline.
        return _closed_roll(roll)

    if signals.mode == MODE_OFFLINE:
        return Transition(STATE_STOPPED, message="Roller is offline.")

    if signals.mode == MODE_STOPPED:
        if roll is None:
            return Transition(STATE_STOPPED, message="Roller is stopped.")
        return Transition(
            STATE_STOPPED,
            action=ACTION_CLOSE,
            close_result=ROLL_RESULT_DRY_RUN_FAILURE if roll.is_dry_run else ROLL_RESULT_FAILURE,
            message="AutoRoller is stopped; closing the active roll.",
        )

    if roll is None:
        return _no_roll(signals)
    if roll.is_dry_run:
        return _dry_run_roll(roll, signals)
    return _normal_roll(roll, signals)


def _closed_roll(roll: RollSnapshot) -> Transition:
    if roll.is_dry_run:
        if roll.committed:
            return Transition(
                STATE_DRY_RUN_SUCCESS,
                message=f"Dry run {roll.issue} was landed by someone else.",
                increments=(THROTTLE_SUCCESS,),
            )
        if roll.dry_run_success:
            return Transition(STATE_DRY_RUN_SUCCESS, message=f"Dry run {roll.issue} succeeded and was closed.")
        return Transition(STATE_DRY_RUN_FAILURE, message=f"Dry run {roll.issue} was closed.")
    if roll.cq_success:
        return Transition(
            STATE_SUCCESS,
            message=f"Roll {roll.issue} landed.",
            increments=(THROTTLE_SUCCESS,),
        )
    return Transition(
        STATE_FAILURE,
        message=f"Roll {roll.issue} was closed without landing.",
        increments=(THROTTLE_FAILURE,),
    )


def _no_roll(signals: Signals) -> Transition:
    if not signals.in_roll_window:
        return Transition(STATE_THROTTLED, message="Outside the roll window.")
    if signals.up_to_date:
        return Transition(STATE_IDLE, message="Up to date.")
    if signals.safety_throttled:
        return Transition(STATE_THROTTLED, message="Too many roll attempts; safety throttled.")
    if signals.failure_throttled:
        return Transition(STATE_THROTTLED, message="Too many failed rolls; failure throttled.")
    if signals.success_throttled:
        return Transition(STATE_THROTTLED, message="Rolled recently; success throttled.")
    if signals.mode == MODE_DRY_RUN:
        return Transition(
            STATE_DRY_RUN_ACTIVE,
            action=ACTION_UPLOAD_DRY_RUN,
            message=f"Uploading a dry run to {signals.next_rev}.",
            increments=(THROTTLE_SAFETY,),
        )
    return Transition(
        STATE_ACTIVE,
        action=ACTION_UPLOAD_ROLL,
        message=f"Uploading a roll to {signals.next_rev}.",
        increments=(THROTTLE_SAFETY,),
    )


def _normal_roll(roll: RollSnapshot, signals: Signals) -> Transition:
    if roll.cq_finished and roll.cq_success:
        # Landed, but the review system has not reported it closed yet.
        return Transition(STATE_SUCCESS, message=f"Roll {roll.issue} landed.", increments=(THROTTLE_SUCCESS,))

    if roll.cq_finished:
        if signals.mode == MODE_DRY_RUN:
            return Transition(
                STATE_DRY_RUN_ACTIVE,
                action=ACTION_SWITCH_TO_DRY_RUN,
                message=f"CQ failed on {roll.issue} and mode is dry run; switching it to a dry run.",
            )
        if signals.roll_is_stale:
            return Transition(
                STATE_FAILURE,
                action=ACTION_CLOSE,
                close_result=ROLL_RESULT_FAILURE,
                message=f"CQ failed on {roll.issue} and there is a newer revision to roll; closing it.",
                increments=(THROTTLE_FAILURE,),
            )
        if signals.failure_throttled:
            return Transition(
                STATE_FAILURE,
                action=ACTION_CLOSE,
                close_result=ROLL_RESULT_FAILURE,
                message=f"CQ failed on {roll.issue} too many times; closing it.",
                increments=(THROTTLE_FAILURE,),
            )
        return Transition(
            STATE_ACTIVE,
            action=ACTION_RETRY_CQ,
            message=f"CQ failed on {roll.issue}; retrying.",
            increments=(THROTTLE_FAILURE,),
        )

    if signals.mode == MODE_DRY_RUN:
        return Transition(
            STATE_DRY_RUN_ACTIVE,
            action=ACTION_SWITCH_TO_DRY_RUN,
            message=f"Mode is dry run; switching {roll.issue} to a dry run.",
        )
    if signals.roll_is_stale:
        return Transition(
            STATE_IDLE,
            action=ACTION_CLOSE,
            close_result=ROLL_RESULT_FAILURE,
            message=f"Roll {roll.issue} to {roll.rolling_to} is stale; the next roll is to {signals.next_rev}.",
        )
    return Transition(STATE_ACTIVE, message=f"Waiting for CQ on {roll.issue}.")


def _dry_run_roll(roll: RollSnapshot, signals: Signals) -> Transition:
    dry_run_result = (
        ROLL_RESULT_DRY_RUN_SUCCESS if roll.dry_run_finished and roll.dry_run_success else ROLL_RESULT_DRY_RUN_FAILURE
    )
    if signals.roll_is_stale:
        return Transition(
            STATE_IDLE,
            action=ACTION_CLOSE,
            close_result=dry_run_result,
            message=f"Dry run {roll.issue} to {roll.rolling_to} is stale; the next roll is to {signals.next_rev}.",
        )
    if signals.mode == MODE_RUNNING:
        return Transition(
            STATE_ACTIVE,
            action=ACTION_SWITCH_TO_NORMAL,
            message=f"Mode is running; switching dry run {roll.issue} to the CQ.",
        )
    if roll.dry_run_finished and roll.dry_run_success:
        return Transition(STATE_IDLE, message=f"Dry run {roll.issue} succeeded; keeping it open.")
    if roll.dry_run_finished:
        if signals.failure_throttled:
            return Transition(STATE_DRY_RUN_FAILURE, message=f"Dry run {roll.issue} failed too many times.")
        return Transition(
            STATE_DRY_RUN_ACTIVE,
            action=ACTION_RETRY_DRY_RUN,
            message=f"Dry run {roll.issue} failed; retrying.",
            increments=(THROTTLE_FAILURE,),
        )
    return Transition(STATE_DRY_RUN_ACTIVE, message=f"Waiting for dry run {roll.issue}.")
