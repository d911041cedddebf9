"""AutoRoller: the driver that ties a repo manager and a review system together.

One tick:
  1. honour unthrottle and throttle requests from the CLI
  2. pick up mode and strategy changes made by other processes
  3. sync the repo manager and check its revisions are consistent
  4. reconcile the current roll CL, if any
  5. ask the state machine what to do, do it, and count it
  6. notify on roll result edges and write the status snapshot

Only one tick runs at a time; a second concurrent tick fails fast with
TickInProgressError instead of queueing behind the first. Manual roll
handling waits for the tick lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

import requests

from autoroll_core.config import parse_duration
from autoroll_core.errors import (
    AutoRollError,
    RevisionInvariantError,
    TickInProgressError,
    is_sync_error,
)
from autoroll_core.metrics import (
    LAST_AUTOROLL_LANDED,
    LAST_ROLL_RESULT,
    LAST_SUCCESSFUL_MANUAL_ROLL_CHECK,
    LAST_SUCCESSFUL_TICK,
    TICK_ERRORS,
    Metrics,
)
from autoroll_core.modes import ModeHistory
from autoroll_core.notifier import AutoRollNotifier, replace_sheriff_placeholder
from autoroll_core.recent_rolls import RecentRolls
from autoroll_core.repeat import Repeater
from autoroll_core.repo_manager.base import RepoManagerRefresher
from autoroll_core.sheriff import get_sheriff
from autoroll_core.state_machine import (
    ACTION_CLOSE,
    ACTION_NONE,
    ACTION_RETRY_CQ,
    ACTION_RETRY_DRY_RUN,
    ACTION_SWITCH_TO_DRY_RUN,
    ACTION_SWITCH_TO_NORMAL,
    ACTION_UPLOAD_DRY_RUN,
    ACTION_UPLOAD_ROLL,
    STATE_IDLE,
    STATES,
    THROTTLE_FAILURE,
    THROTTLE_SAFETY,
    THROTTLE_SUCCESS,
    Signals,
    Transition,
    legal_actions,
    step,
)
from autoroll_core.status import StatusCache, truncate_not_rolled
from autoroll_core.strategy import STRATEGIES, StrategyHistory, get_strategy
from autoroll_core.throttler import Throttler
from autoroll_core.time_window import TimeWindow
from autoroll_store.models import (
    MANUAL_RESULT_FAILURE,
    MANUAL_RESULT_SUCCESS,
    MANUAL_STATUS_COMPLETE,
    MANUAL_STATUS_PENDING,
    MANUAL_STATUS_STARTED,
    SUCCESS_RESULTS,
    AutoRollStatus,
    RollIssue,
    utcnow_iso,
)

if TYPE_CHECKING:
    from autoroll_core.codereview.base import CodeReview, RollCL, RollFinished
    from autoroll_core.repo_manager.base import RepoManager
    from autoroll_core.revision import Revision
    from autoroll_store.base import BaseStore

logger = logging.getLogger(__name__)

NOTIFY_IF_LAST_N_FAILED = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutoRoller:
    def __init__(
        self,
        config: dict,
        store: BaseStore,
        code_review: CodeReview,
        repo_manager: RepoManager,
        notifier: Optional[AutoRollNotifier] = None,
        metrics: Optional[Metrics] = None,
        session: Optional[requests.Session] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.roller = config["roller_name"]
        self.store = store
        self.code_review = code_review
        if not isinstance(repo_manager, RepoManagerRefresher):
            repo_manager = RepoManagerRefresher(repo_manager)
        self.rm = repo_manager
        self.notifier = notifier or AutoRollNotifier(
            self.roller, config["child_name"], config["parent_name"], configs=[]
        )
        # Kept with "$SHERIFF" unexpanded; every sheriff refresh re-expands them.
        self._notifier_templates = self.notifier.configs
        self.metrics = metrics or Metrics(self.roller)
        self._session = session or requests.Session()
        self._now = clock or _utcnow

        self.recent = RecentRolls(store, self.roller)
        self.mode_history = ModeHistory(store, self.roller)
        self.strategy_history = StrategyHistory(
            store, self.roller, default=config.get("default_strategy") or "batch", valid=STRATEGIES
        )
        self._n_batch_size = int(config.get("n_batch_size") or 20)
        self._strategy_name = self.strategy_history.current().strategy
        self._strategy = get_strategy(self._strategy_name, self._n_batch_size)
        self.time_window = TimeWindow.parse(config.get("time_window") or "")
        self.status = StatusCache(store, self.roller)
        self.max_not_rolled_revs = int(config.get("max_not_rolled_revs") or 50)

        safety = config.get("safety_throttle") or {}
        failure = config.get("failure_throttle") or {}
        self.safety_throttle = Throttler(
            store,
            f"{self.roller}/attempt_counter",
            parse_duration(safety.get("time_window", "30m")),
            int(safety.get("attempt_count", 3)),
        )
        self.failure_throttle = Throttler(
            store,
            f"{self.roller}/fail_counter",
            parse_duration(failure.get("time_window", "1h")),
            int(failure.get("attempt_count", 1)),
        )
        self.success_throttle = Throttler(
            store,
            f"{self.roller}/success_counter",
            parse_duration(config.get("max_roll_frequency") or "0s"),
            0,
        )
        self._throttlers = {
            THROTTLE_SAFETY: self.safety_throttle,
            THROTTLE_FAILURE: self.failure_throttle,
            THROTTLE_SUCCESS: self.success_throttle,
        }

        self._tick_lock = threading.Lock()
        self._status_lock = threading.RLock()
        self._emails_lock = threading.Lock()
        self._emails: list[str] = []

        self.last_roll_rev: Optional[Revision] = None
        self.tip_rev: Optional[Revision] = None
        self.next_roll_rev: Optional[Revision] = None
        self.not_rolled: list[Revision] = []
        self.current_roll: Optional[RollCL] = None
        self.state = self._load_state()

    # ------------------------------------------------------------------ #
    # Persistent state-machine state                                      #
    # ------------------------------------------------------------------ #

    @property
    def _state_key(self) -> str:
        return f"{self.roller}/state"

    def _load_state(self) -> str:
        raw = self.store.read_blob(self._state_key)
        state = raw.decode("utf-8") if raw else STATE_IDLE
        if state not in STATES:
            logger.warning("Unknown persisted state %r for %s; starting idle.", state, self.roller)
            return STATE_IDLE
        return state

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.info("AutoRoller %s: %s -> %s", self.roller, self.state, state)
        self.state = state
        self.store.write_blob(self._state_key, state.encode("utf-8"))

    # ------------------------------------------------------------------ #
    # Sheriff and reviewers                                               #
    # ------------------------------------------------------------------ #

    def get_emails(self) -> list[str]:
        with self._emails_lock:
            return list(self._emails)

    def refresh_sheriff(self) -> None:
        emails = get_sheriff(
            list(self.config.get("sheriff") or []),
            list(self.config.get("sheriff_backup") or []),
            session=self._session,
        )
        with self._emails_lock:
            self._emails = emails
        try:
            self.notifier.reload_configs(replace_sheriff_placeholder(self._notifier_templates, emails))
        except AutoRollError as e:
            logger.error("Failed to reload notifier configs for %s: %s", self.roller, e)

    # ------------------------------------------------------------------ #
    # Repo state                                                          #
    # ------------------------------------------------------------------ #

    def update_repos(self) -> None:
        """Sync the repo manager and store last/tip/next/not-rolled revisions."""
        state = self.rm.update()
        last, tip, not_rolled = state.last_roll_rev, state.tip_rev, list(state.not_rolled)
        with self._status_lock:
            next_rev = self._strategy.get_next(not_rolled) or last
        logger.info(
            "%s: last roll %s, tip %s, next roll %s, %d not rolled",
            self.roller,
            last.id,
            tip.id,
            next_rev.id,
            len(not_rolled),
        )

        ids = {rev.id for rev in not_rolled}
        if last.id in ids:
            raise RevisionInvariantError(f"Last roll rev {last.id} found in not-rolled revs!")
        if not_rolled:
            if tip.id not in ids:
                raise RevisionInvariantError(f"Tip rev {tip.id} not found in not-rolled revs!")
            if next_rev.id not in ids:
                raise RevisionInvariantError(f"Next roll rev {next_rev.id} not found in not-rolled revs!")
        else:
            if tip.id != last.id:
                raise RevisionInvariantError(
                    f"No revisions to roll, but tip rev {tip.id} does not equal last-rolled rev {last.id}"
                )
            if next_rev.id != last.id:
                raise RevisionInvariantError(f"No revisions to roll, but next roll rev is: {next_rev.id}")

        with self._status_lock:
            self.last_roll_rev = last
            self.tip_rev = tip
            self.next_roll_rev = next_rev
            self.not_rolled = not_rolled

    def rolled_past(self, rev: Revision) -> bool:
        """True if rev is at or behind the last rolled revision.

        A revision the repo manager does not list as pending is assumed to
        have been rolled already.
        """
        with self._status_lock:
            if self.last_roll_rev is not None and rev.id == self.last_roll_rev.id:
                return True
            if self.next_roll_rev is not None and rev.id == self.next_roll_rev.id:
                return False
            if self.tip_rev is not None and rev.id == self.tip_rev.id:
                return False
            return all(rev.id != r.id for r in self.not_rolled)

    def get_revision(self, rev_id: str) -> Revision:
        """Resolve rev_id, preferring revisions already known from the last sync."""
        with self._status_lock:
            for rev in (self.last_roll_rev, self.next_roll_rev, self.tip_rev, *self.not_rolled):
                if rev is not None and rev.id == rev_id:
                    return rev
        return self.rm.get_revision(rev_id)

    def in_roll_window(self, when: Optional[datetime] = None) -> bool:
        return self.time_window.contains(when or self._now())

    def throttle(self, until: datetime) -> None:
        """Hold off new uploads until ``until``; an open roll is still followed."""
        logger.info("Throttling %s until %s.", self.roller, until.isoformat())
        self.safety_throttle.throttle(until)

    def unthrottle(self) -> None:
        logger.info("Unthrottling %s.", self.roller)
        for throttler in self._throttlers.values():
            throttler.reset()

    # ------------------------------------------------------------------ #
    # Rolls                                                               #
    # ------------------------------------------------------------------ #

    def _create_new_roll(self, rolling_from: Revision, rolling_to: Revision, emails: list[str], dry_run: bool):
        with self._status_lock:
            revs: list[Revision] = []
            found = False
            for rev in self.not_rolled:
                if rev.id == rolling_to.id:
                    found = True
                if found:
                    revs.append(rev)
        issue_num = self.rm.create_new_roll(
            rolling_from,
            rolling_to,
            revs,
            emails,
            list(self.config.get("cq_extra_trybots") or []),
            dry_run,
        )
        return RollIssue(
            issue=issue_num,
            is_dry_run=dry_run,
            rolling_from=rolling_from.id,
            rolling_to=rolling_to.id,
            roller=self.roller,
            created=utcnow_iso(),
        )

    def upload_new_roll(self, rolling_from: Revision, rolling_to: Revision, dry_run: bool) -> RollCL:
        logger.info("Uploading a %sroll from %s to %s", "dry-run " if dry_run else "", rolling_from, rolling_to)
        issue = self._create_new_roll(rolling_from, rolling_to, self.get_emails(), dry_run)
        roll = self.code_review.retrieve_roll(issue, self.recent, rolling_to)
        roll.insert_into_db()
        self.current_roll = roll
        return roll

    def _reconcile_current_roll(self) -> Optional[RollCL]:
        if self.current_roll is None:
            issue = self.recent.current_roll()
            if issue is not None:
                logger.info("Resuming roll %s to %s", issue.issue, issue.rolling_to)
                rolling_to = self.get_revision(issue.rolling_to)
                self.current_roll = self.code_review.retrieve_roll(issue, self.recent, rolling_to)
        if self.current_roll is not None:
            self.current_roll.update()
        return self.current_roll

    def _signals(self, roll: Optional[RollCL], now: datetime) -> Signals:
        with self._status_lock:
            last = self.last_roll_rev.id if self.last_roll_rev else ""
            next_rev = self.next_roll_rev.id if self.next_roll_rev else ""
        return Signals(
            mode=self.mode_history.current().mode,
            in_roll_window=self.in_roll_window(now),
            roll=roll.snapshot() if roll is not None else None,
            last_rev=last,
            next_rev=next_rev,
            roll_target_rolled_past=self.rolled_past(roll.rolling_to()) if roll is not None else False,
            safety_throttled=self.safety_throttle.is_throttled(now),
            failure_throttled=self.failure_throttle.is_throttled(now),
            success_throttled=self.success_throttle.is_throttled(now),
        )

    def _perform(self, transition: Transition) -> None:
        action = transition.action
        roll = self.current_roll
        if action == ACTION_NONE:
            return
        if action in (ACTION_UPLOAD_ROLL, ACTION_UPLOAD_DRY_RUN):
            self.upload_new_roll(self.last_roll_rev, self.next_roll_rev, dry_run=action == ACTION_UPLOAD_DRY_RUN)
            return
        if roll is None:
            raise AutoRollError(f"Action {action} requires an active roll.")
        if action == ACTION_CLOSE:
            roll.close(transition.close_result, transition.message)
        elif action == ACTION_SWITCH_TO_DRY_RUN:
            roll.switch_to_dry_run()
        elif action == ACTION_SWITCH_TO_NORMAL:
            roll.switch_to_normal()
        elif action == ACTION_RETRY_CQ:
            roll.retry_cq()
        elif action == ACTION_RETRY_DRY_RUN:
            roll.retry_dry_run()
        else:
            raise AutoRollError(f"Unknown action {action!r}")

    def _run_state_machine(self) -> None:
        self.update_repos()
        roll = self._reconcile_current_roll()
        now = self._now()
        signals = self._signals(roll, now)
        transition = step(self.state, signals)
        if transition.action not in legal_actions(signals):
            raise AutoRollError(f"State machine chose illegal action {transition.action} in state {self.state}")
        logger.info("%s: %s", self.roller, transition.message)

        # Repeating an unchanged state with nothing to do is not a new event.
        if transition.action != ACTION_NONE or transition.state != self.state:
            # Counted before acting so failing uploads are rate-limited too.
            for name in transition.increments:
                self._throttlers[name].inc(now)
        # A roll closed underneath a mutation is kept for one more tick, so the
        # closed-roll transition (and its throttler increment) still happens.
        settled = signals.roll is not None and (signals.roll.closed or transition.action == ACTION_CLOSE)
        try:
            self._perform(transition)
        finally:
            self._process_roll_events(clear_closed=settled)
        self._set_state(transition.state)

    def _process_roll_events(self, clear_closed: bool) -> None:
        roll = self.current_roll
        if roll is None:
            return
        for event in roll.pop_events():
            self._roll_finished(event)
        if clear_closed and roll.is_closed():
            self.current_roll = None

    def _roll_finished(self, event: RollFinished) -> None:
        recent = self.recent.get_recent_rolls()
        idx = next((i for i, r in enumerate(recent) if r.issue == event.issue), None)
        if idx is None:
            raise AutoRollError(f"Unable to find just-finished roll {event.issue} in recent list!")
        current = recent[idx]
        self.metrics.set_gauge(LAST_ROLL_RESULT, 1 if current.closed and current.committed else 0)

        recent = recent[idx:]
        if len(recent) < 2:
            return
        previous = recent[1]
        current_success = current.result in SUCCESS_RESULTS
        previous_success = previous.result in SUCCESS_RESULTS
        if current_success and not previous_success:
            self.notifier.send_new_success(str(current.issue), event.issue_url)
        elif not current_success and previous_success:
            self.notifier.send_new_failure(str(current.issue), event.issue_url)

        n_failed = 0
        for r in recent:
            if r.result in SUCCESS_RESULTS:
                break
            n_failed += 1
        if n_failed == NOTIFY_IF_LAST_N_FAILED:
            self.notifier.send_last_n_failed(NOTIFY_IF_LAST_N_FAILED, event.issue_url)

    # ------------------------------------------------------------------ #
    # Tick                                                                #
    # ------------------------------------------------------------------ #

    def _refresh_strategy(self) -> None:
        self.strategy_history.update()
        name = self.strategy_history.current().strategy
        if name != self._strategy_name:
            logger.info("%s: next-roll strategy changed from %s to %s", self.roller, self._strategy_name, name)
            strategy = get_strategy(name, self._n_batch_size)
            with self._status_lock:
                self._strategy = strategy
                self._strategy_name = name

    def tick(self) -> None:
        """Run one iteration of the roller. Raises TickInProgressError if one is running."""
        if not self._tick_lock.acquire(blocking=False):
            raise TickInProgressError()
        try:
            self._tick()
        finally:
            self._tick_lock.release()

    def _tick(self) -> None:
        logger.info("Running autoroller %s.", self.roller)
        if self.store.should_unthrottle(self.roller):
            self.unthrottle()
            self.store.reset_unthrottle(self.roller)
        until = self.store.throttle_request(self.roller)
        if until is not None:
            self.store.reset_throttle_request(self.roller)
            try:
                when = datetime.fromisoformat(until)
            except ValueError:
                logger.error("Ignoring throttle request for %s with invalid time %r", self.roller, until)
            else:
                self.throttle(when if when.tzinfo else when.replace(tzinfo=timezone.utc))

        self.mode_history.update()
        self._refresh_strategy()

        try:
            self._run_state_machine()
        except Exception as e:
            self.update_status(error=str(e))
            raise
        self.update_status()

        last = self.recent.last_roll()
        if last is not None and last.succeeded() and last.modified:
            try:
                landed = datetime.fromisoformat(last.modified)
            except ValueError:
                logger.warning("Roll %s has an unparseable modified time %r", last.issue, last.modified)
            else:
                self.metrics.reset_liveness(LAST_AUTOROLL_LANDED, landed)

    def run_tick(self) -> bool:
        """Tick once, classifying any failure. Returns True on success."""
        try:
            self.tick()
        except TickInProgressError as e:
            logger.info("%s", e)
            return False
        except Exception as e:
            if is_sync_error(e):
                logger.warning("Failed to run autoroll: %s", e)
            else:
                logger.error("Failed to run autoroll: %s", e, exc_info=True)
                self.metrics.inc_gauge(TICK_ERRORS)
            return False
        self.metrics.reset_liveness(LAST_SUCCESSFUL_TICK)
        return True

    # ------------------------------------------------------------------ #
    # Status                                                              #
    # ------------------------------------------------------------------ #

    def update_status(self, error: str = "") -> AutoRollStatus:
        with self._status_lock:
            recent = self.recent.get_recent_rolls()
            num_failures = 0
            for r in recent:
                if r.failed():
                    num_failures += 1
                elif r.succeeded():
                    break
            throttled_until = max(t.throttled_until() for t in self._throttlers.values())
            current = self.recent.current_roll()
            status = AutoRollStatus(
                roller=self.roller,
                mode=self.mode_history.current().mode,
                strategy=self._strategy_name,
                state=self.state,
                current_roll=current,
                last_roll=self.recent.last_roll(),
                current_roll_rev=current.rolling_to if current else "",
                last_roll_rev=self.last_roll_rev.id if self.last_roll_rev else "",
                tip_rev=self.tip_rev.id if self.tip_rev else "",
                next_roll_rev=self.next_roll_rev.id if self.next_roll_rev else "",
                not_rolled_revs=truncate_not_rolled([r.to_dict() for r in self.not_rolled], self.max_not_rolled_revs),
                num_not_rolled=len(self.not_rolled),
                num_failed_rolls=num_failures,
                recent=recent,
                throttled_until=int(throttled_until.timestamp()),
                error=error,
                issue_url_base=self.code_review.issue_url_base,
                full_history_url=self.code_review.full_history_url,
                valid_strategies=list(STRATEGIES),
            )
            logger.info("Updating status for %s (%d revisions behind)", self.roller, status.num_not_rolled)
            self.status.set(status)
        return status

    # ------------------------------------------------------------------ #
    # Manual rolls                                                        #
    # ------------------------------------------------------------------ #

    def handle_manual_rolls(self) -> None:
        """Create or follow up on pending manual roll requests.

        Holds the tick lock, so a manual roll is never uploaded while a tick
        is syncing or uploading.
        """
        with self._tick_lock:
            self._handle_manual_rolls()
        self.metrics.reset_liveness(LAST_SUCCESSFUL_MANUAL_ROLL_CHECK)

    def _handle_manual_rolls(self) -> None:
        logger.info("Searching manual roll requests for %s", self.roller)
        reqs = self.store.get_incomplete_manual_rolls(self.roller)
        logger.info("Found %d requests.", len(reqs))
        for req in reqs:
            try:
                rolling_to = self.get_revision(req.revision)
            except AutoRollError as e:
                logger.error("Manual roll failed to obtain revision %r; marking failed: %s", req.revision, e)
                req.status = MANUAL_STATUS_COMPLETE
                req.result = MANUAL_RESULT_FAILURE
                self.store.put_manual_roll(req)
                self.notifier.send_manual_roll_status(req.requester, req.revision, "failed", req.url)
                continue

            if req.status == MANUAL_STATUS_PENDING:
                emails = self.get_emails()
                if req.requester not in emails:
                    emails.append(req.requester)
                if self.last_roll_rev is None:
                    self.update_repos()
                logger.info("Creating manual roll to %s as requested by %s...", req.revision, req.requester)
                issue = self._create_new_roll(self.last_roll_rev, rolling_to, emails, dry_run=False)
            elif req.status == MANUAL_STATUS_STARTED:
                try:
                    issue_num = int(req.url.rstrip("/").rsplit("/", 1)[-1])
                except ValueError as e:
                    raise AutoRollError(f"Failed to parse issue number from {req.url} for {req.id}: {e}") from e
                issue = RollIssue(issue=issue_num, rolling_to=req.revision, roller=self.roller)
            else:
                logger.error("Found manual roll request %s in unknown status %r", req.id, req.status)
                continue

            logger.info("Getting status for manual roll #%d", issue.issue)
            roll = self.code_review.retrieve_roll(issue, self.recent, rolling_to)
            req.status = MANUAL_STATUS_STARTED
            req.url = roll.issue_url()
            if roll.is_finished():
                req.status = MANUAL_STATUS_COMPLETE
                req.result = MANUAL_RESULT_SUCCESS if roll.is_success() else MANUAL_RESULT_FAILURE
            self.store.put_manual_roll(req)
            if req.status == MANUAL_STATUS_COMPLETE:
                self.notifier.send_manual_roll_status(req.requester, req.revision, req.result, req.url)

    # ------------------------------------------------------------------ #
    # Background loops                                                    #
    # ------------------------------------------------------------------ #

    def start(self, stop: threading.Event) -> list[Repeater]:
        """Start the roller's loops on daemon threads until stop is set."""
        logger.info("Starting autoroller %s.", self.roller)
        self.refresh_sheriff()
        repeaters = [
            Repeater(
                "sheriff-refresh",
                parse_duration(self.config.get("sheriff_refresh_interval") or "30m"),
                self.refresh_sheriff,
                stop,
                delay_first=True,
            ),
            Repeater("autoroll-tick", parse_duration(self.config.get("tick_interval") or "5m"), self.run_tick, stop),
        ]
        if self.config.get("supports_manual_rolls"):
            repeaters.append(
                Repeater(
                    "manual-rolls",
                    parse_duration(self.config.get("manual_roll_interval") or "1m"),
                    self.handle_manual_rolls,
                    stop,
                )
            )
        for r in repeaters:
            r.start()
        repeaters.append(
            self.rm.start(parse_duration(self.config.get("repo_refresh_interval") or "5m"), stop)
        )
        return repeaters
