"""Sync execution: apply a plan with retry, health gating and rollback."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from gitops_controller.exceptions import (
    ApplyFatalError,
    ApplyTransientError,
    ObservationError,
    ReconcilerError,
)
from gitops_controller.models import (
    ActionResult,
    ActionStatus,
    ActionType,
    DesiredStateSnapshot,
    HealthStatus,
    ManagedApplication,
    PlanAction,
    ReconciliationPlan,
    Resource,
    ResourceKey,
    worst_health,
)

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Capped exponential backoff."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0

    def delay(self, attempt: int) -> float:
        """Delay before the attempt following failed attempt number ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))


@dataclass
class RetryState:
    """Attempt count and next allowed attempt time for one retried operation."""
    attempts: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None

    def ready(self, now: float) -> bool:
        return now >= self.next_attempt_at

    def record_failure(self, policy: RetryPolicy, now: float, error: str) -> float:
        """Count a failed attempt and schedule the next one; returns the delay."""
        self.attempts += 1
        self.last_error = error
        delay = policy.delay(self.attempts)
        self.next_attempt_at = now + delay
        return delay

    def exhausted(self, policy: RetryPolicy) -> bool:
        return self.attempts >= policy.max_attempts

    def reset(self) -> None:
        self.attempts = 0
        self.next_attempt_at = 0.0
        self.last_error = None


@dataclass
class ExecutionOutcome:
    """Result of executing one plan."""
    results: List[ActionResult] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False
    error: Optional[ReconcilerError] = None
    rolled_back: bool = False
    rollback_converged: Optional[bool] = None
    rollback_results: List[ActionResult] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.aborted and not self.cancelled


class SyncExecutor:
    """Applies reconciliation plans against the cluster."""

    def __init__(
        self,
        cluster,
        observer,
        planner,
        retry_policy: Optional[RetryPolicy] = None,
        health_timeout: float = 300.0,
        health_poll_interval: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        """Initialize the executor.

        Args:
            cluster: ClusterClient used for mutations
            observer: LiveStateObserver used for readiness polling, rollback and health assessment
            planner: Planner used to plan rollbacks
            retry_policy: Backoff policy for transient apply errors
            health_timeout: Seconds to wait for a dependency to become healthy
            health_poll_interval: Seconds between readiness polls
            clock: Monotonic clock
            sleep: Sleep function; by default waits on the cancel event so
                cancellation interrupts backoff and readiness polling
        """
        self.cluster = cluster
        self.observer = observer
        self.planner = planner
        self.retry_policy = retry_policy or RetryPolicy()
        self.health_timeout = health_timeout
        self.health_poll_interval = health_poll_interval
        self._clock = clock
        self._sleep = sleep

    def execute(
        self,
        app: ManagedApplication,
        plan: ReconciliationPlan,
        cancel_event: Optional[threading.Event] = None,
        last_good: Optional[DesiredStateSnapshot] = None,
    ) -> ExecutionOutcome:
        """Apply a plan in order.

        Cancellation is honoured between actions and never rolls back. An
        abort (fatal error, exhausted retries, health timeout) skips the
        remaining actions and, when self-heal is enabled and ``last_good`` is
        known, re-applies the last known-good snapshot.

        Args:
            app: The managed application
            plan: Plan to execute
            cancel_event: Set to request cancellation
            last_good: Last snapshot that synced successfully

        Returns:
            ExecutionOutcome with one ActionResult per planned action
        """
        outcome = self._run(app, plan, cancel_event)

        if outcome.aborted and app.sync_policy.self_heal:
            if last_good is None:
                logger.warning("%s: sync aborted and no known-good revision to roll back to", app.name)
            elif last_good.digest == plan.desired_digest:
                logger.warning("%s: sync aborted on the known-good revision itself, not rolling back", app.name)
            else:
                self.rollback(app, last_good, outcome, cancel_event)

        return outcome

    def _run(
        self,
        app: ManagedApplication,
        plan: ReconciliationPlan,
        cancel_event: Optional[threading.Event],
    ) -> ExecutionOutcome:
        outcome = ExecutionOutcome()
        applied_unverified: Set[ResourceKey] = set()
        api_versions: Dict[ResourceKey, str] = {a.key: a.api_version for a in plan.actions}
        actions = list(plan.actions)

        for index, action in enumerate(actions):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("%s: sync cancelled before %s", app.name, action.key)
                outcome.cancelled = True
                self._skip_rest(outcome, actions[index:], "cancelled")
                return outcome

            if app.sync_policy.health_check:
                try:
                    self._await_dependencies(app, action, applied_unverified, api_versions, cancel_event)
                except _Cancelled:
                    outcome.cancelled = True
                    self._skip_rest(outcome, actions[index:], "cancelled")
                    return outcome
                except ApplyFatalError as e:
                    logger.error("%s: %s", app.name, e.message)
                    outcome.aborted = True
                    outcome.error = e
                    self._skip_rest(outcome, actions[index:], f"dependency not healthy: {e.message}")
                    return outcome

            try:
                result, error = self._apply_with_retry(app, action, cancel_event)
            except _Cancelled:
                logger.info("%s: sync cancelled while retrying %s", app.name, action.key)
                outcome.cancelled = True
                self._skip_rest(outcome, actions[index:], "cancelled")
                return outcome
            outcome.results.append(result)

            if error is not None:
                logger.error("%s: aborting sync at %s: %s", app.name, action.key, error.message)
                outcome.aborted = True
                outcome.error = error
                self._skip_rest(outcome, actions[index + 1:], "aborted after earlier failure")
                return outcome

            if action.action != ActionType.DELETE:
                applied_unverified.add(action.key)

        return outcome

    @staticmethod
    def _skip_rest(outcome: ExecutionOutcome, actions: List[PlanAction], reason: str) -> None:
        for action in actions:
            outcome.results.append(ActionResult(str(action.key), action.action, ActionStatus.SKIPPED, 0, reason))

    def _pause(self, seconds: float, cancel_event: Optional[threading.Event]) -> bool:
        """Wait ``seconds``; returns True if cancellation was requested."""
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel_event is not None:
            cancel_event.wait(seconds)
        else:
            time.sleep(seconds)
        return cancel_event is not None and cancel_event.is_set()

    def _apply_with_retry(
        self,
        app: ManagedApplication,
        action: PlanAction,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Apply one action, retrying transient errors with backoff.

        Raises:
            _Cancelled: If cancellation is requested while waiting to retry
        """
        state = RetryState()

        while True:
            delay = state.next_attempt_at - self._clock()
            if delay > 0 and self._pause(delay, cancel_event):
                raise _Cancelled()

            try:
                self._apply(action)
                logger.info("%s: %s %s", app.name, action.action.value, action.key)
                return ActionResult(str(action.key), action.action, ActionStatus.APPLIED, state.attempts + 1), None
            except ApplyTransientError as e:
                delay = state.record_failure(self.retry_policy, self._clock(), e.message)
                if state.exhausted(self.retry_policy):
                    message = f"gave up after {state.attempts} attempts: {e.message}"
                    return ActionResult(str(action.key), action.action, ActionStatus.FAILED, state.attempts, message), e
                logger.warning(
                    "%s: %s %s failed (attempt %d/%d), retrying in %.1fs: %s",
                    app.name, action.action.value, action.key,
                    state.attempts, self.retry_policy.max_attempts, delay, e.message,
                )
            except ApplyFatalError as e:
                return ActionResult(str(action.key), action.action, ActionStatus.FAILED, state.attempts + 1, e.message), e

    def _apply(self, action: PlanAction) -> None:
        if action.action == ActionType.CREATE:
            try:
                self.cluster.create(Resource.from_body(action.payload))
            except ApplyTransientError as e:
                if e.status != 409:
                    raise
                # Created by someone else since observation; take it over
                self.cluster.patch(action.key, action.api_version, action.payload)
        elif action.action == ActionType.UPDATE:
            self.cluster.patch(action.key, action.api_version, action.payload)
        elif action.action == ActionType.DELETE:
            self.cluster.delete(action.key, action.api_version)

    def _await_dependencies(
        self,
        app: ManagedApplication,
        action: PlanAction,
        applied_unverified: Set[ResourceKey],
        api_versions: Dict[ResourceKey, str],
        cancel_event: Optional[threading.Event],
    ) -> None:
        """Block until every dependency applied in this cycle is healthy."""
        for dep in action.depends_on:
            if dep not in applied_unverified:
                continue
            self._await_healthy(app, dep, api_versions[dep], cancel_event)
            applied_unverified.discard(dep)

    def _await_healthy(
        self,
        app: ManagedApplication,
        key: ResourceKey,
        api_version: str,
        cancel_event: Optional[threading.Event],
    ) -> None:
        deadline = self._clock() + self.health_timeout
        status = HealthStatus.UNKNOWN

        while True:
            try:
                status = self.observer.observe_keys([key], {key: api_version}).get(key).health
            except ObservationError as e:
                logger.warning("%s: cannot read %s: %s", app.name, key, e.message)
                status = HealthStatus.UNKNOWN
            if status == HealthStatus.HEALTHY:
                return
            if status == HealthStatus.DEGRADED:
                raise ApplyFatalError(f"{key} is Degraded", str(key))
            if self._clock() >= deadline:
                break
            logger.debug("%s: waiting for %s (%s)", app.name, key, status.value)
            if self._pause(self.health_poll_interval, cancel_event):
                raise _Cancelled()

        raise ApplyFatalError(
            f"{key} did not become healthy within {self.health_timeout:.0f}s (last: {status.value})", str(key)
        )

    def rollback(
        self,
        app: ManagedApplication,
        last_good: DesiredStateSnapshot,
        outcome: ExecutionOutcome,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Re-apply the last known-good snapshot, then re-diff to check convergence."""
        logger.warning("%s: rolling back to known-good revision %s", app.name, last_good.revision[:12])
        try:
            live = self.observer.observe(app, last_good)
            plan = self.planner.plan(app, last_good, live)
            rollback_outcome = self._run(app, plan, cancel_event)
            outcome.rollback_results = rollback_outcome.results
            outcome.rolled_back = rollback_outcome.succeeded

            # Fresh diff right away: the rollback is only final if nothing drifted meanwhile
            verify = self.planner.plan(app, last_good, self.observer.observe(app, last_good))
            outcome.rollback_converged = outcome.rolled_back and verify.is_empty
        except ReconcilerError as e:
            logger.error("%s: rollback failed: %s", app.name, e.message)
            outcome.rolled_back = False
            outcome.rollback_converged = False
            return

        if outcome.rollback_converged:
            logger.info("%s: rollback to %s converged", app.name, last_good.revision[:12])
        else:
            logger.warning("%s: rollback to %s did not converge", app.name, last_good.revision[:12])

    def assess_health(self, desired: DesiredStateSnapshot) -> HealthStatus:
        """Worst-of health across every desired resource.

        Raises:
            ObservationError: If the cluster API is unreachable
        """
        live = self.observer.observe_resources(desired.resources())
        return worst_health(entry.health for entry in live.resources.values())


class _Cancelled(Exception):
    pass
