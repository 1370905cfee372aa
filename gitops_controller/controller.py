"""Reconciliation controller: per-application loops on a shared worker pool."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from gitops_controller.exceptions import (
    ApplicationExistsError,
    ApplicationNotFoundError,
    InvalidResourceSpec,
    ObservationError,
    ReconcilerError,
    RenderError,
    SourceUnavailable,
)
from gitops_controller.executor import ExecutionOutcome, RetryPolicy, RetryState, SyncExecutor
from gitops_controller.models import (
    ApplicationStatus,
    DesiredStateSnapshot,
    HealthStatus,
    LiveStateSnapshot,
    ManagedApplication,
    ReconciliationPlan,
    SyncPolicy,
    SyncResult,
    SyncStatus,
    worst_health,
)
from gitops_controller.observer import LiveStateObserver
from gitops_controller.planner import Planner
from gitops_controller.tracker import ApplicationStateTracker

logger = logging.getLogger(__name__)

TRIGGER_POLL = "poll"
TRIGGER_REFRESH = "refresh"
TRIGGER_MANUAL = "manual"

# Coalesced triggers keep the strongest one
_TRIGGER_RANK = {TRIGGER_POLL: 0, TRIGGER_REFRESH: 1, TRIGGER_MANUAL: 2}


def _stronger(current: Optional[str], trigger: str) -> str:
    if current is None or _TRIGGER_RANK[trigger] > _TRIGGER_RANK[current]:
        return trigger
    return current


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Target:
    """Observer and executor bound to one destination cluster."""
    observer: LiveStateObserver
    executor: SyncExecutor


@dataclass
class _AppLoop:
    """Scheduling and run state of one application."""
    app: ManagedApplication
    lock: threading.Lock = field(default_factory=threading.Lock)
    run_lock: threading.Lock = field(default_factory=threading.Lock)
    cancel: threading.Event = field(default_factory=threading.Event)
    active: bool = False
    rerun: Optional[str] = None
    removed: bool = False
    next_poll_at: float = 0.0
    retry: RetryState = field(default_factory=RetryState)
    last_good: Optional[DesiredStateSnapshot] = None
    last_error: Optional[ReconcilerError] = None
    future: Optional[Future] = None

    def due(self, now: float) -> bool:
        if self.retry.attempts:
            return self.retry.ready(now)
        return now >= self.next_poll_at


class ReconciliationController:
    """Keeps every registered application converged to its manifest source.

    Each application has its own loop: at most one cycle runs per application
    at a time, triggers arriving during a cycle coalesce into one re-run, and
    a failure in one application never touches another.
    """

    def __init__(
        self,
        source,
        observer: LiveStateObserver,
        planner: Planner,
        executor: SyncExecutor,
        tracker: ApplicationStateTracker,
        poll_interval: float = 180.0,
        max_workers: int = 4,
        source_max_attempts: int = 5,
        retry_policy: Optional[RetryPolicy] = None,
        target_factory: Optional[Callable[[str], Target]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the controller.

        Args:
            source: Manifest source (fetch/resolve_revision/forget)
            observer: Live-state observer for the default cluster
            planner: Reconciliation planner
            executor: Sync executor for the default cluster
            tracker: Application state tracker
            poll_interval: Seconds between polls of one application
            max_workers: Size of the worker pool
            source_max_attempts: Failed fetches before an application is reported stalled
            retry_policy: Backoff for source and observation failures
            target_factory: Builds an observer/executor pair for a named kube context
            clock: Monotonic clock
        """
        self.source = source
        self.planner = planner
        self.tracker = tracker
        self.poll_interval = poll_interval
        self.source_max_attempts = source_max_attempts
        self.retry_policy = retry_policy or RetryPolicy()
        self._default_target = Target(observer, executor)
        self._target_factory = target_factory
        self._targets: Dict[str, Target] = {}
        self._clock = clock
        self._apps: Dict[str, _AppLoop] = {}
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reconcile")

    @classmethod
    def from_config(cls, config, cluster=None) -> "ReconciliationController":
        """Build a controller and its components from a Config.

        Args:
            config: Config instance
            cluster: ClusterClient for the default context (built from config if omitted)

        Raises:
            ClusterAccessError: If the cluster cannot be reached
            ConfigurationError: If the state file is unreadable
        """
        from gitops_controller.cluster import ClusterClient
        from gitops_controller.kinds import default_registry
        from gitops_controller.source import SourceRouter

        registry = default_registry()
        planner = Planner(registry)
        retry_policy = RetryPolicy(
            max_attempts=config.get("apply_max_attempts"),
            base_delay=config.get("retry_base_delay"),
            max_delay=config.get("retry_max_delay"),
        )

        def build_target(client) -> Target:
            observer = LiveStateObserver(client, registry)
            executor = SyncExecutor(
                client,
                observer,
                planner,
                retry_policy,
                health_timeout=config.get("health_timeout"),
                health_poll_interval=config.get("health_poll_interval"),
            )
            return Target(observer, executor)

        def client_for(context: Optional[str]):
            return ClusterClient(
                kubeconfig=config.kubeconfig,
                context=context,
                max_concurrency=config.api_concurrency,
                request_timeout=config.request_timeout,
            )

        default = build_target(cluster or client_for(config.cluster_context))

        tracker = ApplicationStateTracker(config.history_limit, config.state_file)
        tracker.load()

        return cls(
            source=SourceRouter(config.cache_dir, registry),
            observer=default.observer,
            planner=planner,
            executor=default.executor,
            tracker=tracker,
            poll_interval=config.poll_interval,
            max_workers=config.max_workers,
            source_max_attempts=config.get("source_max_attempts"),
            retry_policy=retry_policy,
            target_factory=lambda context: build_target(client_for(context)),
        )

    # Registry

    def register(self, app: ManagedApplication) -> ApplicationStatus:
        """Start managing an application; its first poll is due immediately.

        Raises:
            ApplicationExistsError: If the name is already registered
        """
        with self._lock:
            if app.name in self._apps:
                raise ApplicationExistsError(app.name)
            self._apps[app.name] = _AppLoop(app=app, last_good=self.tracker.known_good(app.name))
        logger.info("Registered application %s (%s)", app.name, app.repo_url)
        return self.tracker.track(app.name)

    def unregister(self, name: str, cascade: bool = False) -> Optional[ExecutionOutcome]:
        """Stop managing an application.

        An active cycle is cancelled and waited for. With ``cascade`` the
        application's tracked live resources are deleted in reverse order.

        Raises:
            ApplicationNotFoundError: If the name is not registered
            ObservationError: If cascade deletion cannot observe the cluster
            ApplyFatalError: If a cascade deletion is rejected
        """
        with self._lock:
            loop = self._apps.pop(name, None)
        if loop is None:
            raise ApplicationNotFoundError(name)

        loop.removed = True
        loop.cancel.set()
        outcome = None
        with loop.run_lock:
            if cascade:
                outcome = self._cascade_delete(loop.app)

        self.tracker.forget(name)
        self.source.forget(name)
        logger.info("Unregistered application %s", name)

        if outcome is not None and outcome.error is not None:
            raise outcome.error
        return outcome

    def _cascade_delete(self, app: ManagedApplication) -> ExecutionOutcome:
        target = self._target(app)
        live = target.observer.tracked_resources(app)
        plan = self.planner.plan(app, DesiredStateSnapshot("", {}), live, prune=True)
        logger.info("%s: deleting %d tracked resources", app.name, len(plan.actions))
        return target.executor.execute(replace(app, sync_policy=replace(app.sync_policy, self_heal=False)), plan)

    def set_policy(self, name: str, policy: SyncPolicy) -> ManagedApplication:
        """Replace an application's sync policy; takes effect from the next cycle.

        Raises:
            ApplicationNotFoundError: If the name is not registered
        """
        loop = self._loop(name)
        with loop.lock:
            loop.app = replace(loop.app, sync_policy=policy)
            return loop.app

    def sync_registry(self, apps: List[ManagedApplication]) -> Tuple[List[str], List[str], List[str]]:
        """Bring the registered applications in line with ``apps``.

        Applications missing from ``apps`` are unregistered without cascade.
        A changed sync policy goes through ``set_policy``; any other change
        replaces the definition and makes the application due immediately.

        Returns:
            Names of the added, removed and updated applications
        """
        wanted = {app.name: app for app in apps}
        with self._lock:
            current = {name: loop.app for name, loop in self._apps.items()}

        added, removed, updated = [], [], []
        for name in sorted(set(current) - set(wanted)):
            self.unregister(name)
            removed.append(name)

        for name in sorted(wanted):
            app = wanted[name]
            if name not in current:
                self.register(app)
                added.append(name)
            elif app != current[name]:
                if replace(current[name], sync_policy=app.sync_policy) == app:
                    self.set_policy(name, app.sync_policy)
                else:
                    self._redefine(app)
                updated.append(name)
        return added, removed, updated

    def _redefine(self, app: ManagedApplication) -> None:
        loop = self._loop(app.name)
        with loop.lock:
            loop.app = app
            loop.next_poll_at = 0.0
        self.source.forget(app.name)
        logger.info("Updated application %s (%s)", app.name, app.repo_url)

    def applications(self) -> List[ManagedApplication]:
        with self._lock:
            return [self._apps[name].app for name in sorted(self._apps)]

    def application(self, name: str) -> ManagedApplication:
        return self._loop(name).app

    def _loop(self, name: str) -> _AppLoop:
        with self._lock:
            try:
                return self._apps[name]
            except KeyError:
                raise ApplicationNotFoundError(name)

    def _target(self, app: ManagedApplication) -> Target:
        context = app.destination_context
        if not context or self._target_factory is None:
            return self._default_target
        with self._lock:
            if context not in self._targets:
                self._targets[context] = self._target_factory(context)
            return self._targets[context]

    # Queries

    def status(self, name: str) -> ApplicationStatus:
        return self.tracker.status(name)

    def history(self, name: str) -> List[SyncResult]:
        return self.tracker.history(name)

    def last_error(self, name: str) -> Optional[ReconcilerError]:
        """Error that ended the application's most recent cycle, if any."""
        return self._loop(name).last_error

    def preview(self, name: str) -> Tuple[ReconciliationPlan, LiveStateSnapshot]:
        """Fetch, observe and plan without applying anything.

        Raises:
            SourceUnavailable, RenderError, ObservationError, InvalidResourceSpec
        """
        app = self._loop(name).app
        target = self._target(app)
        desired = self.source.fetch(app)
        live = target.observer.observe(app, desired)
        return self.planner.plan(app, desired, live), live

    # Triggers

    def sync(self, name: str) -> Optional[SyncResult]:
        """Run a manual sync in the calling thread.

        Applies changes regardless of the automated policy and lets a
        Degraded application re-enter Syncing.

        Returns:
            The SyncResult, or None if a cycle was already running and the
            request was coalesced into its re-run
        """
        return self.run_cycle(name, TRIGGER_MANUAL)

    def refresh(self, name: str) -> Optional[SyncResult]:
        """Re-evaluate drift now; applies only when the policy is automated."""
        return self.run_cycle(name, TRIGGER_REFRESH)

    def trigger(self, name: str, trigger: str = TRIGGER_MANUAL) -> Future:
        """Queue a cycle on the worker pool."""
        self._loop(name)
        return self._pool.submit(self.run_cycle, name, trigger)

    def cancel(self, name: str) -> bool:
        """Ask the application's active cycle to stop before its next action.

        Returns:
            True if a cycle was running
        """
        loop = self._loop(name)
        with loop.lock:
            if not loop.active:
                return False
            loop.cancel.set()
            return True

    def run_cycle(self, name: str, trigger: str = TRIGGER_POLL) -> Optional[SyncResult]:
        """Run one reconciliation cycle, plus one coalesced re-run if triggered meanwhile.

        Never raises for reconciliation failures; they are reflected in the
        application's status and logs.

        Returns:
            The last cycle's SyncResult, or None if nothing was recorded or the
            trigger was coalesced into an already running cycle
        """
        loop = self._loop(name)
        with loop.lock:
            if loop.active:
                loop.rerun = _stronger(loop.rerun, trigger)
                logger.debug("%s: cycle in progress, coalescing %s trigger", name, trigger)
                return None
            loop.active = True
            loop.cancel.clear()

        result = None
        try:
            with loop.run_lock:
                while not loop.removed:
                    result = self._safe_reconcile(loop, trigger)
                    with loop.lock:
                        if loop.rerun is None:
                            break
                        trigger, loop.rerun = loop.rerun, None
                        loop.cancel.clear()
        finally:
            with loop.lock:
                loop.active = False
                loop.rerun = None
        return result

    def tick(self) -> List[Future]:
        """Queue a poll for every application that is due and idle."""
        now = self._clock()
        futures = []
        with self._lock:
            loops = list(self._apps.values())

        for loop in loops:
            with loop.lock:
                busy = loop.active or (loop.future is not None and not loop.future.done())
                if busy or not loop.due(now):
                    continue
                loop.future = self._pool.submit(self.run_cycle, loop.app.name, TRIGGER_POLL)
                futures.append(loop.future)
        return futures

    def run_forever(
        self,
        stop_event: threading.Event,
        tick_interval: float = 1.0,
        before_tick: Optional[Callable[[], object]] = None,
    ) -> None:
        """Poll applications until ``stop_event`` is set.

        ``before_tick`` runs ahead of every tick, e.g. to pick up registry changes.
        """
        logger.info(
            "Controller started: %d applications, poll interval %.0fs",
            len(self.applications()), self.poll_interval,
        )
        while not stop_event.is_set():
            if before_tick is not None:
                before_tick()
            self.tick()
            stop_event.wait(tick_interval)
        logger.info("Controller stopping")

    def shutdown(self, wait: bool = True) -> None:
        """Cancel active cycles and stop the worker pool."""
        with self._lock:
            loops = list(self._apps.values())
        for loop in loops:
            loop.cancel.set()
        self._pool.shutdown(wait=wait)

    # Cycle

    def _safe_reconcile(self, loop: _AppLoop, trigger: str) -> Optional[SyncResult]:
        try:
            return self._reconcile(loop, trigger)
        except Exception as e:
            # Isolation: one application's bug must not stop the others
            logger.exception("%s: unexpected error during reconciliation", loop.app.name)
            loop.last_error = ReconcilerError(f"Unexpected error during reconciliation: {e}")
            loop.next_poll_at = self._clock() + self.poll_interval
            return None

    def _reconcile(self, loop: _AppLoop, trigger: str) -> Optional[SyncResult]:
        with loop.lock:
            app = loop.app
            loop.last_error = None
        name = app.name
        target = self._target(app)
        manual = trigger == TRIGGER_MANUAL
        started = _now()
        current = self.tracker.status(name)
        revision = ""

        try:
            revision = self.source.resolve_revision(app)
            desired = self.source.fetch(app, revision)
        except SourceUnavailable as e:
            self._defer(loop, e, current, stall=True)
            return None
        except RenderError as e:
            self._reschedule(loop)
            reentry = manual or revision != current.revision
            return self._degrade(loop, current, revision, "", e, started, trigger, reentry)

        reentry = manual or desired.revision != current.revision
        if loop.last_good is None and current.sync_status == SyncStatus.SYNCED and current.digest == desired.digest:
            # Restarted with persisted state: the recorded digest was synced
            self._mark_good(loop, desired)

        if current.sync_status == SyncStatus.DEGRADED and not reentry:
            # Stays Degraded until a manual sync or a new revision
            self._reschedule(loop)
            return None

        if (
            trigger == TRIGGER_POLL
            and not app.sync_policy.self_heal
            and current.sync_status == SyncStatus.SYNCED
            and desired.digest == current.digest
        ):
            logger.debug("%s: digest unchanged, nothing to do", name)
            self._reschedule(loop)
            return None

        try:
            live = target.observer.observe(app, desired)
        except ObservationError as e:
            self._defer(loop, e, current, stall=False)
            return None

        try:
            plan = self.planner.plan(app, desired, live)
        except InvalidResourceSpec as e:
            self._reschedule(loop)
            return self._degrade(loop, current, desired.revision, desired.digest, e, started, trigger, reentry)

        self._reschedule(loop)
        orphans = tuple(str(k) for k in plan.orphans)
        if orphans:
            logger.warning("%s: %d orphaned resources (prune disabled): %s", name, len(orphans), ", ".join(orphans))

        if plan.is_empty:
            health = self._live_health(desired, live)
            self._mark_good(loop, desired)
            return self._finish(
                current,
                SyncResult(
                    application=name,
                    revision=desired.revision,
                    digest=desired.digest,
                    sync_status=SyncStatus.SYNCED,
                    health=health,
                    started_at=started,
                    finished_at=_now(),
                    orphans=orphans,
                    trigger=trigger,
                ),
                reentry,
            )

        if not self._should_apply(app, loop, desired, manual):
            changes = len(plan.actions)
            return self._finish(
                current,
                SyncResult(
                    application=name,
                    revision=desired.revision,
                    digest=desired.digest,
                    sync_status=SyncStatus.OUT_OF_SYNC,
                    health=self._live_health(desired, live),
                    started_at=started,
                    finished_at=_now(),
                    orphans=orphans,
                    trigger=trigger,
                    message=f"{changes} change{'s' if changes != 1 else ''} pending",
                ),
                reentry,
            )

        if current.sync_status == SyncStatus.SYNCED and not manual:
            self.tracker.transition(name, SyncStatus.OUT_OF_SYNC, revision=desired.revision, digest=desired.digest)
        self.tracker.transition(
            name,
            SyncStatus.SYNCING,
            revision=desired.revision,
            digest=desired.digest,
            message=f"applying {len(plan.actions)} actions",
            reentry=reentry,
        )
        logger.info("%s: syncing revision %s (%d actions)", name, desired.revision[:12], len(plan.actions))

        outcome = target.executor.execute(app, plan, loop.cancel, loop.last_good)
        return self._record_outcome(loop, app, target, desired, outcome, orphans, started, trigger)

    def _should_apply(
        self,
        app: ManagedApplication,
        loop: _AppLoop,
        desired: DesiredStateSnapshot,
        manual: bool,
    ) -> bool:
        if manual:
            return True
        if not app.sync_policy.automated:
            return False
        # Automated without self-heal applies new desired state but leaves live drift alone
        new_desired = loop.last_good is None or loop.last_good.digest != desired.digest
        return new_desired or app.sync_policy.self_heal

    def _record_outcome(
        self,
        loop: _AppLoop,
        app: ManagedApplication,
        target: Target,
        desired: DesiredStateSnapshot,
        outcome: ExecutionOutcome,
        orphans: Tuple[str, ...],
        started: datetime,
        trigger: str,
    ) -> SyncResult:
        name = app.name

        if outcome.cancelled:
            status = SyncStatus.OUT_OF_SYNC
            message = "sync cancelled"
            health = HealthStatus.UNKNOWN
        elif outcome.aborted:
            status = SyncStatus.DEGRADED
            loop.last_error = outcome.error
            message = outcome.error.message if outcome.error else "sync aborted"
            if outcome.rolled_back:
                message += f"; rolled back to {loop.last_good.revision[:12]}"
                if not outcome.rollback_converged:
                    message += " (not converged)"
            health = self._assess(target, desired)
        else:
            status = SyncStatus.SYNCED
            message = ""
            health = self._assess(target, desired)
            self._mark_good(loop, desired)

        result = SyncResult(
            application=name,
            revision=desired.revision,
            digest=desired.digest,
            sync_status=status,
            health=health,
            started_at=started,
            finished_at=_now(),
            actions=tuple(outcome.results),
            orphans=orphans,
            trigger=trigger,
            message=message,
            rolled_back=outcome.rolled_back,
        )
        self.tracker.record(result)
        if status == SyncStatus.DEGRADED:
            logger.error("%s: sync failed: %s", name, message)
        else:
            logger.info("%s: %s (%d applied)", name, status.value, result.applied_count)
        return result

    def _assess(self, target: Target, desired: DesiredStateSnapshot) -> HealthStatus:
        try:
            return target.executor.assess_health(desired)
        except ObservationError as e:
            logger.warning("Health assessment failed: %s", e.message)
            return HealthStatus.UNKNOWN

    @staticmethod
    def _live_health(desired: DesiredStateSnapshot, live: LiveStateSnapshot) -> HealthStatus:
        entries = (live.get(key) for key in desired.keys)
        return worst_health(entry.health for entry in entries if entry is not None)

    def _finish(self, current: ApplicationStatus, result: SyncResult, reentry: bool) -> Optional[SyncResult]:
        """Apply a cycle result without an apply; history only records changes."""
        unchanged = (
            current.sync_status == result.sync_status
            and current.digest == result.digest
            and current.message == result.message
        )
        if unchanged:
            self.tracker.transition(result.application, result.sync_status, health=result.health)
            return None

        if current.sync_status == SyncStatus.DEGRADED:
            self.tracker.transition(result.application, SyncStatus.SYNCING, reentry=reentry)
        self.tracker.record(result, reentry=reentry)
        return result

    def _degrade(
        self,
        loop: _AppLoop,
        current: ApplicationStatus,
        revision: str,
        digest: str,
        error: ReconcilerError,
        started: datetime,
        trigger: str,
        reentry: bool,
    ) -> Optional[SyncResult]:
        """Record a failure that retrying the same revision cannot fix."""
        name = loop.app.name
        loop.last_error = error
        if current.sync_status == SyncStatus.DEGRADED and current.revision == revision and not reentry:
            return None

        logger.error("%s: %s", name, error.message)
        if current.sync_status not in (SyncStatus.SYNCING, SyncStatus.UNKNOWN):
            self.tracker.transition(name, SyncStatus.SYNCING, revision=revision, reentry=True)

        result = SyncResult(
            application=name,
            revision=revision,
            digest=digest,
            sync_status=SyncStatus.DEGRADED,
            health=current.health,
            started_at=started,
            finished_at=_now(),
            trigger=trigger,
            message=error.message,
        )
        self.tracker.record(result)
        return result

    def _defer(self, loop: _AppLoop, error: ReconcilerError, current: ApplicationStatus, stall: bool) -> None:
        """Schedule a retry with backoff after a retryable failure."""
        loop.last_error = error
        delay = loop.retry.record_failure(self.retry_policy, self._clock(), error.message)
        logger.warning(
            "%s: %s (attempt %d, retrying in %.1fs)",
            loop.app.name, error.message, loop.retry.attempts, delay,
        )
        if (
            stall
            and loop.retry.attempts >= self.source_max_attempts
            and current.sync_status != SyncStatus.DEGRADED
        ):
            self.tracker.transition(
                loop.app.name,
                SyncStatus.SYNCING,
                message=f"stalled: source unavailable after {loop.retry.attempts} attempts: {error.message}",
            )

    def _reschedule(self, loop: _AppLoop) -> None:
        loop.retry.reset()
        loop.next_poll_at = self._clock() + self.poll_interval

    def _mark_good(self, loop: _AppLoop, desired: DesiredStateSnapshot) -> None:
        loop.last_good = desired
        self.tracker.remember_known_good(loop.app.name, desired)
