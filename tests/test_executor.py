"""Tests for sync execution: retries, health gating, cancellation and rollback."""

import threading
import time

from gitops_controller.exceptions import ApplyFatalError, ApplyTransientError
from gitops_controller.executor import RetryPolicy, RetryState, SyncExecutor
from gitops_controller.models import (
    LAST_APPLIED_ANNOTATION,
    ActionStatus,
    HealthStatus,
    ResourceKey,
    SyncPolicy,
)

from manifests import configmap, deployment, namespace, pvc, snapshot

SETTINGS = ResourceKey("ConfigMap", "web", "settings")
EXTRA = ResourceKey("ConfigMap", "web", "zz-extra")
API = ResourceKey("Deployment", "web", "api")
DATA = ResourceKey("PersistentVolumeClaim", "web", "data")


def _plan(observer, planner, app, desired):
    return planner.plan(app, desired, observer.observe(app, desired))


def _statuses(outcome):
    return [r.status for r in outcome.results]


def test_retry_policy_backoff_is_capped():
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=5.0)
    assert [policy.delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_retry_state():
    policy = RetryPolicy(max_attempts=2, base_delay=3.0)
    state = RetryState()

    assert state.ready(0.0)
    assert state.record_failure(policy, 100.0, "boom") == 3.0
    assert not state.ready(102.0)
    assert state.ready(103.0)
    assert not state.exhausted(policy)

    state.record_failure(policy, 103.0, "boom again")
    assert state.exhausted(policy)
    assert state.last_error == "boom again"

    state.reset()
    assert state.attempts == 0 and state.ready(0.0)


def test_execute_applies_plan_in_order(cluster, observer, planner, executor, app):
    desired = snapshot(app, [deployment("api"), configmap("settings"), namespace("web")])

    outcome = executor.execute(app, _plan(observer, planner, app, desired))

    assert outcome.succeeded
    assert _statuses(outcome) == [ActionStatus.APPLIED] * 3
    assert [key.kind for _, key in cluster.mutations] == ["Namespace", "ConfigMap", "Deployment"]
    assert LAST_APPLIED_ANNOTATION in cluster.objects[API]["metadata"]["annotations"]


def test_execute_retries_transient_errors(cluster, observer, planner, executor, clock, app):
    cluster.fail("create", SETTINGS, ApplyTransientError("throttled", status=429), ApplyTransientError("throttled", status=429))
    desired = snapshot(app, [configmap("settings")])

    outcome = executor.execute(app, _plan(observer, planner, app, desired))

    assert outcome.succeeded
    assert outcome.results[0].status == ActionStatus.APPLIED
    assert outcome.results[0].attempts == 3
    assert clock.sleeps == [1.0, 2.0]
    assert SETTINGS in cluster.objects


def test_execute_gives_up_after_max_attempts(cluster, observer, planner, executor, app):
    cluster.fail("create", SETTINGS, *[ApplyTransientError("unavailable", status=503) for _ in range(3)])
    desired = snapshot(app, [configmap("settings"), deployment("api")])

    outcome = executor.execute(app, _plan(observer, planner, app, desired))

    assert outcome.aborted
    assert isinstance(outcome.error, ApplyTransientError)
    assert outcome.results[0].status == ActionStatus.FAILED
    assert outcome.results[0].attempts == 3
    assert "gave up after 3 attempts" in outcome.results[0].message
    assert outcome.results[1].status == ActionStatus.SKIPPED
    assert API not in cluster.objects


def test_execute_fatal_error_aborts_without_retry(cluster, observer, planner, executor, clock, app):
    cluster.fail("create", SETTINGS, ApplyFatalError("admission webhook denied the request", status=422))
    desired = snapshot(app, [configmap("settings"), deployment("api")])

    outcome = executor.execute(app, _plan(observer, planner, app, desired))

    assert outcome.aborted
    assert outcome.results[0].status == ActionStatus.FAILED
    assert outcome.results[0].attempts == 1
    assert outcome.results[1].status == ActionStatus.SKIPPED
    assert outcome.results[1].message == "aborted after earlier failure"
    assert clock.sleeps == []
    assert not outcome.rolled_back


def test_execute_create_conflict_falls_back_to_patch(cluster, observer, planner, executor, app):
    desired = snapshot(app, [configmap("settings", {"mode": "desired"})])
    plan = _plan(observer, planner, app, desired)
    cluster.put(configmap("settings", {"mode": "racing"}, namespace="web"))

    outcome = executor.execute(app, plan)

    assert outcome.succeeded
    assert cluster.objects[SETTINGS]["data"] == {"mode": "desired"}
    assert ("patch", SETTINGS) in cluster.mutations


def test_execute_waits_for_dependency_health(cluster, observer, planner, executor, clock, app):
    desired = snapshot(app, [
        pvc("data"),
        deployment("api", volumes=[{"name": "data", "persistentVolumeClaim": {"claimName": "data"}}]),
    ])
    plan = _plan(observer, planner, app, desired)
    cluster.status_overrides[DATA] = {"phase": "Pending"}

    def bind_after_first_poll(seconds):
        clock.now += seconds
        cluster.status_overrides.pop(DATA, None)

    executor._sleep = bind_after_first_poll

    outcome = executor.execute(app, plan)

    assert outcome.succeeded
    assert API in cluster.objects


def test_execute_health_timeout_aborts(cluster, observer, planner, executor, clock, app):
    desired = snapshot(app, [
        pvc("data"),
        deployment("api", volumes=[{"name": "data", "persistentVolumeClaim": {"claimName": "data"}}]),
    ])
    plan = _plan(observer, planner, app, desired)
    cluster.status_overrides[DATA] = {"phase": "Pending"}

    outcome = executor.execute(app, plan)

    assert outcome.aborted
    assert isinstance(outcome.error, ApplyFatalError)
    assert "did not become healthy" in outcome.error.message
    assert _statuses(outcome) == [ActionStatus.APPLIED, ActionStatus.SKIPPED]
    assert outcome.results[1].message.startswith("dependency not healthy")
    assert sum(clock.sleeps) == 10.0
    assert API not in cluster.objects


def test_execute_degraded_dependency_aborts_immediately(cluster, observer, planner, executor, clock, app):
    desired = snapshot(app, [
        pvc("data"),
        deployment("api", volumes=[{"name": "data", "persistentVolumeClaim": {"claimName": "data"}}]),
    ])
    plan = _plan(observer, planner, app, desired)
    cluster.status_overrides[DATA] = {"phase": "Lost"}

    outcome = executor.execute(app, plan)

    assert outcome.aborted
    assert "is Degraded" in outcome.error.message
    assert clock.sleeps == []


def test_execute_without_health_check_does_not_wait(cluster, observer, planner, executor, clock, app):
    app.sync_policy = SyncPolicy(automated=True, health_check=False)
    desired = snapshot(app, [
        pvc("data"),
        deployment("api", volumes=[{"name": "data", "persistentVolumeClaim": {"claimName": "data"}}]),
    ])
    plan = _plan(observer, planner, app, desired)
    cluster.status_overrides[DATA] = {"phase": "Pending"}

    outcome = executor.execute(app, plan)

    assert outcome.succeeded
    assert clock.sleeps == []


def test_execute_cancelled_before_start(cluster, observer, planner, executor, app):
    desired = snapshot(app, [configmap("settings")])
    cancel = threading.Event()
    cancel.set()

    outcome = executor.execute(app, _plan(observer, planner, app, desired), cancel)

    assert outcome.cancelled
    assert not outcome.succeeded
    assert outcome.results[0].message == "cancelled"
    assert cluster.mutations == []


def test_execute_cancelled_between_actions(cluster, observer, planner, executor, app):
    desired = snapshot(app, [configmap("settings"), deployment("api")])
    plan = _plan(observer, planner, app, desired)
    cancel = threading.Event()
    cluster.after_mutation = lambda operation, key: cancel.set()

    outcome = executor.execute(app, plan, cancel)

    assert outcome.cancelled
    assert _statuses(outcome) == [ActionStatus.APPLIED, ActionStatus.SKIPPED]
    assert SETTINGS in cluster.objects
    assert API not in cluster.objects
    assert not outcome.rolled_back


def test_execute_cancelled_during_retry_backoff(cluster, observer, planner, retry_policy, clock, app):
    desired = snapshot(app, [configmap("settings")])
    plan = _plan(observer, planner, app, desired)
    cancel = threading.Event()
    cluster.fail("create", SETTINGS, *[ApplyTransientError("throttled", status=429) for _ in range(2)])

    def sleep(seconds):
        clock.sleep(seconds)
        cancel.set()

    executor = SyncExecutor(cluster, observer, planner, retry_policy, clock=clock, sleep=sleep)
    outcome = executor.execute(app, plan, cancel)

    assert outcome.cancelled
    assert not outcome.aborted
    assert _statuses(outcome) == [ActionStatus.SKIPPED]
    assert clock.sleeps == [1.0]
    assert SETTINGS not in cluster.objects


def test_cancel_interrupts_long_backoff(cluster, observer, planner, app):
    desired = snapshot(app, [configmap("settings")])
    plan = _plan(observer, planner, app, desired)
    cancel = threading.Event()
    cluster.fail("create", SETTINGS, ApplyTransientError("throttled", status=429))
    executor = SyncExecutor(cluster, observer, planner, RetryPolicy(max_attempts=3, base_delay=60.0, max_delay=60.0))

    timer = threading.Timer(0.05, cancel.set)
    timer.start()
    started = time.monotonic()
    try:
        outcome = executor.execute(app, plan, cancel)
    finally:
        timer.cancel()

    assert outcome.cancelled
    assert time.monotonic() - started < 30
    assert SETTINGS not in cluster.objects


def _sync_known_good(cluster, observer, planner, executor, app):
    good = snapshot(app, [configmap("settings", {"mode": "good"})], revision="good")
    assert executor.execute(app, _plan(observer, planner, app, good)).succeeded
    bad = snapshot(app, [configmap("settings", {"mode": "bad"}), configmap("zz-extra")], revision="bad")
    cluster.fail("create", EXTRA, ApplyFatalError("forbidden", status=403))
    return good, bad


def test_execute_rolls_back_with_self_heal(cluster, observer, planner, executor, app):
    app.sync_policy = SyncPolicy(automated=True, self_heal=True)
    good, bad = _sync_known_good(cluster, observer, planner, executor, app)

    outcome = executor.execute(app, _plan(observer, planner, app, bad), last_good=good)

    assert outcome.aborted
    assert outcome.rolled_back
    assert outcome.rollback_converged
    assert [r.status for r in outcome.rollback_results] == [ActionStatus.APPLIED]
    assert cluster.objects[SETTINGS]["data"] == {"mode": "good"}


def test_execute_does_not_roll_back_without_self_heal(cluster, observer, planner, executor, app):
    good, bad = _sync_known_good(cluster, observer, planner, executor, app)

    outcome = executor.execute(app, _plan(observer, planner, app, bad), last_good=good)

    assert outcome.aborted
    assert not outcome.rolled_back
    assert outcome.rollback_converged is None
    assert cluster.objects[SETTINGS]["data"] == {"mode": "bad"}


def test_execute_does_not_roll_back_to_the_failing_snapshot(cluster, observer, planner, executor, app):
    app.sync_policy = SyncPolicy(automated=True, self_heal=True)
    _, bad = _sync_known_good(cluster, observer, planner, executor, app)

    outcome = executor.execute(app, _plan(observer, planner, app, bad), last_good=bad)

    assert outcome.aborted
    assert not outcome.rolled_back


def test_execute_rollback_failure_is_reported(cluster, observer, planner, executor, app):
    app.sync_policy = SyncPolicy(automated=True, self_heal=True)
    good, bad = _sync_known_good(cluster, observer, planner, executor, app)
    cluster.after_mutation = lambda operation, key: setattr(cluster, "unreachable", True)

    outcome = executor.execute(app, _plan(observer, planner, app, bad), last_good=good)

    assert outcome.aborted
    assert not outcome.rolled_back
    assert outcome.rollback_converged is False


def test_assess_health(cluster, observer, planner, executor, app):
    desired = snapshot(app, [configmap("settings"), deployment("api")])
    assert executor.assess_health(desired) == HealthStatus.MISSING

    executor.execute(app, _plan(observer, planner, app, desired))
    assert executor.assess_health(desired) == HealthStatus.HEALTHY

    cluster.status_overrides[API] = {"conditions": [{"type": "Progressing", "reason": "ProgressDeadlineExceeded"}]}
    assert executor.assess_health(desired) == HealthStatus.DEGRADED
