"""Shared test fixtures: an in-memory cluster, a fake clock and wired-up components."""

import base64
import copy
import logging
import threading
import uuid
from collections import defaultdict, deque
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from gitops_controller.config import reset_config
from gitops_controller.exceptions import ApplyFatalError, ApplyTransientError, ObservationError
from gitops_controller.executor import RetryPolicy, SyncExecutor
from gitops_controller.kinds import default_registry
from gitops_controller.log import PACKAGE_LOGGER
from gitops_controller.models import ManagedApplication, Resource, ResourceKey, SyncPolicy
from gitops_controller.observer import LiveStateObserver
from gitops_controller.planner import Planner


def apply_merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> None:
    """RFC 7386 merge, in place."""
    for k, v in patch.items():
        if v is None:
            target.pop(k, None)
        elif isinstance(v, dict):
            if not isinstance(target.get(k), dict):
                target[k] = {}
            apply_merge_patch(target[k], v)
        else:
            target[k] = copy.deepcopy(v)


class FakeCluster:
    """In-memory stand-in for ClusterClient.

    Objects get the server-populated fields a real API server would add, and
    workloads report a finished rollout unless ``status_overrides`` says
    otherwise. Failures are injected per (operation, key).
    """

    def __init__(self):
        self.registry = default_registry()
        self.objects: Dict[ResourceKey, Dict[str, Any]] = {}
        self.mutations: List[Tuple[str, ResourceKey]] = []
        self.status_overrides: Dict[ResourceKey, Dict[str, Any]] = {}
        self.unreachable = False
        self.after_mutation: Optional[Callable[[str, ResourceKey], None]] = None
        self._failures = defaultdict(deque)
        self._lock = threading.Lock()

    def fail(self, operation: str, key: ResourceKey, *errors: Exception) -> None:
        self._failures[(operation, key)].extend(errors)

    def put(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Create an object behind the controller's back."""
        resource = Resource.from_body(copy.deepcopy(body))
        with self._lock:
            obj = resource.body
            self._populate(resource.key, obj)
            self.objects[resource.key] = obj
        return copy.deepcopy(obj)

    # ClusterClient interface

    def get(self, key: ResourceKey, api_version: str) -> Optional[Dict[str, Any]]:
        self._check_reachable(str(key))
        with self._lock:
            obj = self.objects.get(key)
            return self._view(key, obj) if obj is not None else None

    def list(self, api_version: str, kind: str, namespace: Optional[str] = None,
             label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        self._check_reachable(kind)
        label, _, value = (label_selector or "").partition("=")
        items = []
        with self._lock:
            for key in sorted(self.objects, key=ResourceKey.sort_key):
                obj = self.objects[key]
                if key.kind != kind or (namespace and key.namespace != namespace):
                    continue
                if label and (obj["metadata"].get("labels") or {}).get(label) != value:
                    continue
                items.append(self._view(key, obj))
        return items

    def create(self, resource: Resource) -> Dict[str, Any]:
        key = resource.key
        self._maybe_fail("create", key)
        with self._lock:
            if key in self.objects:
                raise ApplyTransientError(f"{key} already exists", str(key), 409)
            obj = copy.deepcopy(resource.body)
            self._populate(key, obj)
            self.objects[key] = obj
            self.mutations.append(("create", key))
        self._notify("create", key)
        return copy.deepcopy(obj)

    def patch(self, key: ResourceKey, api_version: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("patch", key)
        with self._lock:
            obj = self.objects.get(key)
            if obj is None:
                raise ApplyFatalError(f"{key} not found", str(key), 404)
            apply_merge_patch(obj, patch)
            self._populate(key, obj)
            self.mutations.append(("patch", key))
        self._notify("patch", key)
        return copy.deepcopy(obj)

    def delete(self, key: ResourceKey, api_version: str) -> bool:
        self._maybe_fail("delete", key)
        with self._lock:
            existed = self.objects.pop(key, None) is not None
            self.mutations.append(("delete", key))
        self._notify("delete", key)
        return existed

    # Internals

    def _check_reachable(self, what: str) -> None:
        if self.unreachable:
            raise ObservationError(f"Failed to read {what}: connection refused", what)

    def _maybe_fail(self, operation: str, key: ResourceKey) -> None:
        queue = self._failures.get((operation, key))
        if queue:
            raise queue.popleft()

    def _notify(self, operation: str, key: ResourceKey) -> None:
        if self.after_mutation is not None:
            self.after_mutation(operation, key)

    def _view(self, key: ResourceKey, obj: Dict[str, Any]) -> Dict[str, Any]:
        view = copy.deepcopy(obj)
        if key in self.status_overrides:
            view["status"] = copy.deepcopy(self.status_overrides[key])
        return view

    def _populate(self, key: ResourceKey, obj: Dict[str, Any]) -> None:
        metadata = obj.setdefault("metadata", {})
        metadata.setdefault("uid", uuid.uuid4().hex)
        metadata.setdefault("creationTimestamp", "2026-01-01T00:00:00Z")
        metadata.setdefault("generation", 1)
        metadata["resourceVersion"] = str(int(metadata.get("resourceVersion", "0")) + 1)

        if key.kind == "Secret" and obj.get("stringData"):
            data = obj.setdefault("data", {})
            for k, v in obj.pop("stringData").items():
                data[k] = base64.b64encode(str(v).encode("utf-8")).decode("ascii")
        if key.kind == "Service":
            obj.setdefault("spec", {}).setdefault("clusterIP", "10.96.0.10")

        status = self._server_status(key, obj)
        if status is not None:
            obj["status"] = status

    @staticmethod
    def _server_status(key: ResourceKey, obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        spec = obj.get("spec") or {}
        if key.kind == "Deployment":
            replicas = spec.get("replicas", 1)
            return {
                "observedGeneration": 1,
                "replicas": replicas,
                "updatedReplicas": replicas,
                "readyReplicas": replicas,
                "availableReplicas": replicas,
            }
        if key.kind == "PersistentVolumeClaim":
            return {"phase": "Bound"}
        if key.kind == "Namespace":
            return {"phase": "Active"}
        if key.kind == "Job":
            return {"conditions": [{"type": "Complete", "status": "True"}]}
        return None


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, now: float = 1000.0):
        self.now = now
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture(autouse=True)
def package_logger():
    """Undo configure_logging so caplog sees package records."""
    yield
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def observer(cluster, registry):
    return LiveStateObserver(cluster, registry)


@pytest.fixture
def planner(registry):
    return Planner(registry)


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0)


@pytest.fixture
def executor(cluster, observer, planner, retry_policy, clock):
    return SyncExecutor(
        cluster,
        observer,
        planner,
        retry_policy,
        health_timeout=10.0,
        health_poll_interval=2.0,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def repo(tmp_path):
    """Local manifest directory used as an application source."""
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def app(repo):
    return ManagedApplication(
        name="guestbook",
        repo_url=str(repo),
        destination_namespace="web",
        sync_policy=SyncPolicy(automated=True),
    )
