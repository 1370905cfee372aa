"""Data models for managed applications, state snapshots, plans and sync results."""

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


TRACKING_LABEL = "app.kubernetes.io/instance"
LAST_APPLIED_ANNOTATION = "gitops-controller/last-applied"
DEPENDS_ON_ANNOTATION = "gitops-controller/depends-on"
SYNC_WAVE_ANNOTATION = "gitops-controller/sync-wave"


class SyncStatus(str, Enum):
    """Sync state of a managed application."""
    UNKNOWN = "Unknown"
    OUT_OF_SYNC = "OutOfSync"
    SYNCING = "Syncing"
    SYNCED = "Synced"
    DEGRADED = "Degraded"


class HealthStatus(str, Enum):
    """Aggregated health of an application's resources."""
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    MISSING = "Missing"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


# Worst-of ordering used when aggregating health
HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.PROGRESSING: 1,
    HealthStatus.MISSING: 2,
    HealthStatus.DEGRADED: 3,
    HealthStatus.UNKNOWN: 4,
}


def worst_health(statuses) -> HealthStatus:
    """Return the worst health of an iterable of statuses (Healthy when empty)."""
    worst = HealthStatus.HEALTHY
    for status in statuses:
        if HEALTH_SEVERITY[status] > HEALTH_SEVERITY[worst]:
            worst = status
    return worst


class ActionType(str, Enum):
    """Kind of planned action."""
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"
    NO_OP = "NoOp"
    ORPHAN_DETECTED = "OrphanDetected"


class ActionStatus(str, Enum):
    """Outcome of one executed action."""
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a resource: kind, namespace (None when cluster-scoped) and name."""
    kind: str
    namespace: Optional[str]
    name: str

    def sort_key(self) -> Tuple[str, str, str]:
        return (self.kind, self.namespace or "", self.name)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, value: str, default_namespace: Optional[str] = None) -> "ResourceKey":
        """Parse ``Kind/name`` or ``Kind/namespace/name``."""
        parts = value.strip().split("/")
        if len(parts) == 2 and all(parts):
            return cls(parts[0], default_namespace, parts[1])
        if len(parts) == 3 and all(parts):
            return cls(parts[0], parts[1], parts[2])
        raise ValueError(f"Invalid resource reference '{value}', expected Kind/name or Kind/namespace/name")


@dataclass(frozen=True)
class Resource:
    """A single structured resource definition."""
    api_version: str
    kind: str
    name: str
    namespace: Optional[str]
    body: Dict[str, Any]

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.namespace, self.name)

    @property
    def annotations(self) -> Dict[str, str]:
        return (self.body.get("metadata") or {}).get("annotations") or {}

    @property
    def labels(self) -> Dict[str, str]:
        return (self.body.get("metadata") or {}).get("labels") or {}

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "Resource":
        metadata = body.get("metadata") or {}
        return cls(
            api_version=body.get("apiVersion", ""),
            kind=body.get("kind", ""),
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace"),
            body=body,
        )


@dataclass
class SyncPolicy:
    """Sync policy of a managed application."""
    automated: bool = False
    self_heal: bool = False
    prune: bool = False
    health_check: bool = True

    def to_dict(self) -> Dict[str, bool]:
        return {
            "automated": self.automated,
            "self_heal": self.self_heal,
            "prune": self.prune,
            "health_check": self.health_check,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncPolicy":
        data = data or {}
        return cls(
            automated=bool(data.get("automated", False)),
            self_heal=bool(data.get("self_heal", False)),
            prune=bool(data.get("prune", False)),
            health_check=bool(data.get("health_check", True)),
        )


@dataclass
class ManagedApplication:
    """A logical deployable unit kept in sync with its manifest source."""
    name: str
    repo_url: str
    destination_namespace: str
    path: str = "."
    target_revision: str = "HEAD"
    destination_context: Optional[str] = None
    parameters: Dict[str, str] = field(default_factory=dict)
    sync_policy: SyncPolicy = field(default_factory=SyncPolicy)

    @property
    def label_selector(self) -> str:
        return f"{TRACKING_LABEL}={self.name}"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "name": self.name,
            "repo_url": self.repo_url,
            "path": self.path,
            "target_revision": self.target_revision,
            "destination_namespace": self.destination_namespace,
            "sync_policy": self.sync_policy.to_dict(),
        }
        if self.destination_context:
            data["destination_context"] = self.destination_context
        if self.parameters:
            data["parameters"] = dict(self.parameters)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManagedApplication":
        return cls(
            name=data["name"],
            repo_url=data["repo_url"],
            destination_namespace=data["destination_namespace"],
            path=data.get("path") or ".",
            target_revision=data.get("target_revision") or "HEAD",
            destination_context=data.get("destination_context"),
            parameters={str(k): str(v) for k, v in (data.get("parameters") or {}).items()},
            sync_policy=SyncPolicy.from_dict(data.get("sync_policy")),
        )


def compute_digest(resources: Dict[ResourceKey, Resource]) -> str:
    """Content address of a rendered resource set."""
    canonical = [
        [str(key), resources[key].body]
        for key in sorted(resources, key=ResourceKey.sort_key)
    ]
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class DesiredStateSnapshot:
    """Immutable, content-addressed set of rendered resources at one revision."""

    __slots__ = ("_revision", "_resources", "_digest")

    def __init__(self, revision: str, resources: Dict[ResourceKey, Resource]):
        object.__setattr__(self, "_revision", revision)
        object.__setattr__(self, "_resources", {k: resources[k] for k in resources})
        object.__setattr__(self, "_digest", compute_digest(self._resources))

    def __setattr__(self, name, value):
        raise AttributeError("DesiredStateSnapshot is immutable")

    @property
    def revision(self) -> str:
        return self._revision

    @property
    def digest(self) -> str:
        return self._digest

    @property
    def keys(self) -> List[ResourceKey]:
        return sorted(self._resources, key=ResourceKey.sort_key)

    def get(self, key: ResourceKey) -> Optional[Resource]:
        return self._resources.get(key)

    def resources(self) -> List[Resource]:
        """Return copies of the resources, ordered by key."""
        return [
            Resource(r.api_version, r.kind, r.name, r.namespace, copy.deepcopy(r.body))
            for r in (self._resources[k] for k in self.keys)
        ]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "revision": self._revision,
            "digest": self._digest,
            "resources": [copy.deepcopy(self._resources[k].body) for k in self.keys],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DesiredStateSnapshot":
        """Rebuild a snapshot saved with ``to_dict``.

        Raises:
            ValueError: If the rebuilt resources do not match the saved digest
        """
        resources = [Resource.from_body(body) for body in data.get("resources") or []]
        snapshot = cls(data["revision"], {r.key: r for r in resources})
        if data.get("digest") and data["digest"] != snapshot.digest:
            raise ValueError(f"snapshot digest mismatch for revision {data['revision']}")
        return snapshot

    def __contains__(self, key) -> bool:
        return key in self._resources

    def __len__(self) -> int:
        return len(self._resources)

    def __repr__(self) -> str:
        return f"DesiredStateSnapshot(revision={self._revision!r}, digest={self._digest[:12]}, resources={len(self)})"


@dataclass(frozen=True)
class LiveResource:
    """Observed state of one resource; ``obj`` is None when not found.

    ``obj`` is normalized for comparison; ``health`` is assessed on the raw
    object before normalization strips its status.
    """
    key: ResourceKey
    api_version: str
    obj: Optional[Dict[str, Any]] = None
    last_applied: Optional[Dict[str, Any]] = None
    health: HealthStatus = HealthStatus.MISSING

    @property
    def found(self) -> bool:
        return self.obj is not None


@dataclass(frozen=True)
class LiveStateSnapshot:
    """Point-in-time observation of an application's live resources."""
    resources: Dict[ResourceKey, LiveResource]
    observed_at: datetime
    snapshot_id: str

    def get(self, key: ResourceKey) -> Optional[LiveResource]:
        return self.resources.get(key)

    @property
    def missing(self) -> List[ResourceKey]:
        return sorted((k for k, r in self.resources.items() if not r.found), key=ResourceKey.sort_key)


@dataclass(frozen=True)
class PlanAction:
    """One planned step against one resource."""
    action: ActionType
    key: ResourceKey
    api_version: str
    payload: Optional[Dict[str, Any]] = None
    depends_on: Tuple[ResourceKey, ...] = ()
    wave: int = 0

    @property
    def mutating(self) -> bool:
        return self.action in (ActionType.CREATE, ActionType.UPDATE, ActionType.DELETE)


@dataclass(frozen=True)
class ReconciliationPlan:
    """Ordered actions derived from exactly one desired/live snapshot pair."""
    desired_digest: str
    revision: str
    live_snapshot_id: str
    actions: Tuple[PlanAction, ...]
    unchanged: Tuple[ResourceKey, ...] = ()
    orphans: Tuple[ResourceKey, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.actions

    def count(self, action: ActionType) -> int:
        return sum(1 for a in self.actions if a.action == action)


@dataclass(frozen=True)
class ActionResult:
    """Summary of one executed action."""
    resource: str
    action: ActionType
    status: ActionStatus
    attempts: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "action": self.action.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActionResult":
        return cls(
            resource=data["resource"],
            action=ActionType(data["action"]),
            status=ActionStatus(data["status"]),
            attempts=int(data.get("attempts", 0)),
            message=data.get("message", ""),
        )


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one reconciliation cycle."""
    application: str
    revision: str
    digest: str
    sync_status: SyncStatus
    health: HealthStatus
    started_at: datetime
    finished_at: datetime
    actions: Tuple[ActionResult, ...] = ()
    orphans: Tuple[str, ...] = ()
    trigger: str = "poll"
    message: str = ""
    rolled_back: bool = False

    @property
    def applied_count(self) -> int:
        return sum(1 for a in self.actions if a.status == ActionStatus.APPLIED)

    @property
    def failed_count(self) -> int:
        return sum(1 for a in self.actions if a.status == ActionStatus.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "application": self.application,
            "revision": self.revision,
            "digest": self.digest,
            "sync_status": self.sync_status.value,
            "health": self.health.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "actions": [a.to_dict() for a in self.actions],
            "orphans": list(self.orphans),
            "trigger": self.trigger,
            "message": self.message,
            "rolled_back": self.rolled_back,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncResult":
        return cls(
            application=data["application"],
            revision=data.get("revision", ""),
            digest=data.get("digest", ""),
            sync_status=SyncStatus(data["sync_status"]),
            health=HealthStatus(data["health"]),
            started_at=datetime.fromisoformat(data["started_at"]),
            finished_at=datetime.fromisoformat(data["finished_at"]),
            actions=tuple(ActionResult.from_dict(a) for a in data.get("actions", [])),
            orphans=tuple(data.get("orphans", [])),
            trigger=data.get("trigger", "poll"),
            message=data.get("message", ""),
            rolled_back=bool(data.get("rolled_back", False)),
        )


@dataclass(frozen=True)
class ApplicationStatus:
    """Current status of one application as exposed to observers."""
    application: str
    sync_status: SyncStatus = SyncStatus.UNKNOWN
    health: HealthStatus = HealthStatus.UNKNOWN
    revision: str = ""
    digest: str = ""
    message: str = ""
    updated_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "application": self.application,
            "sync_status": self.sync_status.value,
            "health": self.health.value,
            "revision": self.revision,
            "digest": self.digest,
            "message": self.message,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApplicationStatus":
        updated_at = data.get("updated_at")
        last_synced_at = data.get("last_synced_at")
        return cls(
            application=data["application"],
            sync_status=SyncStatus(data.get("sync_status", SyncStatus.UNKNOWN.value)),
            health=HealthStatus(data.get("health", HealthStatus.UNKNOWN.value)),
            revision=data.get("revision", ""),
            digest=data.get("digest", ""),
            message=data.get("message", ""),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            last_synced_at=datetime.fromisoformat(last_synced_at) if last_synced_at else None,
        )
