"""Diff desired against live state and plan ordered reconciliation actions."""

import copy
import heapq
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from gitops_controller.exceptions import InvalidResourceSpec
from gitops_controller.kinds import ResourceKindRegistry, default_registry
from gitops_controller.models import (
    LAST_APPLIED_ANNOTATION,
    SYNC_WAVE_ANNOTATION,
    TRACKING_LABEL,
    ActionType,
    DesiredStateSnapshot,
    LiveResource,
    LiveStateSnapshot,
    ManagedApplication,
    PlanAction,
    ReconciliationPlan,
    Resource,
    ResourceKey,
)

logger = logging.getLogger(__name__)


def is_subset(desired: Any, live: Any) -> bool:
    """True when every field set in ``desired`` has the same value in ``live``.

    Mappings compare on desired keys only, so fields defaulted by the server
    or owned by other actors are ignored. Lists must have the same length and
    match element-wise.
    """
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        return all(k in live and is_subset(v, live[k]) for k, v in desired.items())
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, l) for d, l in zip(desired, live))
    if isinstance(desired, bool) or isinstance(live, bool):
        return desired is live
    return desired == live


def merge_patch(desired: Dict[str, Any], live: Dict[str, Any], last_applied: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Build a minimal JSON merge patch (RFC 7386) turning ``live`` into ``desired``.

    Only differing desired fields are included. Fields that the previous
    apply set (``last_applied``) and that are no longer desired are removed
    with ``null``; fields nobody declared are left to their owners.
    """
    patch: Dict[str, Any] = {}
    previous = last_applied if isinstance(last_applied, dict) else {}

    for k, value in desired.items():
        if k not in live:
            patch[k] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(live[k], dict):
            nested = merge_patch(value, live[k], previous.get(k))
            if nested:
                patch[k] = nested
        elif not is_subset(value, live[k]):
            patch[k] = copy.deepcopy(value)

    for k in previous:
        if k not in desired and k in live:
            patch[k] = None

    return patch


def describe_patch(patch: Dict[str, Any], live: Optional[Dict[str, Any]], prefix: str = "") -> List[str]:
    """Human readable ``path: old -> new`` lines for a merge patch."""
    lines: List[str] = []
    live = live if isinstance(live, dict) else {}

    for k in sorted(patch):
        path = f"{prefix}.{k}" if prefix else k
        new = patch[k]
        old = live.get(k)
        if isinstance(new, dict) and isinstance(old, dict):
            lines.extend(describe_patch(new, old, path))
        elif new is None:
            lines.append(f"{path}: {_short(old)} -> (removed)")
        elif k not in live:
            lines.append(f"{path}: (unset) -> {_short(new)}")
        else:
            lines.append(f"{path}: {_short(old)} -> {_short(new)}")
    return lines


def _short(value: Any, limit: int = 60) -> str:
    text = json.dumps(value, sort_keys=True, default=str)
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _wave(resource_key: ResourceKey, annotations: Dict[str, str]) -> int:
    raw = annotations.get(SYNC_WAVE_ANNOTATION)
    if raw is None:
        return 0
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise InvalidResourceSpec(f"{SYNC_WAVE_ANNOTATION} must be an integer, got {raw!r}", str(resource_key))


class Planner:
    """Computes the minimal, ordered set of actions converging live state to desired state."""

    def __init__(self, registry: Optional[ResourceKindRegistry] = None):
        self.registry = registry or default_registry()

    def plan(
        self,
        app: ManagedApplication,
        desired: DesiredStateSnapshot,
        live: LiveStateSnapshot,
        prune: Optional[bool] = None,
    ) -> ReconciliationPlan:
        """Diff one desired/live snapshot pair.

        Args:
            app: The managed application
            desired: Desired state snapshot
            live: Live state snapshot observed for ``desired``
            prune: Override of the application's prune policy

        Returns:
            A ReconciliationPlan; its action list is empty when nothing drifted

        Raises:
            InvalidResourceSpec: On malformed desired resources or dependency cycles
        """
        prune = app.sync_policy.prune if prune is None else prune
        resources = desired.resources()
        for resource in resources:
            self._validate(resource)

        desired_keys = {r.key for r in resources}
        pending: Dict[ResourceKey, PlanAction] = {}
        unchanged: List[ResourceKey] = []

        for resource in resources:
            entry = live.get(resource.key)
            action = self._diff_resource(resource, entry, desired_keys)
            if action.action == ActionType.NO_OP:
                unchanged.append(resource.key)
            else:
                pending[resource.key] = action

        ordered = self._order(pending)

        deletes: List[PlanAction] = []
        orphans: List[ResourceKey] = []
        for key, entry in live.resources.items():
            if key in desired_keys or not entry.found:
                continue
            labels = (entry.obj.get("metadata") or {}).get("labels") or {}
            if labels.get(TRACKING_LABEL) != app.name:
                continue
            if prune:
                annotations = (entry.obj.get("metadata") or {}).get("annotations") or {}
                deletes.append(PlanAction(
                    action=ActionType.DELETE,
                    key=key,
                    api_version=entry.api_version,
                    wave=_wave(key, annotations),
                ))
            else:
                orphans.append(key)

        deletes.sort(key=self._delete_sort_key)

        plan = ReconciliationPlan(
            desired_digest=desired.digest,
            revision=desired.revision,
            live_snapshot_id=live.snapshot_id,
            actions=tuple(ordered + deletes),
            unchanged=tuple(sorted(unchanged, key=ResourceKey.sort_key)),
            orphans=tuple(sorted(orphans, key=ResourceKey.sort_key)),
        )
        logger.debug(
            "%s: plan create=%d update=%d delete=%d unchanged=%d orphans=%d",
            app.name,
            plan.count(ActionType.CREATE),
            plan.count(ActionType.UPDATE),
            plan.count(ActionType.DELETE),
            len(plan.unchanged),
            len(plan.orphans),
        )
        return plan

    def _validate(self, resource: Resource) -> None:
        label = f"{resource.kind or '?'}/{resource.name or '?'}"
        if not isinstance(resource.body, dict):
            raise InvalidResourceSpec("resource body must be a mapping", label)
        metadata = resource.body.get("metadata")
        if not isinstance(metadata, dict):
            raise InvalidResourceSpec("metadata must be a mapping", label)
        for field in ("labels", "annotations"):
            values = metadata.get(field) or {}
            if not isinstance(values, dict):
                raise InvalidResourceSpec(f"metadata.{field} must be a mapping", label)
            for k, v in values.items():
                if not isinstance(k, str) or not isinstance(v, str):
                    raise InvalidResourceSpec(f"metadata.{field}[{k!r}] must be a string, got {v!r}", label)
        if not resource.kind or not isinstance(resource.kind, str):
            raise InvalidResourceSpec("missing kind", label)
        if not resource.name or not isinstance(resource.name, str):
            raise InvalidResourceSpec("missing metadata.name", label)
        if not resource.api_version:
            raise InvalidResourceSpec("missing apiVersion", label)
        if self.registry.is_namespaced(resource.kind) and not resource.namespace:
            raise InvalidResourceSpec("namespaced kind without a namespace", label)

    def comparable(self, resource: Resource) -> Dict[str, Any]:
        """Desired body normalized the same way live objects are."""
        handler = self.registry.get(resource.kind, resource.api_version)
        return handler.normalize(resource.body)

    def _diff_resource(self, resource: Resource, entry: Optional[LiveResource], desired_keys) -> PlanAction:
        dependencies = tuple(k for k in self._dependencies(resource) if k in desired_keys)
        wave = _wave(resource.key, resource.annotations)
        comparable = self.comparable(resource)

        if entry is None or not entry.found:
            body = copy.deepcopy(resource.body)
            _annotate(body, comparable)
            return PlanAction(
                action=ActionType.CREATE,
                key=resource.key,
                api_version=resource.api_version,
                payload=body,
                depends_on=dependencies,
                wave=wave,
            )

        patch = merge_patch(comparable, entry.obj, entry.last_applied)
        if not patch:
            return PlanAction(ActionType.NO_OP, resource.key, resource.api_version, depends_on=dependencies, wave=wave)

        _annotate(patch, comparable, entry.last_applied)
        return PlanAction(
            action=ActionType.UPDATE,
            key=resource.key,
            api_version=resource.api_version,
            payload=patch,
            depends_on=dependencies,
            wave=wave,
        )

    def _dependencies(self, resource: Resource) -> List[ResourceKey]:
        handler = self.registry.get(resource.kind, resource.api_version)
        try:
            found = handler.dependencies(resource)
        except ValueError as e:
            raise InvalidResourceSpec(str(e), str(resource.key))

        canonical = []
        for key in found:
            if not self.registry.is_namespaced(key.kind):
                key = ResourceKey(key.kind, None, key.name)
            if key != resource.key and key not in canonical:
                canonical.append(key)
        return canonical

    def _sort_key(self, action: PlanAction) -> Tuple:
        return (action.wave, self.registry.priority(action.key.kind)) + action.key.sort_key()

    def _delete_sort_key(self, action: PlanAction) -> Tuple:
        # Reverse of creation order: dependents go first
        kind, namespace, name = action.key.sort_key()
        return (-action.wave, -self.registry.priority(action.key.kind), kind, namespace, name)

    def _order(self, pending: Dict[ResourceKey, PlanAction]) -> List[PlanAction]:
        """Topological sort (Kahn) with a deterministic tie-break on wave, priority, then identity."""
        indegree = {key: 0 for key in pending}
        dependents: Dict[ResourceKey, List[ResourceKey]] = {key: [] for key in pending}
        for key, action in pending.items():
            for dep in action.depends_on:
                if dep in pending:
                    indegree[key] += 1
                    dependents[dep].append(key)

        heap = [(self._sort_key(pending[k]), k) for k, degree in indegree.items() if degree == 0]
        heapq.heapify(heap)

        ordered: List[PlanAction] = []
        while heap:
            _, key = heapq.heappop(heap)
            ordered.append(pending[key])
            for dependent in dependents[key]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(heap, (self._sort_key(pending[dependent]), dependent))

        if len(ordered) != len(pending):
            stuck = sorted((k for k, d in indegree.items() if d > 0), key=ResourceKey.sort_key)
            raise InvalidResourceSpec(
                "dependency cycle between " + ", ".join(str(k) for k in stuck)
            )
        return ordered


def _annotate(
    target: Dict[str, Any],
    comparable: Dict[str, Any],
    previous: Optional[Dict[str, Any]] = None,
) -> None:
    """Record the applied configuration on a body or patch."""
    metadata = target.setdefault("metadata", {})
    annotations = metadata.get("annotations")
    if annotations is None and "annotations" in metadata:
        # The patch drops the whole map; remove the previously applied keys one by one instead
        applied = ((previous or {}).get("metadata") or {}).get("annotations") or {}
        annotations = {k: None for k in applied}
    annotations = annotations or {}
    annotations[LAST_APPLIED_ANNOTATION] = json.dumps(comparable, sort_keys=True, separators=(",", ":"))
    metadata["annotations"] = annotations
