"""Live-state observation: normalized snapshots of an application's cluster resources."""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from gitops_controller.kinds import ResourceKindRegistry, default_registry
from gitops_controller.models import (
    LAST_APPLIED_ANNOTATION,
    TRACKING_LABEL,
    DesiredStateSnapshot,
    LiveResource,
    LiveStateSnapshot,
    ManagedApplication,
    Resource,
    ResourceKey,
)

logger = logging.getLogger(__name__)


def read_last_applied(obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Decode the last-applied configuration recorded on a live object."""
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    raw = annotations.get(LAST_APPLIED_ANNOTATION)
    if not raw:
        return None
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring unreadable %s annotation", LAST_APPLIED_ANNOTATION)
        return None
    return decoded if isinstance(decoded, dict) else None


def key_of(obj: Dict[str, Any], registry: ResourceKindRegistry) -> ResourceKey:
    metadata = obj.get("metadata") or {}
    kind = obj.get("kind", "")
    namespace = metadata.get("namespace") if registry.is_namespaced(kind) else None
    return ResourceKey(kind, namespace, metadata.get("name", ""))


class LiveStateObserver:
    """Reads the live counterpart of desired resources from the cluster."""

    def __init__(self, cluster, registry: Optional[ResourceKindRegistry] = None):
        """Initialize the observer.

        Args:
            cluster: ClusterClient (or any object with get/list)
            registry: Resource kind registry
        """
        self.cluster = cluster
        self.registry = registry or default_registry()

    def observe(self, app: ManagedApplication, desired: DesiredStateSnapshot) -> LiveStateSnapshot:
        """Observe every desired resource plus live resources tracked for the application.

        Missing resources are recorded as NotFound entries, not errors.

        Raises:
            ObservationError: If the cluster API is unreachable
        """
        entries: Dict[ResourceKey, LiveResource] = {}

        for resource in desired.resources():
            entries[resource.key] = self._observe_one(resource.key, resource.api_version)

        for key, entry in self._tracked(app).items():
            entries.setdefault(key, entry)

        snapshot = self._snapshot(entries)
        logger.debug(
            "%s: observed %d resources (%d missing)",
            app.name, len(entries), len(snapshot.missing),
        )
        return snapshot

    def observe_keys(self, keys: Iterable[ResourceKey], api_versions: Dict[ResourceKey, str]) -> LiveStateSnapshot:
        """Observe an explicit set of resources (no label discovery)."""
        entries = {key: self._observe_one(key, api_versions[key]) for key in keys}
        return self._snapshot(entries)

    def observe_resources(self, resources: Iterable[Resource]) -> LiveStateSnapshot:
        entries = {r.key: self._observe_one(r.key, r.api_version) for r in resources}
        return self._snapshot(entries)

    def tracked_resources(self, app: ManagedApplication) -> LiveStateSnapshot:
        """Everything in the cluster that carries the application's tracking label."""
        return self._snapshot(self._tracked(app))

    def _snapshot(self, entries: Dict[ResourceKey, LiveResource]) -> LiveStateSnapshot:
        return LiveStateSnapshot(
            resources=entries,
            observed_at=datetime.now(timezone.utc),
            snapshot_id=uuid.uuid4().hex,
        )

    def _observe_one(self, key: ResourceKey, api_version: str) -> LiveResource:
        raw = self.cluster.get(key, api_version)
        if raw is None:
            return LiveResource(key=key, api_version=api_version)
        return self._entry(key, api_version, raw)

    def _entry(self, key: ResourceKey, api_version: str, raw: Dict[str, Any]) -> LiveResource:
        handler = self.registry.get(key.kind, api_version)
        return LiveResource(
            key=key,
            api_version=raw.get("apiVersion") or api_version,
            obj=handler.normalize(raw),
            last_applied=read_last_applied(raw),
            health=handler.health(raw),
        )

    def _tracked(self, app: ManagedApplication) -> Dict[ResourceKey, LiveResource]:
        selector = f"{TRACKING_LABEL}={app.name}"
        found: Dict[ResourceKey, LiveResource] = {}

        for handler in self.registry.listable_handlers():
            for raw in self.cluster.list(handler.api_version, handler.kind, None, selector):
                # Objects created by controllers inherit template labels; they are not ours
                if (raw.get("metadata") or {}).get("ownerReferences"):
                    continue
                raw.setdefault("kind", handler.kind)
                key = key_of(raw, self.registry)
                found[key] = self._entry(key, handler.api_version, raw)
        return found
