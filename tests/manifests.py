"""Builders for manifest documents and snapshots used across the tests."""

import copy
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import yaml

from gitops_controller.kinds import default_registry
from gitops_controller.models import (
    TRACKING_LABEL,
    DesiredStateSnapshot,
    ManagedApplication,
    Resource,
)


def namespace(name: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": name}}


def configmap(
    name: str,
    data: Optional[Dict[str, str]] = None,
    namespace: Optional[str] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    if annotations:
        metadata["annotations"] = annotations
    return {"apiVersion": "v1", "kind": "ConfigMap", "metadata": metadata, "data": data or {"key": "value"}}


def service_account(name: str) -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "ServiceAccount", "metadata": {"name": name}}


def pvc(name: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": name},
        "spec": {"accessModes": ["ReadWriteOnce"], "resources": {"requests": {"storage": "1Gi"}}},
    }


def deployment(
    name: str,
    image: str = "nginx:1.25",
    replicas: int = 1,
    annotations: Optional[Dict[str, str]] = None,
    **pod_spec: Any,
) -> Dict[str, Any]:
    spec = {"containers": [{"name": name, "image": image}]}
    spec.update(pod_spec)
    metadata: Dict[str, Any] = {"name": name}
    if annotations:
        metadata["annotations"] = annotations
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata,
        "spec": {
            "replicas": replicas,
            "selector": {"matchLabels": {"app": name}},
            "template": {"metadata": {"labels": {"app": name}}, "spec": spec},
        },
    }


def job(name: str, annotations: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {"name": name}
    if annotations:
        metadata["annotations"] = annotations
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": metadata,
        "spec": {"template": {"spec": {"restartPolicy": "Never", "containers": [{"name": name, "image": "busybox"}]}}},
    }


def prepare(app: ManagedApplication, body: Dict[str, Any]) -> Resource:
    """Default the namespace and add the tracking label, like a manifest source does."""
    body = copy.deepcopy(body)
    metadata = body.setdefault("metadata", {})
    if default_registry().is_namespaced(body["kind"]):
        metadata["namespace"] = metadata.get("namespace") or app.destination_namespace
    else:
        metadata.pop("namespace", None)
    metadata.setdefault("labels", {})[TRACKING_LABEL] = app.name
    return Resource.from_body(body)


def snapshot(app: ManagedApplication, bodies: Iterable[Dict[str, Any]], revision: str = "rev-1") -> DesiredStateSnapshot:
    resources = [prepare(app, body) for body in bodies]
    return DesiredStateSnapshot(revision, {r.key: r for r in resources})


def write_manifests(directory: Path, *documents: Dict[str, Any], filename: str = "manifests.yaml") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / filename
    path.write_text(yaml.safe_dump_all(documents, sort_keys=False))
    return path
