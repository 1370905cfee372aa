"""Registry of resource kinds: normalization, health, priority and dependency rules.

The planner, observer and executor never branch on a kind name; everything
kind-specific lives in a KindHandler registered here. New kinds (CRDs) are
added with ``ResourceKindRegistry.register``.
"""

import base64
import copy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from gitops_controller import health
from gitops_controller.models import (
    DEPENDS_ON_ANNOTATION,
    LAST_APPLIED_ANNOTATION,
    HealthStatus,
    Resource,
    ResourceKey,
)


DEFAULT_PRIORITY = 100

# Fields the API server owns; they never take part in a comparison
SERVER_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "selfLink",
)

SERVER_ANNOTATIONS = (
    LAST_APPLIED_ANNOTATION,
    "kubectl.kubernetes.io/last-applied-configuration",
    "deployment.kubernetes.io/revision",
    "kubernetes.io/change-cause",
)


def normalize_common(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Strip server-populated fields from a live object.

    Args:
        obj: Raw object as returned by the API server

    Returns:
        A normalized deep copy
    """
    normalized = copy.deepcopy(obj)
    normalized.pop("status", None)

    metadata = normalized.get("metadata") or {}
    for name in SERVER_METADATA_FIELDS:
        metadata.pop(name, None)

    annotations = metadata.get("annotations")
    if annotations is not None:
        for name in SERVER_ANNOTATIONS:
            annotations.pop(name, None)
        if not annotations:
            metadata.pop("annotations", None)

    labels = metadata.get("labels")
    if labels is not None and not labels:
        metadata.pop("labels", None)

    return normalized


def normalize_service(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Drop allocated cluster IPs and node ports."""
    normalized = normalize_common(obj)
    spec = normalized.get("spec") or {}
    for name in ("clusterIP", "clusterIPs", "ipFamilies", "ipFamilyPolicy", "healthCheckNodePort"):
        spec.pop(name, None)
    return normalized


def normalize_secret(obj: Dict[str, Any]) -> Dict[str, Any]:
    """Fold ``stringData`` into base64 ``data`` the way the API server does."""
    normalized = normalize_common(obj)
    string_data = normalized.pop("stringData", None)
    if string_data:
        data = normalized.setdefault("data", {})
        for k, v in string_data.items():
            data[k] = base64.b64encode(str(v).encode("utf-8")).decode("ascii")
    return normalized


def _namespace_dependency(resource: Resource) -> List[ResourceKey]:
    if resource.namespace:
        return [ResourceKey("Namespace", None, resource.namespace)]
    return []


def _explicit_dependencies(resource: Resource) -> List[ResourceKey]:
    value = resource.annotations.get(DEPENDS_ON_ANNOTATION)
    if not value:
        return []
    return [ResourceKey.parse(ref, resource.namespace) for ref in value.split(",") if ref.strip()]


def _pod_spec(resource: Resource) -> Dict[str, Any]:
    spec = resource.body.get("spec") or {}
    if resource.kind == "Pod":
        return spec
    if resource.kind == "CronJob":
        spec = ((spec.get("jobTemplate") or {}).get("spec")) or {}
    return ((spec.get("template") or {}).get("spec")) or {}


def workload_dependencies(resource: Resource) -> List[ResourceKey]:
    """Secrets, ConfigMaps, PVCs and the ServiceAccount a pod template references."""
    pod_spec = _pod_spec(resource)
    ns = resource.namespace
    refs: Set[ResourceKey] = set()

    service_account = pod_spec.get("serviceAccountName")
    if service_account and service_account != "default":
        refs.add(ResourceKey("ServiceAccount", ns, service_account))

    for secret in pod_spec.get("imagePullSecrets") or []:
        if secret.get("name"):
            refs.add(ResourceKey("Secret", ns, secret["name"]))

    for volume in pod_spec.get("volumes") or []:
        if (volume.get("secret") or {}).get("secretName"):
            refs.add(ResourceKey("Secret", ns, volume["secret"]["secretName"]))
        if (volume.get("configMap") or {}).get("name"):
            refs.add(ResourceKey("ConfigMap", ns, volume["configMap"]["name"]))
        if (volume.get("persistentVolumeClaim") or {}).get("claimName"):
            refs.add(ResourceKey("PersistentVolumeClaim", ns, volume["persistentVolumeClaim"]["claimName"]))
        for source in (volume.get("projected") or {}).get("sources") or []:
            if (source.get("secret") or {}).get("name"):
                refs.add(ResourceKey("Secret", ns, source["secret"]["name"]))
            if (source.get("configMap") or {}).get("name"):
                refs.add(ResourceKey("ConfigMap", ns, source["configMap"]["name"]))

    containers = (pod_spec.get("containers") or []) + (pod_spec.get("initContainers") or [])
    for container in containers:
        for env_from in container.get("envFrom") or []:
            if (env_from.get("secretRef") or {}).get("name"):
                refs.add(ResourceKey("Secret", ns, env_from["secretRef"]["name"]))
            if (env_from.get("configMapRef") or {}).get("name"):
                refs.add(ResourceKey("ConfigMap", ns, env_from["configMapRef"]["name"]))
        for env in container.get("env") or []:
            value_from = env.get("valueFrom") or {}
            if (value_from.get("secretKeyRef") or {}).get("name"):
                refs.add(ResourceKey("Secret", ns, value_from["secretKeyRef"]["name"]))
            if (value_from.get("configMapKeyRef") or {}).get("name"):
                refs.add(ResourceKey("ConfigMap", ns, value_from["configMapKeyRef"]["name"]))

    return sorted(refs, key=ResourceKey.sort_key)


def ingress_dependencies(resource: Resource) -> List[ResourceKey]:
    """Backend Services and TLS secrets of an Ingress."""
    spec = resource.body.get("spec") or {}
    ns = resource.namespace
    refs: Set[ResourceKey] = set()

    backends = []
    if spec.get("defaultBackend"):
        backends.append(spec["defaultBackend"])
    for rule in spec.get("rules") or []:
        for path in (rule.get("http") or {}).get("paths") or []:
            if path.get("backend"):
                backends.append(path["backend"])

    for backend in backends:
        service = (backend.get("service") or {}).get("name")
        if service:
            refs.add(ResourceKey("Service", ns, service))

    for tls in spec.get("tls") or []:
        if tls.get("secretName"):
            refs.add(ResourceKey("Secret", ns, tls["secretName"]))

    return sorted(refs, key=ResourceKey.sort_key)


def binding_dependencies(resource: Resource) -> List[ResourceKey]:
    """Role and ServiceAccount subjects of a (Cluster)RoleBinding."""
    refs: Set[ResourceKey] = set()
    role_ref = resource.body.get("roleRef") or {}
    if role_ref.get("kind") == "Role" and role_ref.get("name"):
        refs.add(ResourceKey("Role", resource.namespace, role_ref["name"]))
    elif role_ref.get("kind") == "ClusterRole" and role_ref.get("name"):
        refs.add(ResourceKey("ClusterRole", None, role_ref["name"]))

    for subject in resource.body.get("subjects") or []:
        if subject.get("kind") == "ServiceAccount" and subject.get("name"):
            refs.add(ResourceKey("ServiceAccount", subject.get("namespace") or resource.namespace, subject["name"]))

    return sorted(refs, key=ResourceKey.sort_key)


@dataclass
class KindHandler:
    """Capabilities registered for one resource kind."""
    kind: str
    api_version: str
    namespaced: bool = True
    priority: int = DEFAULT_PRIORITY
    normalizer: Callable[[Dict[str, Any]], Dict[str, Any]] = normalize_common
    health_check: Callable[[Dict[str, Any]], HealthStatus] = health.default_health
    dependency_finder: Optional[Callable[[Resource], List[ResourceKey]]] = None
    listable: bool = True

    def normalize(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self.normalizer(obj)

    def health(self, obj: Optional[Dict[str, Any]]) -> HealthStatus:
        if obj is None:
            return HealthStatus.MISSING
        try:
            return self.health_check(obj)
        except (AttributeError, KeyError, TypeError, ValueError):
            return HealthStatus.UNKNOWN

    def dependencies(self, resource: Resource) -> List[ResourceKey]:
        """Implicit and explicit dependencies of a resource, without duplicates."""
        found: List[ResourceKey] = []
        if self.namespaced:
            found.extend(_namespace_dependency(resource))
        if self.dependency_finder:
            found.extend(self.dependency_finder(resource))
        found.extend(_explicit_dependencies(resource))

        unique: List[ResourceKey] = []
        for key in found:
            if key != resource.key and key not in unique:
                unique.append(key)
        return unique


@dataclass
class ResourceKindRegistry:
    """Registry of kind handlers keyed by kind name."""
    handlers: Dict[str, KindHandler] = field(default_factory=dict)

    def register(self, handler: KindHandler) -> None:
        self.handlers[handler.kind] = handler

    def get(self, kind: str, api_version: Optional[str] = None) -> KindHandler:
        """Return the handler for a kind, or a generic namespaced handler for unknown kinds."""
        handler = self.handlers.get(kind)
        if handler is not None:
            return handler
        return KindHandler(kind=kind, api_version=api_version or "v1", listable=False)

    def is_namespaced(self, kind: str) -> bool:
        return self.get(kind).namespaced

    def priority(self, kind: str) -> int:
        return self.get(kind).priority

    def listable_handlers(self) -> List[KindHandler]:
        return [h for h in self.handlers.values() if h.listable]


def default_registry() -> ResourceKindRegistry:
    """Build a registry with the built-in Kubernetes kinds."""
    registry = ResourceKindRegistry()

    entries = [
        KindHandler("Namespace", "v1", namespaced=False, priority=0),
        KindHandler("CustomResourceDefinition", "apiextensions.k8s.io/v1", namespaced=False, priority=5),
        KindHandler("StorageClass", "storage.k8s.io/v1", namespaced=False, priority=8),
        KindHandler("ServiceAccount", "v1", priority=10),
        KindHandler("Secret", "v1", priority=20, normalizer=normalize_secret),
        KindHandler("ConfigMap", "v1", priority=20),
        KindHandler("PersistentVolumeClaim", "v1", priority=30, health_check=health.pvc_health),
        KindHandler("ClusterRole", "rbac.authorization.k8s.io/v1", namespaced=False, priority=40),
        KindHandler(
            "ClusterRoleBinding", "rbac.authorization.k8s.io/v1", namespaced=False, priority=41,
            dependency_finder=binding_dependencies,
        ),
        KindHandler("Role", "rbac.authorization.k8s.io/v1", priority=40),
        KindHandler(
            "RoleBinding", "rbac.authorization.k8s.io/v1", priority=41,
            dependency_finder=binding_dependencies,
        ),
        KindHandler(
            "Service", "v1", priority=50,
            normalizer=normalize_service, health_check=health.service_health,
        ),
        KindHandler(
            "Deployment", "apps/v1", priority=60,
            health_check=health.deployment_health, dependency_finder=workload_dependencies,
        ),
        KindHandler(
            "StatefulSet", "apps/v1", priority=60,
            health_check=health.statefulset_health, dependency_finder=workload_dependencies,
        ),
        KindHandler(
            "DaemonSet", "apps/v1", priority=60,
            health_check=health.daemonset_health, dependency_finder=workload_dependencies,
        ),
        KindHandler(
            "Pod", "v1", priority=60,
            health_check=health.pod_health, dependency_finder=workload_dependencies,
        ),
        KindHandler(
            "Job", "batch/v1", priority=65,
            health_check=health.job_health, dependency_finder=workload_dependencies,
        ),
        KindHandler("CronJob", "batch/v1", priority=65, dependency_finder=workload_dependencies),
        KindHandler("HorizontalPodAutoscaler", "autoscaling/v2", priority=70),
        KindHandler(
            "Ingress", "networking.k8s.io/v1", priority=80,
            dependency_finder=ingress_dependencies,
        ),
    ]
    for handler in entries:
        registry.register(handler)

    return registry
