"""Health assessment of live Kubernetes objects."""

from typing import Any, Dict, Optional

from gitops_controller.models import HealthStatus


def _condition(status: Dict[str, Any], condition_type: str) -> Optional[Dict[str, Any]]:
    for condition in status.get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def _generation_observed(obj: Dict[str, Any]) -> bool:
    generation = (obj.get("metadata") or {}).get("generation")
    observed = (obj.get("status") or {}).get("observedGeneration")
    if generation is None or observed is None:
        return True
    return observed >= generation


def deployment_health(obj: Dict[str, Any]) -> HealthStatus:
    """Healthy once the rollout for the current generation is complete."""
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}

    if spec.get("paused"):
        return HealthStatus.PROGRESSING

    progressing = _condition(status, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus.DEGRADED

    if not _generation_observed(obj):
        return HealthStatus.PROGRESSING

    replicas = spec.get("replicas", 1)
    if (status.get("updatedReplicas") or 0) < replicas:
        return HealthStatus.PROGRESSING
    if (status.get("replicas") or 0) > (status.get("updatedReplicas") or 0):
        # Old replicas are still terminating
        return HealthStatus.PROGRESSING
    if (status.get("availableReplicas") or 0) < replicas:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def statefulset_health(obj: Dict[str, Any]) -> HealthStatus:
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}

    if not _generation_observed(obj):
        return HealthStatus.PROGRESSING

    replicas = spec.get("replicas", 1)
    if (status.get("readyReplicas") or 0) < replicas:
        return HealthStatus.PROGRESSING
    if status.get("updateRevision") and status.get("currentRevision") != status.get("updateRevision"):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def daemonset_health(obj: Dict[str, Any]) -> HealthStatus:
    status = obj.get("status") or {}

    if not _generation_observed(obj):
        return HealthStatus.PROGRESSING

    desired = status.get("desiredNumberScheduled") or 0
    if (status.get("updatedNumberScheduled") or 0) < desired:
        return HealthStatus.PROGRESSING
    if (status.get("numberAvailable") or 0) < desired:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


def job_health(obj: Dict[str, Any]) -> HealthStatus:
    status = obj.get("status") or {}

    failed = _condition(status, "Failed")
    if failed and failed.get("status") == "True":
        return HealthStatus.DEGRADED

    complete = _condition(status, "Complete")
    if complete and complete.get("status") == "True":
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def pod_health(obj: Dict[str, Any]) -> HealthStatus:
    status = obj.get("status") or {}
    phase = status.get("phase", "Unknown")

    if phase == "Succeeded":
        return HealthStatus.HEALTHY
    if phase == "Failed":
        return HealthStatus.DEGRADED
    if phase == "Pending":
        return HealthStatus.PROGRESSING
    if phase == "Running":
        for container in status.get("containerStatuses") or []:
            waiting = (container.get("state") or {}).get("waiting") or {}
            if waiting.get("reason") in ("CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull"):
                return HealthStatus.DEGRADED
        ready = _condition(status, "Ready")
        if ready and ready.get("status") == "True":
            return HealthStatus.HEALTHY
        return HealthStatus.PROGRESSING
    return HealthStatus.UNKNOWN


def pvc_health(obj: Dict[str, Any]) -> HealthStatus:
    phase = (obj.get("status") or {}).get("phase")

    if phase == "Bound":
        return HealthStatus.HEALTHY
    if phase == "Lost":
        return HealthStatus.DEGRADED
    return HealthStatus.PROGRESSING


def service_health(obj: Dict[str, Any]) -> HealthStatus:
    """LoadBalancer services wait for an ingress address; every other type is ready at once."""
    spec = obj.get("spec") or {}
    if spec.get("type") != "LoadBalancer":
        return HealthStatus.HEALTHY

    ingress = ((obj.get("status") or {}).get("loadBalancer") or {}).get("ingress")
    return HealthStatus.HEALTHY if ingress else HealthStatus.PROGRESSING


def default_health(obj: Optional[Dict[str, Any]]) -> HealthStatus:
    return HealthStatus.HEALTHY if obj is not None else HealthStatus.MISSING
