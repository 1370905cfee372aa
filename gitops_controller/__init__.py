"""GitOps controller - continuous reconciliation of Kubernetes clusters with Git."""

__version__ = "0.1.0"

from gitops_controller.models import (
    ApplicationStatus,
    DesiredStateSnapshot,
    HealthStatus,
    LiveStateSnapshot,
    ManagedApplication,
    ReconciliationPlan,
    ResourceKey,
    SyncPolicy,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "ApplicationStatus",
    "DesiredStateSnapshot",
    "HealthStatus",
    "LiveStateSnapshot",
    "ManagedApplication",
    "ReconciliationPlan",
    "ResourceKey",
    "SyncPolicy",
    "SyncResult",
    "SyncStatus",
]
