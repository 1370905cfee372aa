"""Custom exceptions for the GitOps controller with troubleshooting guidance."""

from typing import List, Optional


class ReconcilerError(Exception):
    """Base exception for all GitOps controller errors."""

    exit_code = 2
    retryable = False

    def __init__(self, message: str, troubleshooting: Optional[List[str]] = None):
        """Initialize exception with message and optional troubleshooting steps.

        Args:
            message: Error message describing what went wrong
            troubleshooting: List of troubleshooting suggestions
        """
        self.message = message
        self.troubleshooting = troubleshooting or []
        super().__init__(self.message)

    def get_troubleshooting_text(self) -> str:
        """Get formatted troubleshooting text.

        Returns:
            Formatted string with troubleshooting steps
        """
        if not self.troubleshooting:
            return ""

        lines = ["Troubleshooting:"]
        for step in self.troubleshooting:
            lines.append(f"• {step}")
        return "\n".join(lines)


class SourceUnavailable(ReconcilerError):
    """Raised when the manifest source cannot be fetched (network, auth, missing path)."""

    exit_code = 3
    retryable = True

    def __init__(self, repo_url: str, reason: str = ""):
        self.repo_url = repo_url
        message = f"Manifest source unavailable: {repo_url}"
        if reason:
            message += f" - {reason}"

        troubleshooting = [
            f"Check repository accessibility: git ls-remote {repo_url}",
            "Verify the target revision (branch, tag or commit) exists",
            "Set GIT_USERNAME and GIT_TOKEN if the repository is private",
            "Verify network connectivity to the Git server",
        ]
        super().__init__(message, troubleshooting)


class RenderError(ReconcilerError):
    """Raised when a manifest cannot be parsed or rendered."""

    exit_code = 4

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        if path:
            message = f"{path}: {message}"

        troubleshooting = [
            "Validate YAML syntax of the manifest files",
            "Every document needs apiVersion, kind and metadata.name",
            "Check that all ${name} parameters are provided to the application",
            "Push a corrected revision; this revision will not be retried",
        ]
        super().__init__(message, troubleshooting)


class ObservationError(ReconcilerError):
    """Raised when the cluster API cannot be queried for live state."""

    exit_code = 5
    retryable = True

    def __init__(self, message: str, resource: Optional[str] = None):
        self.resource = resource
        troubleshooting = [
            "Verify cluster connectivity: kubectl cluster-info",
            "Check API server status: kubectl get --raw /healthz",
            "Verify RBAC permissions: kubectl auth can-i list <resource>",
        ]
        if resource:
            troubleshooting.insert(0, f"Try reading the resource directly: kubectl get {resource}")
        super().__init__(message, troubleshooting)


class InvalidResourceSpec(ReconcilerError):
    """Raised when the planner receives a malformed desired resource."""

    exit_code = 6

    def __init__(self, message: str, resource: Optional[str] = None):
        self.resource = resource
        if resource:
            message = f"{resource}: {message}"

        troubleshooting = [
            "Check kind and metadata.name of every manifest",
            "Check gitops-controller/depends-on and sync-wave annotations",
            "Remove dependency cycles between resources",
        ]
        super().__init__(message, troubleshooting)


class ApplyTransientError(ReconcilerError):
    """Raised when an apply call fails in a way that may succeed on retry."""

    exit_code = 7
    retryable = True

    def __init__(self, message: str, resource: Optional[str] = None, status: Optional[int] = None):
        self.resource = resource
        self.status = status
        troubleshooting = [
            "Check whether the API server is rate limiting: kubectl get --raw /metrics",
            "Look for concurrent writers of the same resource",
            "Re-run the sync once the cluster is less busy",
        ]
        super().__init__(message, troubleshooting)


class ApplyFatalError(ReconcilerError):
    """Raised when an apply call is rejected (admission, invalid patch, forbidden)."""

    exit_code = 8

    def __init__(self, message: str, resource: Optional[str] = None, status: Optional[int] = None):
        self.resource = resource
        self.status = status
        troubleshooting = [
            "Inspect the rejected manifest: gitops-controller diff <app>",
            "Check admission webhooks: kubectl get validatingwebhookconfigurations",
            "Verify RBAC permissions: kubectl auth can-i --list",
            "Fix the manifest and push a new revision",
        ]
        if resource:
            troubleshooting.insert(0, f"Describe the resource: kubectl describe {resource}")
        super().__init__(message, troubleshooting)


class ClusterAccessError(ReconcilerError):
    """Raised when the Kubernetes configuration cannot be loaded."""

    exit_code = 9

    def __init__(self, message: str = "Cannot access Kubernetes cluster"):
        troubleshooting = [
            "Verify kubectl is configured: kubectl cluster-info",
            "Check kubeconfig file: kubectl config view",
            "Ensure you have valid credentials: kubectl auth whoami",
        ]
        super().__init__(message, troubleshooting)


class ConfigurationError(ReconcilerError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_path: Optional[str] = None):
        self.config_path = config_path
        troubleshooting = [
            "Check configuration file format (YAML)",
            "Verify configuration file permissions",
            "Use default configuration: rm ~/.gitops-controller/config.yaml",
        ]

        if config_path:
            troubleshooting.insert(0, f"Check configuration file: cat {config_path}")

        super().__init__(message, troubleshooting)


class ValidationError(ConfigurationError):
    """Raised when an application definition fails validation."""

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message)
        self.troubleshooting = [
            "Review the command help: gitops-controller <command> --help",
            "Application names must be lowercase DNS-1123 labels",
            "Ensure all required parameters are provided",
        ]


class ApplicationNotFoundError(ReconcilerError):
    """Raised when an application is not registered."""

    def __init__(self, name: str):
        self.name = name
        message = f"Application '{name}' is not registered"
        troubleshooting = [
            "List registered applications: gitops-controller app list",
            "Register it: gitops-controller app add <name> --repo <url> --dest-namespace <ns>",
        ]
        super().__init__(message, troubleshooting)


class ApplicationExistsError(ReconcilerError):
    """Raised when registering an application name twice."""

    def __init__(self, name: str):
        self.name = name
        message = f"Application '{name}' is already registered"
        troubleshooting = [
            "Choose another name, or remove it first: gitops-controller app remove <name>",
            "Change its sync policy instead: gitops-controller app set-policy <name>",
        ]
        super().__init__(message, troubleshooting)


class StateTransitionError(ReconcilerError):
    """Raised when a status change would violate the application state machine."""

    def __init__(self, name: str, current: str, target: str):
        self.name = name
        message = f"Application '{name}' cannot move from {current} to {target}"
        troubleshooting = [
            "Degraded applications re-enter Syncing only on a manual sync or a new revision",
            "Trigger a manual sync: gitops-controller sync <name>",
        ]
        super().__init__(message, troubleshooting)


TRANSIENT_STATUSES = {408, 409, 429, 500, 502, 503, 504}


def classify_api_exception(e: Exception, operation: str, resource: Optional[str] = None) -> ReconcilerError:
    """Convert Kubernetes API exceptions on the apply path to the error taxonomy.

    Args:
        e: The original exception
        operation: Description of the operation being performed
        resource: Resource identity involved

    Returns:
        ApplyTransientError for retryable failures, ApplyFatalError otherwise
    """
    from kubernetes.client.rest import ApiException

    if isinstance(e, ApiException):
        status = e.status or 0
        detail = _api_message(e)
        if status in TRANSIENT_STATUSES or status == 0:
            return ApplyTransientError(
                f"Transient API error during {operation}: {detail} (status: {status})", resource, status
            )
        if status == 403:
            return ApplyFatalError(f"Forbidden during {operation}: {detail}", resource, status)
        if status == 422:
            return ApplyFatalError(f"Invalid resource specification: {detail}", resource, status)
        return ApplyFatalError(f"API error during {operation}: {detail} (status: {status})", resource, status)

    # Connection failures never reached the API server
    return ApplyTransientError(f"Unexpected error during {operation}: {str(e)}", resource)


def _api_message(e) -> str:
    """Extract the most useful message from an ApiException."""
    body = getattr(e, "body", None)
    if body:
        try:
            import json

            decoded = json.loads(body)
            if isinstance(decoded, dict) and decoded.get("message"):
                return decoded["message"]
        except (TypeError, ValueError):
            pass
    return e.reason or "unknown error"
