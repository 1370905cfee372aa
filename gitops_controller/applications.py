"""Validation and persistence of managed application definitions."""

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from gitops_controller.exceptions import (
    ApplicationExistsError,
    ApplicationNotFoundError,
    ConfigurationError,
    ValidationError,
)
from gitops_controller.models import ManagedApplication, SyncPolicy

logger = logging.getLogger(__name__)

DNS_1123_LABEL = re.compile(r'^[a-z0-9]([-a-z0-9]*[a-z0-9])?$')
PARAMETER_NAME = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def validate_application(app: ManagedApplication) -> ManagedApplication:
    """Validate an application definition.

    Args:
        app: Application to validate

    Returns:
        The same application

    Raises:
        ValidationError: If any field is invalid
    """
    if not app.name or not isinstance(app.name, str):
        raise ValidationError("Application name must be a non-empty string", field="name")

    # The name ends up in a label value, so it must be a DNS-1123 label
    if len(app.name) > 63 or not DNS_1123_LABEL.match(app.name):
        raise ValidationError(
            f"Invalid application name '{app.name}'. Must be lowercase alphanumeric with hyphens, "
            "starting and ending with alphanumeric characters (max 63)",
            field="name"
        )

    if not app.repo_url or not isinstance(app.repo_url, str):
        raise ValidationError("Repository URL must be a non-empty string", field="repo_url")

    if not app.destination_namespace or not DNS_1123_LABEL.match(app.destination_namespace):
        raise ValidationError(
            f"Invalid destination namespace '{app.destination_namespace}'. "
            "Must be lowercase alphanumeric with hyphens",
            field="destination_namespace"
        )

    # Check for suspicious path patterns
    path = app.path or "."
    if '..' in Path(path).parts or path.startswith('/'):
        raise ValidationError(
            f"Invalid manifest path '{path}'. Path must be relative and cannot contain '..'",
            field="path"
        )

    if not app.target_revision or not app.target_revision.strip():
        raise ValidationError("Target revision cannot be empty", field="target_revision")

    invalid = [name for name in app.parameters if not PARAMETER_NAME.match(name)]
    if invalid:
        raise ValidationError(f"Invalid parameter names: {', '.join(sorted(invalid))}", field="parameters")

    return app


def parse_parameters(pairs: List[str]) -> Dict[str, str]:
    """Parse ``key=value`` strings into a parameter mapping.

    Raises:
        ValidationError: If a pair has no '='
    """
    parameters = {}
    for pair in pairs:
        if '=' not in pair:
            raise ValidationError(f"Invalid parameter '{pair}', expected key=value", field="parameters")
        key, value = pair.split('=', 1)
        parameters[key.strip()] = value
    return parameters


class ApplicationStore:
    """YAML file of registered applications, shared across CLI invocations."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: YAML file holding an ``applications`` list
        """
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> List[ManagedApplication]:
        """Read and validate every stored application.

        Raises:
            ConfigurationError: If the file cannot be parsed
            ValidationError: If a stored definition is invalid
        """
        if not self.path.exists():
            return []

        try:
            with open(self.path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to load applications from {self.path}: {e}", str(self.path))

        entries = data.get("applications") if isinstance(data, dict) else None
        if entries is None:
            return []
        if not isinstance(entries, list):
            raise ConfigurationError(f"{self.path}: 'applications' must be a list", str(self.path))

        apps = []
        for entry in entries:
            try:
                apps.append(validate_application(ManagedApplication.from_dict(entry)))
            except (KeyError, TypeError, AttributeError) as e:
                raise ConfigurationError(f"{self.path}: malformed application entry: {e}", str(self.path))
        return apps

    def save(self, apps: List[ManagedApplication]) -> None:
        """Replace the file atomically so a running controller never reads a partial write."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data: Dict[str, Any] = {"applications": [app.to_dict() for app in sorted(apps, key=lambda a: a.name)]}
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".applications-", suffix=".yaml")
        try:
            with os.fdopen(fd, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def signature(self) -> Optional[Tuple[int, int, int]]:
        """Inode, modification time and size of the file; None when it does not exist."""
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return (stat.st_ino, stat.st_mtime_ns, stat.st_size)

    def get(self, name: str) -> ManagedApplication:
        for app in self.load():
            if app.name == name:
                return app
        raise ApplicationNotFoundError(name)

    def add(self, app: ManagedApplication) -> ManagedApplication:
        """Validate and store a new application.

        Raises:
            ValidationError: If the definition is invalid
            ApplicationExistsError: If the name is taken
        """
        validate_application(app)
        with self._lock:
            apps = self.load()
            if any(existing.name == app.name for existing in apps):
                raise ApplicationExistsError(app.name)
            apps.append(app)
            self.save(apps)
        return app

    def remove(self, name: str) -> ManagedApplication:
        with self._lock:
            apps = self.load()
            remaining = [app for app in apps if app.name != name]
            if len(remaining) == len(apps):
                raise ApplicationNotFoundError(name)
            self.save(remaining)
        return next(app for app in apps if app.name == name)

    def update_policy(self, name: str, policy: SyncPolicy) -> ManagedApplication:
        """Replace the sync policy of a stored application.

        Raises:
            ApplicationNotFoundError: If the name is not stored
        """
        with self._lock:
            apps = self.load()
            for app in apps:
                if app.name == name:
                    app.sync_policy = policy
                    self.save(apps)
                    return app
        raise ApplicationNotFoundError(name)


class ApplicationStoreWatcher:
    """Applies edits of an application store to a running controller.

    The CLI changes the store from other processes; ``poll`` reloads it when
    the file changed and registers, unregisters or updates applications to
    match.
    """

    def __init__(self, store: ApplicationStore, controller):
        self.store = store
        self.controller = controller
        self._signature = store.signature()

    def poll(self) -> bool:
        """Reload the store if it changed.

        An unreadable or invalid store is logged and the current
        registrations are kept until the next edit.

        Returns:
            True if any application was added, removed or updated
        """
        signature = self.store.signature()
        if signature == self._signature:
            return False
        self._signature = signature

        try:
            apps = self.store.load()
        except (ConfigurationError, ValidationError) as e:
            logger.warning("Keeping current applications; cannot reload %s: %s", self.store.path, e.message)
            return False

        added, removed, updated = self.controller.sync_registry(apps)
        for label, names in (("added", added), ("removed", removed), ("updated", updated)):
            if names:
                logger.info("Applications %s: %s", label, ", ".join(names))
        return bool(added or removed or updated)
