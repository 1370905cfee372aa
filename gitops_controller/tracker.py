"""Application state tracking: current status, sync history and the status state machine."""

import logging
import os
import tempfile
import threading
from collections import deque
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Dict, List, Optional

import yaml

from gitops_controller.exceptions import (
    ApplicationNotFoundError,
    ConfigurationError,
    StateTransitionError,
)
from gitops_controller.models import (
    ApplicationStatus,
    DesiredStateSnapshot,
    HealthStatus,
    SyncResult,
    SyncStatus,
)

logger = logging.getLogger(__name__)


# Allowed status changes; staying in the same status is always allowed.
# Leaving Degraded additionally needs a manual trigger or a new revision.
TRANSITIONS = {
    SyncStatus.UNKNOWN: {SyncStatus.OUT_OF_SYNC, SyncStatus.SYNCING, SyncStatus.SYNCED, SyncStatus.DEGRADED},
    SyncStatus.OUT_OF_SYNC: {SyncStatus.SYNCING, SyncStatus.SYNCED},
    SyncStatus.SYNCING: {SyncStatus.SYNCED, SyncStatus.DEGRADED, SyncStatus.OUT_OF_SYNC},
    SyncStatus.SYNCED: {SyncStatus.OUT_OF_SYNC, SyncStatus.SYNCING},
    SyncStatus.DEGRADED: {SyncStatus.SYNCING, SyncStatus.OUT_OF_SYNC},
}


def can_transition(current: SyncStatus, target: SyncStatus, reentry: bool = False) -> bool:
    """Check a status change against the state machine.

    Args:
        current: Current sync status
        target: Requested sync status
        reentry: True when triggered manually or by a new revision

    Returns:
        True if the change is allowed
    """
    if current == target:
        return True
    if target not in TRANSITIONS[current]:
        return False
    return reentry or current != SyncStatus.DEGRADED


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ApplicationStateTracker:
    """Thread-safe store of per-application status and bounded sync history.

    Status objects are immutable; every update swaps in a new object under
    the lock, so readers always see a complete status.
    """

    def __init__(self, history_limit: int = 10, state_file: Optional[Path] = None):
        """Initialize the tracker.

        Args:
            history_limit: Number of SyncResults kept per application
            state_file: YAML file to persist status and history to, if any
        """
        self.history_limit = history_limit
        self.state_file = Path(state_file) if state_file else None
        self._lock = threading.RLock()
        self._statuses: Dict[str, ApplicationStatus] = {}
        self._history: Dict[str, Deque[SyncResult]] = {}
        self._known_good: Dict[str, DesiredStateSnapshot] = {}

    def track(self, name: str) -> ApplicationStatus:
        """Start tracking an application (no-op if already tracked)."""
        with self._lock:
            if name not in self._statuses:
                self._statuses[name] = ApplicationStatus(application=name, updated_at=_now())
                self._history[name] = deque(maxlen=self.history_limit)
            return self._statuses[name]

    def forget(self, name: str) -> None:
        with self._lock:
            self._statuses.pop(name, None)
            self._history.pop(name, None)
            self._known_good.pop(name, None)
        self._persist()

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._statuses)

    def status(self, name: str) -> ApplicationStatus:
        """Current status of an application.

        Raises:
            ApplicationNotFoundError: If the application is not tracked
        """
        with self._lock:
            try:
                return self._statuses[name]
            except KeyError:
                raise ApplicationNotFoundError(name)

    def statuses(self) -> List[ApplicationStatus]:
        with self._lock:
            return [self._statuses[name] for name in sorted(self._statuses)]

    def history(self, name: str) -> List[SyncResult]:
        """Recorded sync results, oldest first.

        Raises:
            ApplicationNotFoundError: If the application is not tracked
        """
        with self._lock:
            if name not in self._history:
                raise ApplicationNotFoundError(name)
            return list(self._history[name])

    def known_good(self, name: str) -> Optional[DesiredStateSnapshot]:
        """Last snapshot the application fully synced, if any."""
        with self._lock:
            return self._known_good.get(name)

    def remember_known_good(self, name: str, snapshot: DesiredStateSnapshot) -> None:
        """Record the last fully synced snapshot; persisted so rollback survives a restart."""
        with self._lock:
            previous = self._known_good.get(name)
            if previous is not None and previous.digest == snapshot.digest:
                return
            self._known_good[name] = snapshot
        self._persist()

    def transition(
        self,
        name: str,
        sync_status: SyncStatus,
        health: Optional[HealthStatus] = None,
        revision: Optional[str] = None,
        digest: Optional[str] = None,
        message: Optional[str] = None,
        reentry: bool = False,
    ) -> ApplicationStatus:
        """Move an application to a new status.

        Fields left as None keep their current value.

        Raises:
            ApplicationNotFoundError: If the application is not tracked
            StateTransitionError: If the change violates the state machine
        """
        with self._lock:
            current = self.status(name)
            if not can_transition(current.sync_status, sync_status, reentry):
                raise StateTransitionError(name, current.sync_status.value, sync_status.value)

            updated = replace(
                current,
                sync_status=sync_status,
                health=current.health if health is None else health,
                revision=current.revision if revision is None else revision,
                digest=current.digest if digest is None else digest,
                message=current.message if message is None else message,
                updated_at=_now(),
            )
            self._statuses[name] = updated

        if updated.sync_status != current.sync_status:
            logger.info("%s: %s -> %s", name, current.sync_status.value, updated.sync_status.value)
            self._persist()
        return updated

    def record(self, result: SyncResult, reentry: bool = False) -> ApplicationStatus:
        """Append a cycle result to the history and apply its status.

        Raises:
            ApplicationNotFoundError: If the application is not tracked
            StateTransitionError: If the result's status violates the state machine
        """
        name = result.application
        with self._lock:
            current = self.status(name)
            if not can_transition(current.sync_status, result.sync_status, reentry):
                raise StateTransitionError(name, current.sync_status.value, result.sync_status.value)

            last_synced_at = current.last_synced_at
            if result.sync_status == SyncStatus.SYNCED:
                last_synced_at = result.finished_at

            updated = replace(
                current,
                sync_status=result.sync_status,
                health=result.health,
                revision=result.revision,
                digest=result.digest,
                message=result.message,
                updated_at=_now(),
                last_synced_at=last_synced_at,
            )
            self._statuses[name] = updated
            self._history[name].append(result)

        self._persist()
        return updated

    def _persist(self) -> None:
        if self.state_file is None:
            return
        try:
            self.save()
        except OSError as e:
            # Status stays authoritative in memory; the file is a convenience for other processes
            logger.warning("Failed to write state file %s: %s", self.state_file, e)

    def save(self) -> None:
        """Write status, history and known-good snapshots to the state file atomically."""
        if self.state_file is None:
            return

        with self._lock:
            applications = {}
            for name in sorted(self._statuses):
                entry = {
                    "status": self._statuses[name].to_dict(),
                    "history": [r.to_dict() for r in self._history[name]],
                }
                if name in self._known_good:
                    entry["known_good"] = self._known_good[name].to_dict()
                applications[name] = entry
            data = {"applications": applications}

        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.state_file.parent), prefix=".state-", suffix=".yaml")
        try:
            with os.fdopen(fd, 'w') as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_path, self.state_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def load(self) -> None:
        """Load status, history and known-good snapshots from the state file, if it exists.

        A known-good snapshot that no longer matches its recorded digest is
        dropped with a warning.

        Raises:
            ConfigurationError: If the state file is unreadable
        """
        if self.state_file is None or not self.state_file.exists():
            return

        try:
            with open(self.state_file, 'r') as f:
                data = yaml.safe_load(f) or {}
            applications = data.get("applications") or {}
            statuses = {}
            history = {}
            known_good = {}
            for name, entry in applications.items():
                statuses[name] = ApplicationStatus.from_dict(entry["status"])
                history[name] = deque(
                    (SyncResult.from_dict(r) for r in entry.get("history") or []),
                    maxlen=self.history_limit,
                )
                if entry.get("known_good"):
                    try:
                        known_good[name] = DesiredStateSnapshot.from_dict(entry["known_good"])
                    except ValueError as e:
                        logger.warning("%s: ignoring saved known-good snapshot: %s", name, e)
        except (OSError, yaml.YAMLError, AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Failed to load state from {self.state_file}: {e}", str(self.state_file))

        with self._lock:
            self._statuses.update(statuses)
            self._history.update(history)
            self._known_good.update(known_good)
