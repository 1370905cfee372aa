"""Tests for the command-line interface."""

import re
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from gitops_controller.applications import ApplicationStore
from gitops_controller.cli import cli
from gitops_controller.config import Config
from gitops_controller.controller import ReconciliationController
from gitops_controller.exceptions import ApplyFatalError
from gitops_controller.models import (
    ApplicationStatus,
    HealthStatus,
    ManagedApplication,
    ResourceKey,
    SyncResult,
    SyncStatus,
)

from conftest import FakeCluster
from manifests import configmap, deployment, write_manifests

ANSI = re.compile(r"\x1b\[[0-9;]*m")
SETTINGS = ResourceKey("ConfigMap", "web", "settings")
API = ResourceKey("Deployment", "web", "api")


def _plain(output):
    return ANSI.sub("", output)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "applications_file": str(tmp_path / "applications.yaml"),
        "state_file": str(tmp_path / "state.yaml"),
        "cache_dir": str(tmp_path / "cache"),
    }))
    return path


@pytest.fixture
def invoke(runner, config_path):
    env = {name: None for name in Config.ENV_OVERRIDES}
    env["COLUMNS"] = "200"

    def invoke(*args, **kwargs):
        return runner.invoke(cli, ["--config", str(config_path), *args], env=env, **kwargs)

    return invoke


@pytest.fixture
def fake_cluster():
    """Cluster used by every controller the CLI builds."""
    cluster = FakeCluster()
    original = ReconciliationController.from_config

    with patch.object(
        ReconciliationController,
        "from_config",
        side_effect=lambda config: original(config, cluster=cluster),
    ):
        yield cluster


@pytest.fixture
def registered(invoke, repo):
    write_manifests(repo, configmap("settings"), deployment("api"))
    result = invoke("app", "add", "guestbook", "--repo", str(repo), "--dest-namespace", "web", "--auto")
    assert result.exit_code == 0, result.output
    return repo


def _status(sync_status, health=HealthStatus.HEALTHY):
    return ApplicationStatus("guestbook", sync_status=sync_status, health=health, revision="abc123")


def _result(sync_status):
    now = datetime.now(timezone.utc)
    return SyncResult("guestbook", "abc123", "digest", sync_status, HealthStatus.HEALTHY, now, now, trigger="manual")


def test_app_add_and_list(invoke, registered, tmp_path):
    result = invoke("app", "list")

    assert result.exit_code == 0
    output = _plain(result.output)
    assert "guestbook" in output
    assert "auto" in output
    stored = ApplicationStore(tmp_path / "applications.yaml").get("guestbook")
    assert stored.sync_policy.automated
    assert stored.destination_namespace == "web"


def test_app_add_with_parameters(invoke, repo, tmp_path):
    result = invoke(
        "app", "add", "guestbook", "--repo", str(repo), "--dest-namespace", "web",
        "-p", "IMAGE_TAG=1.2.3", "--prune", "--self-heal",
    )

    assert result.exit_code == 0, result.output
    stored = ApplicationStore(tmp_path / "applications.yaml").get("guestbook")
    assert stored.parameters == {"IMAGE_TAG": "1.2.3"}
    assert stored.sync_policy.prune and stored.sync_policy.self_heal
    assert not stored.sync_policy.automated


def test_app_add_duplicate(invoke, registered):
    result = invoke("app", "add", "guestbook", "--repo", str(registered), "--dest-namespace", "web")

    assert result.exit_code == 2
    assert "already registered" in result.output


@pytest.mark.parametrize("args", [
    ["Bad_Name", "--repo", "./deploy", "--dest-namespace", "web"],
    ["guestbook", "--repo", "./deploy", "--dest-namespace", "web", "--path", "../secrets"],
    ["guestbook", "--repo", "./deploy", "--dest-namespace", "web", "-p", "IMAGE_TAG"],
])
def test_app_add_invalid(invoke, args):
    result = invoke("app", "add", *args)

    assert result.exit_code == 2
    assert "Troubleshooting" in result.output


def test_app_set_policy(invoke, registered, tmp_path):
    result = invoke("app", "set-policy", "guestbook", "--manual", "--prune")

    assert result.exit_code == 0, result.output
    policy = ApplicationStore(tmp_path / "applications.yaml").get("guestbook").sync_policy
    assert not policy.automated
    assert policy.prune


def test_app_set_policy_without_options(invoke, registered, tmp_path):
    result = invoke("app", "set-policy", "guestbook")

    assert result.exit_code == 0
    assert "nothing changed" in result.output
    assert ApplicationStore(tmp_path / "applications.yaml").get("guestbook").sync_policy.automated


def test_app_set_policy_unknown_application(invoke):
    result = invoke("app", "set-policy", "missing", "--auto")
    assert result.exit_code == 2
    assert "not registered" in result.output


def test_status_of_unsynced_application(invoke, registered):
    result = invoke("status", "guestbook")

    assert result.exit_code == 0
    assert "Sync: Unknown" in _plain(result.output)


def test_status_of_unknown_application(invoke):
    assert invoke("status", "missing").exit_code == 2


def test_diff_shows_plan(invoke, registered, fake_cluster):
    result = invoke("diff", "guestbook")

    assert result.exit_code == 0, result.output
    output = _plain(result.output)
    assert "+ create ConfigMap/web/settings" in output
    assert "2 to create, 0 to update, 0 to delete" in output
    assert fake_cluster.objects == {}


def test_diff_shows_field_changes(invoke, registered, fake_cluster):
    assert invoke("sync", "guestbook").exit_code == 0
    fake_cluster.objects[SETTINGS]["data"]["key"] = "edited"

    result = invoke("diff", "guestbook")

    assert result.exit_code == 0, result.output
    output = _plain(result.output)
    assert "~ update ConfigMap/web/settings" in output
    assert 'data.key: "edited" -> "value"' in output
    assert "0 to create, 1 to update, 0 to delete" in output


def test_sync_then_status_and_history(invoke, registered, fake_cluster):
    result = invoke("sync", "guestbook")

    assert result.exit_code == 0, result.output
    assert "'guestbook' is Synced" in _plain(result.output)
    assert set(fake_cluster.objects) == {SETTINGS, API}

    status = _plain(invoke("status").output)
    assert "guestbook" in status
    assert "Synced" in status

    history = invoke("history", "guestbook")
    assert history.exit_code == 0
    assert "manual" in _plain(history.output)


def test_sync_failure_exits_with_error_code(invoke, registered, fake_cluster):
    fake_cluster.fail("create", SETTINGS, ApplyFatalError("admission webhook denied the request", status=422))

    result = invoke("sync", "guestbook")

    assert result.exit_code == 8
    assert "admission webhook denied the request" in result.output


def test_sync_degraded_health_exits_one(invoke, registered, fake_cluster):
    fake_cluster.status_overrides[API] = {
        "conditions": [{"type": "Progressing", "status": "False", "reason": "ProgressDeadlineExceeded"}],
    }

    result = invoke("sync", "guestbook")

    assert result.exit_code == 1
    assert "Degraded" in _plain(result.output)


@patch("gitops_controller.cli.build_controller")
def test_sync_uses_controller_result(mock_build, invoke):
    controller = MagicMock()
    controller.sync.return_value = _result(SyncStatus.SYNCED)
    controller.last_error.return_value = None
    controller.status.return_value = _status(SyncStatus.SYNCED)
    mock_build.return_value = controller

    result = invoke("sync", "guestbook")

    assert result.exit_code == 0
    controller.sync.assert_called_once_with("guestbook")
    controller.shutdown.assert_called_once()


@patch("gitops_controller.cli.build_controller")
def test_sync_coalesced_shows_status(mock_build, invoke):
    controller = MagicMock()
    controller.sync.return_value = None
    controller.last_error.return_value = None
    controller.status.return_value = _status(SyncStatus.DEGRADED)
    mock_build.return_value = controller

    result = invoke("sync", "guestbook")

    assert result.exit_code == 1
    assert "Sync: Degraded" in _plain(result.output)


def test_run_once(invoke, registered, fake_cluster):
    result = invoke("run", "--once")

    assert result.exit_code == 0, result.output
    assert "Synced" in _plain(result.output)
    assert set(fake_cluster.objects) == {SETTINGS, API}


def test_run_once_with_failure_exits_one(invoke, registered, fake_cluster):
    fake_cluster.fail("create", SETTINGS, ApplyFatalError("forbidden", status=403))

    result = invoke("run", "--once")

    assert result.exit_code == 1
    assert "Degraded" in _plain(result.output)


def test_run_picks_up_registry_changes(invoke, registered, fake_cluster, tmp_path):
    seen = {}

    def run_forever(self, stop_event, tick_interval=1.0, before_tick=None):
        store = ApplicationStore(tmp_path / "applications.yaml")
        store.add(ManagedApplication("billing", str(registered), "billing"))
        store.remove("guestbook")
        before_tick()
        seen["apps"] = [app.name for app in self.applications()]

    with patch.object(ReconciliationController, "run_forever", run_forever):
        result = invoke("run")

    assert result.exit_code == 0, result.output
    assert seen["apps"] == ["billing"]


def test_app_remove_keeps_resources(invoke, registered, fake_cluster, tmp_path):
    assert invoke("sync", "guestbook").exit_code == 0

    result = invoke("app", "remove", "guestbook")

    assert result.exit_code == 0, result.output
    assert ApplicationStore(tmp_path / "applications.yaml").load() == []
    assert set(fake_cluster.objects) == {SETTINGS, API}
    assert "guestbook" not in yaml.safe_load((tmp_path / "state.yaml").read_text())["applications"]


def test_app_remove_cascade(invoke, registered, fake_cluster, tmp_path):
    assert invoke("sync", "guestbook").exit_code == 0

    result = invoke("app", "remove", "guestbook", "--cascade", "--yes")

    assert result.exit_code == 0, result.output
    assert "Deleted 2 resources" in result.output
    assert fake_cluster.objects == {}
    assert ApplicationStore(tmp_path / "applications.yaml").load() == []


def test_app_remove_cascade_needs_confirmation(invoke, registered, fake_cluster):
    result = invoke("app", "remove", "guestbook", "--cascade", input="n\n")

    assert result.exit_code == 1
    assert "guestbook" in _plain(invoke("app", "list").output)


def test_config_set_and_show(invoke, config_path):
    result = invoke("config", "set", "poll_interval", "30")

    assert result.exit_code == 0, result.output
    assert yaml.safe_load(config_path.read_text())["poll_interval"] == 30.0

    shown = _plain(invoke("config", "show").output)
    assert "poll_interval: 30.0" in shown


def test_config_set_unknown_key(invoke):
    result = invoke("config", "set", "colour", "blue")
    assert result.exit_code == 2
    assert "Unknown configuration key" in result.output
