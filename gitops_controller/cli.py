"""Main CLI entry point for the GitOps controller."""

import signal
import threading
from concurrent.futures import wait
from dataclasses import replace

import click
from rich.console import Console

from gitops_controller import __version__
from gitops_controller.applications import ApplicationStore, ApplicationStoreWatcher, parse_parameters
from gitops_controller.config import get_config
from gitops_controller.controller import TRIGGER_POLL, ReconciliationController
from gitops_controller.error_handlers import handle_cli_errors
from gitops_controller.formatters import Formatters
from gitops_controller.log import configure_logging
from gitops_controller.models import ActionStatus, HealthStatus, ManagedApplication, SyncPolicy, SyncStatus
from gitops_controller.tracker import ApplicationStateTracker

console = Console()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def build_controller(config) -> ReconciliationController:
    """Create a controller and register every stored application."""
    controller = ReconciliationController.from_config(config)
    for app in ApplicationStore(config.applications_file).load():
        controller.register(app)
    return controller


def _store(ctx) -> ApplicationStore:
    return ApplicationStore(ctx.obj['config'].applications_file)


def _state(ctx) -> ApplicationStateTracker:
    """Persisted status of every stored application, Unknown if never synced."""
    config = ctx.obj['config']
    tracker = ApplicationStateTracker(config.history_limit, config.state_file)
    tracker.load()
    for app in _store(ctx).load():
        tracker.track(app.name)
    return tracker


@click.group()
@click.version_option(version=__version__, prog_name="gitops-controller")
@click.option(
    "--kubeconfig",
    envvar="KUBECONFIG",
    help="Path to kubeconfig file (defaults to $KUBECONFIG or ~/.kube/config)",
    type=click.Path(exists=True)
)
@click.option(
    "--context",
    help="Kubernetes context to use (defaults to current context)"
)
@click.option(
    "--config",
    "config_path",
    help="Path to config file (defaults to ~/.gitops-controller/config.yaml)",
    type=click.Path(dir_okay=False)
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    help="Log level (defaults to config log_level)"
)
@click.pass_context
@handle_cli_errors
def cli(ctx, kubeconfig, context, config_path, log_level):
    """GitOps controller - keep Kubernetes clusters in sync with Git.

    Applications are registered with a manifest source (a Git repository or
    a local directory) and a destination namespace. The controller renders
    the manifests, diffs them against the cluster and applies the minimal
    ordered set of changes.

    Command Hierarchy:

      app add / remove / set-policy / list   Manage applications

      diff          Show what a sync would change

      sync          Sync one application now

      status        Show application status

      history       Show recent syncs of an application

      run           Run the controller loop

    Examples:

      # Register an application with automated sync
      gitops-controller app add guestbook --repo https://github.com/myorg/deploy --path guestbook --dest-namespace web --auto

      # Preview and sync
      gitops-controller diff guestbook
      gitops-controller sync guestbook

      # Run continuously
      gitops-controller run
    """
    ctx.ensure_object(dict)

    config = get_config(config_path)

    # Command-line options override config file and environment
    if kubeconfig:
        config.set('kubeconfig', kubeconfig)
    if context:
        config.set('cluster_context', context)
    if log_level:
        config.set('log_level', log_level)

    configure_logging(config.log_level)
    ctx.obj['config'] = config


@cli.group()
def app():
    """Manage registered applications."""
    pass


@app.command("add")
@click.argument("name")
@click.option("--repo", "repo_url", required=True, help="Git repository URL, or a local directory (file:// or path)")
@click.option("--path", default=".", show_default=True, help="Manifest directory within the repository")
@click.option("--revision", default="HEAD", show_default=True, help="Branch, tag or commit to track")
@click.option("--dest-namespace", required=True, help="Namespace for resources that do not set one")
@click.option("--dest-context", help="Kubernetes context of the destination cluster (defaults to the global context)")
@click.option("--param", "-p", multiple=True, help="Rendering parameter key=value, substituted for ${key}. Can be repeated.")
@click.option("--auto", is_flag=True, help="Apply changes automatically")
@click.option("--prune", is_flag=True, help="Delete resources removed from the source")
@click.option("--self-heal", is_flag=True, help="Revert live drift and roll back failed syncs")
@click.option("--no-health-check", is_flag=True, help="Do not wait for dependencies to become healthy")
@click.pass_context
@handle_cli_errors
def app_add(ctx, name, repo_url, path, revision, dest_namespace, dest_context, param, auto, prune, self_heal,
            no_health_check):
    """Register an application.

    Examples:

      gitops-controller app add web --repo https://github.com/myorg/deploy --path web --dest-namespace web

      gitops-controller app add local --repo ./manifests --dest-namespace dev -p image=nginx:1.27 --auto --prune
    """
    application = ManagedApplication(
        name=name,
        repo_url=repo_url,
        destination_namespace=dest_namespace,
        path=path,
        target_revision=revision,
        destination_context=dest_context,
        parameters=parse_parameters(list(param)),
        sync_policy=SyncPolicy(
            automated=auto,
            self_heal=self_heal,
            prune=prune,
            health_check=not no_health_check,
        ),
    )
    _store(ctx).add(application)
    Formatters.print_success(f"Application '{name}' registered")
    console.print(f"\n[dim]Sync it now: gitops-controller sync {name}[/dim]\n")


@app.command("remove")
@click.argument("name")
@click.option("--cascade", is_flag=True, help="Also delete the application's resources from the cluster")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
@handle_cli_errors
def app_remove(ctx, name, cascade, yes):
    """Unregister an application.

    Without --cascade the application's resources stay in the cluster.
    """
    store = _store(ctx)
    store.get(name)

    if cascade:
        if not yes:
            click.confirm(f"Delete all resources of application '{name}' from the cluster?", abort=True)
        controller = build_controller(ctx.obj['config'])
        try:
            outcome = controller.unregister(name, cascade=True)
        finally:
            controller.shutdown()
        deleted = sum(1 for r in outcome.results if r.status == ActionStatus.APPLIED) if outcome else 0
        Formatters.print_success(f"Deleted {deleted} resources")
    else:
        _state(ctx).forget(name)

    store.remove(name)
    Formatters.print_success(f"Application '{name}' removed")


@app.command("set-policy")
@click.argument("name")
@click.option("--auto/--manual", default=None, help="Apply changes automatically, or only on manual sync")
@click.option("--prune/--no-prune", default=None, help="Delete resources removed from the source")
@click.option("--self-heal/--no-self-heal", default=None, help="Revert live drift and roll back failed syncs")
@click.option("--health-check/--no-health-check", default=None, help="Wait for dependencies to become healthy")
@click.pass_context
@handle_cli_errors
def app_set_policy(ctx, name, auto, prune, self_heal, health_check):
    """Change an application's sync policy. Unset options keep their value."""
    store = _store(ctx)
    current = store.get(name).sync_policy

    changes = {
        key: value
        for key, value in (
            ("automated", auto),
            ("prune", prune),
            ("self_heal", self_heal),
            ("health_check", health_check),
        )
        if value is not None
    }
    if not changes:
        Formatters.print_warning("No policy options given; nothing changed")
        return

    updated = store.update_policy(name, replace(current, **changes))
    click.echo(Formatters.format_application_list([updated]), nl=False)
    Formatters.print_success(f"Sync policy of '{name}' updated")


@app.command("list")
@click.pass_context
@handle_cli_errors
def app_list(ctx):
    """List registered applications."""
    click.echo(Formatters.format_application_list(_store(ctx).load()), nl=False)


@cli.command()
@click.argument("name")
@click.pass_context
@handle_cli_errors
def diff(ctx, name):
    """Show the actions a sync of NAME would perform, without applying them."""
    controller = build_controller(ctx.obj['config'])
    try:
        plan, live = controller.preview(name)
    finally:
        controller.shutdown()
    click.echo(Formatters.format_plan(plan, live), nl=False)


@cli.command()
@click.argument("name")
@click.pass_context
@handle_cli_errors
def sync(ctx, name):
    """Sync NAME now, regardless of its automated policy.

    Exits with 0 when Synced and healthy, 1 when the sync completed but the
    application is Degraded, or the error's code when the sync failed.
    """
    controller = build_controller(ctx.obj['config'])
    try:
        with console.status(f"[bold yellow]Syncing '{name}'...[/bold yellow]"):
            result = controller.sync(name)
        error = controller.last_error(name)
        status = controller.status(name)
    finally:
        controller.shutdown()

    if result is not None:
        click.echo(Formatters.format_sync_result(result), nl=False)
    else:
        click.echo(Formatters.format_status(status), nl=False)

    if error is not None:
        raise error

    if status.sync_status == SyncStatus.DEGRADED or status.health == HealthStatus.DEGRADED:
        ctx.exit(1)
    Formatters.print_success(f"'{name}' is {status.sync_status.value}")


@cli.command()
@click.argument("name", required=False)
@click.pass_context
@handle_cli_errors
def status(ctx, name):
    """Show the status of NAME, or of every application."""
    tracker = _state(ctx)
    if name:
        click.echo(Formatters.format_status(tracker.status(name)), nl=False)
    else:
        click.echo(Formatters.format_status_list(tracker.statuses()), nl=False)


@cli.command()
@click.argument("name")
@click.pass_context
@handle_cli_errors
def history(ctx, name):
    """Show the most recent syncs of NAME."""
    click.echo(Formatters.format_history(name, _state(ctx).history(name)), nl=False)


@cli.command()
@click.option("--once", is_flag=True, help="Poll every application once and exit")
@click.option("--tick", "tick_interval", default=1.0, show_default=True, help="Seconds between scheduling passes")
@click.pass_context
@handle_cli_errors
def run(ctx, once, tick_interval):
    """Run the controller until interrupted (Ctrl+C or SIGTERM).

    Applications added, removed or changed with the app commands while the
    controller runs are picked up on the next scheduling pass.
    """
    config = ctx.obj['config']
    controller = build_controller(config)

    if once:
        try:
            futures = [controller.trigger(app.name, TRIGGER_POLL) for app in controller.applications()]
            wait(futures)
            statuses = [controller.status(app.name) for app in controller.applications()]
        finally:
            controller.shutdown()
        click.echo(Formatters.format_status_list(statuses), nl=False)
        if any(s.sync_status == SyncStatus.DEGRADED for s in statuses):
            ctx.exit(1)
        return

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    console.print(
        f"\n[bold cyan]Reconciling {len(controller.applications())} applications "
        f"every {config.poll_interval:.0f}s (Press Ctrl+C to stop)...[/bold cyan]\n"
    )
    try:
        watcher = ApplicationStoreWatcher(ApplicationStore(config.applications_file), controller)
        controller.run_forever(stop, tick_interval=tick_interval, before_tick=watcher.poll)
    except KeyboardInterrupt:
        stop.set()
        console.print("\n\n[dim]Stopping controller[/dim]\n")
    finally:
        controller.shutdown()


@cli.group("config")
def config_group():
    """Show or change controller configuration."""
    pass


@config_group.command("show")
@click.pass_context
@handle_cli_errors
def config_show(ctx):
    """Show the effective configuration."""
    config = ctx.obj['config']
    console.print(f"\n[bold cyan]Configuration[/bold cyan] [dim]({config.config_path})[/dim]\n")
    for key in sorted(config.config):
        value = config.get(key)
        if value is None:
            console.print(f"  {key}: [dim]Not set[/dim]")
        else:
            console.print(f"  {key}: [bold]{value}[/bold]")
    console.print()


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
@handle_cli_errors
def config_set(ctx, key, value):
    """Set a configuration value and save it to the config file."""
    config = ctx.obj['config']
    config.set(key, value)
    config.save()
    Formatters.print_success(f"{key} = {config.get(key)}")
    console.print(f"\n[dim]Configuration saved to: {config.config_path}[/dim]\n")


if __name__ == "__main__":
    cli()
