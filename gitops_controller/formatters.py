"""Output formatting and display utilities using rich library."""

from typing import List, Optional
from datetime import datetime, timezone
from io import StringIO

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.text import Text
from rich import box

from gitops_controller.models import (
    LAST_APPLIED_ANNOTATION,
    ActionStatus,
    ActionType,
    ApplicationStatus,
    HealthStatus,
    LiveStateSnapshot,
    ManagedApplication,
    ReconciliationPlan,
    SyncResult,
    SyncStatus,
)
from gitops_controller.planner import describe_patch


class Formatters:
    """Output formatters for CLI display."""

    @staticmethod
    def _get_status_color(status: str) -> str:
        """Get color for a sync, health or action status.

        Args:
            status: Status value

        Returns:
            Color name for rich formatting
        """
        status_colors = {
            SyncStatus.SYNCED.value: "green",
            SyncStatus.SYNCING.value: "blue",
            SyncStatus.OUT_OF_SYNC.value: "yellow",
            SyncStatus.DEGRADED.value: "red",
            HealthStatus.HEALTHY.value: "green",
            HealthStatus.PROGRESSING.value: "blue",
            HealthStatus.MISSING.value: "yellow",
            ActionStatus.APPLIED.value: "green",
            ActionStatus.FAILED.value: "red",
            ActionStatus.SKIPPED.value: "dim",
        }
        return status_colors.get(status, "white")

    @staticmethod
    def _get_status_icon(status: str) -> str:
        status_icons = {
            SyncStatus.SYNCED.value: "✓",
            SyncStatus.SYNCING.value: "⏳",
            SyncStatus.OUT_OF_SYNC.value: "○",
            SyncStatus.DEGRADED.value: "✗",
            HealthStatus.HEALTHY.value: "♥",
            HealthStatus.PROGRESSING.value: "⏳",
            HealthStatus.MISSING.value: "?",
            ActionStatus.APPLIED.value: "✓",
            ActionStatus.FAILED.value: "✗",
            ActionStatus.SKIPPED.value: "⊘",
        }
        return status_icons.get(status, "•")

    @staticmethod
    def _status_text(status: str) -> Text:
        color = Formatters._get_status_color(status)
        icon = Formatters._get_status_icon(status)
        return Text(f"{icon} {status}", style=color)

    @staticmethod
    def _format_time(value: Optional[datetime]) -> str:
        if value is None:
            return "N/A"
        return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    @staticmethod
    def _format_duration(started_at: datetime, finished_at: datetime) -> str:
        """Format duration between start and finish times.

        Args:
            started_at: Start time
            finished_at: Finish time

        Returns:
            Formatted duration string
        """
        total_seconds = int((finished_at - started_at).total_seconds())
        hours = total_seconds // 3600
        minutes = (total_seconds % 3600) // 60
        seconds = total_seconds % 60

        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        elif minutes > 0:
            return f"{minutes}m {seconds}s"
        else:
            return f"{seconds}s"

    @staticmethod
    def format_application_list(apps: List[ManagedApplication]) -> str:
        """Format registered applications as a table.

        Args:
            apps: Registered applications

        Returns:
            Formatted table string
        """
        buffer = StringIO()
        console = Console(file=buffer, force_terminal=True)

        table = Table(
            title="Applications",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan"
        )

        table.add_column("Name", style="white", no_wrap=True)
        table.add_column("Source", style="dim")
        table.add_column("Revision", justify="center")
        table.add_column("Namespace")
        table.add_column("Policy", justify="center")

        for app in apps:
            policy = app.sync_policy
            flags = ["auto" if policy.automated else "manual"]
            if policy.prune:
                flags.append("prune")
            if policy.self_heal:
                flags.append("self-heal")
            source = app.repo_url if app.path in ("", ".") else f"{app.repo_url} ({app.path})"
            table.add_row(app.name, source, app.target_revision, app.destination_namespace, ", ".join(flags))

        if not apps:
            table.add_row("No applications registered", "", "", "", "")

        console.print(table)
        return buffer.getvalue()

    @staticmethod
    def format_status_list(statuses: List[ApplicationStatus]) -> str:
        """Format application statuses as a table.

        Args:
            statuses: Current application statuses

        Returns:
            Formatted table string
        """
        buffer = StringIO()
        console = Console(file=buffer, force_terminal=True)

        table = Table(
            title="Application Status",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan"
        )

        table.add_column("Name", style="white", no_wrap=True)
        table.add_column("Sync", justify="center")
        table.add_column("Health", justify="center")
        table.add_column("Revision", style="dim")
        table.add_column("Last Synced", style="dim")
        table.add_column("Message", style="dim")

        for status in statuses:
            message = status.message[:50] + "..." if len(status.message) > 50 else status.message
            table.add_row(
                status.application,
                Formatters._status_text(status.sync_status.value),
                Formatters._status_text(status.health.value),
                status.revision[:12] or "N/A",
                Formatters._format_time(status.last_synced_at),
                message,
            )

        if not statuses:
            table.add_row("No applications found", "", "", "", "", "")

        console.print(table)
        return buffer.getvalue()

    @staticmethod
    def format_status(status: ApplicationStatus) -> str:
        """Format one application's status as a panel."""
        buffer = StringIO()
        console = Console(file=buffer, force_terminal=True)

        color = Formatters._get_status_color(status.sync_status.value)
        icon = Formatters._get_status_icon(status.sync_status.value)

        status_text = Text()
        status_text.append(f"{icon} ", style=color)
        status_text.append(f"Application: {status.application}\n", style="bold white")
        status_text.append("Sync: ", style="dim")
        status_text.append(f"{status.sync_status.value}\n", style=f"bold {color}")
        status_text.append("Health: ", style="dim")
        status_text.append(f"{status.health.value}\n", style=Formatters._get_status_color(status.health.value))
        status_text.append(f"Revision: {status.revision or 'N/A'}\n", style="dim")
        status_text.append(f"Updated: {Formatters._format_time(status.updated_at)}\n", style="dim")
        status_text.append(f"Last synced: {Formatters._format_time(status.last_synced_at)}\n", style="dim")

        if status.message:
            status_text.append(f"Message: {status.message}\n", style="yellow")

        console.print(Panel(status_text, title="Application Status", border_style=color))
        return buffer.getvalue()

    @staticmethod
    def format_history(name: str, history: List[SyncResult]) -> str:
        """Format an application's sync history, newest first.

        Args:
            name: Application name
            history: Recorded sync results, oldest first

        Returns:
            Formatted table string
        """
        buffer = StringIO()
        console = Console(file=buffer, force_terminal=True)

        table = Table(
            title=f"Sync History: {name}",
            box=box.ROUNDED,
            show_header=True,
            header_style="bold cyan"
        )

        table.add_column("Finished", style="dim", no_wrap=True)
        table.add_column("Trigger", style="dim")
        table.add_column("Revision", style="white")
        table.add_column("Result", justify="center")
        table.add_column("Applied", justify="right")
        table.add_column("Failed", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Message", style="dim")

        for result in reversed(history):
            message = result.message
            if result.rolled_back and "rolled back" not in message:
                message = f"{message} (rolled back)".strip()
            table.add_row(
                Formatters._format_time(result.finished_at),
                result.trigger,
                result.revision[:12] or "N/A",
                Formatters._status_text(result.sync_status.value),
                str(result.applied_count),
                str(result.failed_count),
                Formatters._format_duration(result.started_at, result.finished_at),
                message[:50] + "..." if len(message) > 50 else message,
            )

        if not history:
            table.add_row("No syncs recorded", "", "", "", "", "", "", "")

        console.print(table)
        return buffer.getvalue()

    @staticmethod
    def format_sync_result(result: SyncResult) -> str:
        """Format the actions of one sync cycle."""
        buffer = StringIO()
        console = Console(file=buffer, force_terminal=True)

        color = Formatters._get_status_color(result.sync_status.value)
        console.print(
            f"[bold]{result.application}[/bold] revision {result.revision[:12] or 'N/A'}: "
            f"[{color}]{result.sync_status.value}[/{color}] / {result.health.value}"
        )

        if result.actions:
            table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
            table.add_column("Resource", style="white")
            table.add_column("Action")
            table.add_column("Status", justify="center")
            table.add_column("Attempts", justify="right")
            table.add_column("Message", style="dim")

            for action in result.actions:
                table.add_row(
                    action.resource,
                    action.action.value,
                    Formatters._status_text(action.status.value),
                    str(action.attempts),
                    action.message,
                )
            console.print(table)

        for orphan in result.orphans:
            console.print(f"[yellow]⚠ orphaned (prune disabled):[/yellow] {orphan}")

        if result.message:
            console.print(f"[yellow]{result.message}[/yellow]")
        if result.rolled_back:
            console.print("[yellow]Rolled back to the last known-good revision[/yellow]")

        return buffer.getvalue()

    @staticmethod
    def format_plan(plan: ReconciliationPlan, live: LiveStateSnapshot) -> str:
        """Format a reconciliation plan with per-field changes.

        Args:
            plan: Plan to show
            live: Live snapshot the plan was computed against

        Returns:
            Formatted plan string
        """
        buffer = StringIO()
        console = Console(file=buffer, force_terminal=True)

        action_styles = {
            ActionType.CREATE: ("+", "green"),
            ActionType.UPDATE: ("~", "yellow"),
            ActionType.DELETE: ("-", "red"),
        }

        console.print(f"[bold]Revision {plan.revision[:12] or 'N/A'}[/bold] (digest {plan.desired_digest[:12]})")

        if plan.is_empty:
            console.print("[green]✓ No changes; live state matches desired state[/green]")

        for action in plan.actions:
            sign, color = action_styles[action.action]
            console.print(f"[{color}]{sign} {action.action.value.lower()} {action.key}[/{color}]")
            if action.action == ActionType.UPDATE:
                entry = live.get(action.key)
                for line in describe_patch(_without_last_applied(action.payload), entry.obj if entry else None):
                    console.print(f"    {line}", markup=False)

        for orphan in plan.orphans:
            console.print(f"[yellow]⚠ orphaned (prune disabled): {orphan}[/yellow]")

        console.print(
            f"\n{plan.count(ActionType.CREATE)} to create, {plan.count(ActionType.UPDATE)} to update, "
            f"{plan.count(ActionType.DELETE)} to delete, {len(plan.unchanged)} unchanged"
        )
        return buffer.getvalue()

    @staticmethod
    def print_success(message: str) -> None:
        """Print a success message.

        Args:
            message: Success message to display
        """
        console = Console()
        console.print(f"[bold green]✓[/bold green] {message}")

    @staticmethod
    def print_warning(message: str) -> None:
        console = Console()
        console.print(f"[bold yellow]⚠[/bold yellow] {message}")


def _without_last_applied(patch: Optional[dict]) -> dict:
    """Drop the bookkeeping annotation from a patch before display."""
    patch = dict(patch or {})
    metadata = dict(patch.get("metadata") or {})
    annotations = dict(metadata.get("annotations") or {})
    annotations.pop(LAST_APPLIED_ANNOTATION, None)
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    if metadata:
        patch["metadata"] = metadata
    else:
        patch.pop("metadata", None)
    return patch
