"""Error handling utilities for CLI commands."""

import click
from rich.console import Console
from functools import wraps

from gitops_controller.exceptions import ReconcilerError

console = Console(stderr=True)


def reconciler_exception(e: ReconcilerError) -> click.ClickException:
    """ClickException carrying the error's exit code."""
    exc = click.ClickException(e.message)
    exc.exit_code = e.exit_code
    return exc


def handle_cli_errors(func):
    """Decorator to handle CLI errors with consistent formatting.

    This decorator catches all controller exceptions and formats them
    with error messages and troubleshooting guidance. The process exits
    with the exit code of the error's category.
    """
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ReconcilerError as e:
            print_error(e.message, e.troubleshooting)
            raise reconciler_exception(e)

        except (click.ClickException, click.exceptions.Exit, click.Abort):
            # Already formatted, or a deliberate exit code
            raise

        except KeyboardInterrupt:
            console.print("\n\n[dim]Operation cancelled by user[/dim]\n")
            raise click.Abort()

        except Exception as e:
            # Handle unexpected errors
            console.print("\n[bold red]✗ Unexpected Error[/bold red]\n")
            console.print(f"[red]{str(e)}[/red]\n")
            console.print("[bold yellow]Troubleshooting:[/bold yellow]")
            console.print("• This is an unexpected error. Please report it if it persists.")
            console.print("• Re-run with --log-level DEBUG for details.\n")
            raise click.ClickException(f"Unexpected error: {str(e)}")

    return wrapper


def print_error(message: str, troubleshooting: list = None):
    """Print an error message with optional troubleshooting steps.

    Args:
        message: Error message to display
        troubleshooting: Optional list of troubleshooting suggestions
    """
    console.print("\n[bold red]✗ Error[/bold red]\n")
    # Messages may contain ${name} or [brackets] from manifests
    console.print(f"{message}\n", style="red", markup=False)

    if troubleshooting:
        console.print("[bold yellow]Troubleshooting:[/bold yellow]")
        for step in troubleshooting:
            console.print(f"• {step}", markup=False)
        console.print()
