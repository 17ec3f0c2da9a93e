"""Main CLI entry point."""

import json
import signal
import sys
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from vmship.config.parser import DEFAULT_CONFIG_FILE, ConfigValidationError
from vmship.deploy.models import DeploymentRecord, DeploymentStatus
from vmship.orchestrator.engine import Engine
from vmship.orchestrator.executor import ActionOutcome, ExecutionReport, ExecutionStatus
from vmship.orchestrator.planner import ActionType, PlanAction, format_plan, has_changes, plan_summary
from vmship.utils.errors import (
    ConcurrentModificationError,
    ConfigurationError,
    DependencyError,
    VmshipError,
)
from vmship.utils.logging import DEFAULT_LOG_DIR, get_logger, setup_logging

console = Console()
logger = get_logger(__name__)

EXIT_ERROR = 1
EXIT_CONCURRENT_MODIFICATION = 5
EXIT_ROLLED_BACK = 6
EXIT_DEPLOY_FAILED = 7
EXIT_PLANNING_ERROR = 8

DEPLOY_EXIT_CODES = {
    DeploymentStatus.HEALTHY: 0,
    DeploymentStatus.ROLLED_BACK: EXIT_ROLLED_BACK,
    DeploymentStatus.FAILED: EXIT_DEPLOY_FAILED,
}

ACTION_STYLES = {
    ActionType.CREATE: "green",
    ActionType.UPDATE: "yellow",
    ActionType.DELETE: "red",
    ActionType.NO_OP: "dim",
}

OUTCOME_STYLES = {
    ActionOutcome.APPLIED: "green",
    ActionOutcome.UNCHANGED: "dim",
    ActionOutcome.SKIPPED: "yellow",
    ActionOutcome.FAILED: "red",
    ActionOutcome.CANCELLED: "magenta",
}


@click.group()
@click.option('--log-level', default='info', type=click.Choice(['debug', 'info', 'warning', 'error']))
@click.option('--config', 'config_path', default=DEFAULT_CONFIG_FILE, help='Path to configuration file')
@click.option('--log-dir', default=DEFAULT_LOG_DIR, show_default=True, help='Directory for JSON-lines log files')
@click.option('--no-log-file', is_flag=True, help='Log to the console only')
@click.pass_context
def cli(ctx, log_level, config_path, log_dir, no_log_file):
    """Provision a small VM stack and deploy containers onto it."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config_path
    ctx.obj['log_level'] = log_level

    setup_logging(log_level, log_dir=None if no_log_file else log_dir)


def create_engine(config_path: str) -> Engine:
    """Create the engine for a configuration file."""
    return Engine(config_path=config_path)


def fail(message: str, detail: str = "", exit_code: int = EXIT_ERROR) -> None:
    """Print a markup message followed by plain detail text and exit."""
    console.print(f"{message} {escape(detail)}" if detail else message)
    sys.exit(exit_code)


def report_error(error: VmshipError) -> None:
    """Print an engine error and exit with the matching code."""
    if isinstance(error, ConfigValidationError):
        fail("[red]Configuration validation failed:[/red]\n", str(error))
    if isinstance(error, ConfigurationError):
        fail("[red]Configuration error:[/red]", error.to_user_message())
    if isinstance(error, DependencyError):
        fail("[red]Planning failed:[/red]", error.to_user_message(), EXIT_PLANNING_ERROR)
    if isinstance(error, ConcurrentModificationError):
        if error.report is not None:
            render_report(error.report)
        fail("[red]Apply aborted:[/red]", error.to_user_message(), EXIT_CONCURRENT_MODIFICATION)
    fail("[red]Error:[/red]", error.to_user_message())


@contextmanager
def cancel_on_interrupt() -> Iterator[threading.Event]:
    """Turn Ctrl-C into a cancellation signal instead of an exception.

    In-flight work is allowed to finish; nothing new starts.
    """
    cancel_event = threading.Event()

    def signal_handler(sig, frame):
        console.print("\n[yellow]Cancelling: waiting for in-flight work to finish...[/yellow]")
        cancel_event.set()

    if threading.current_thread() is not threading.main_thread():
        yield cancel_event
        return

    previous = signal.signal(signal.SIGINT, signal_handler)
    try:
        yield cancel_event
    finally:
        signal.signal(signal.SIGINT, previous)


class RichProgressCallback:
    """Progress callback that displays executor updates using Rich."""

    def __init__(self, progress: Progress, task_id, total: int):
        self.progress = progress
        self.task_id = task_id
        self.completed = 0
        self.progress.update(self.task_id, total=total)

    def __call__(self, logical_id: str, outcome: Optional[ActionOutcome], error: Optional[str]) -> None:
        if outcome is None:
            self.progress.update(self.task_id, description=f"[cyan]Applying:[/cyan] {logical_id}")
            return

        self.completed += 1
        style = OUTCOME_STYLES[outcome]
        self.progress.update(
            self.task_id,
            completed=self.completed,
            description=f"[{style}]{outcome.value}[/{style}] {logical_id}"
        )
        if error:
            self.progress.console.print(f"  [red]✗[/red] {logical_id}: {escape(error)}")


def render_plan(actions: List[PlanAction]) -> None:
    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Action")
    table.add_column("Resource", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Changes")
    table.add_column("After", style="dim")

    for action in actions:
        style = ACTION_STYLES[action.action]
        changes = ", ".join(action.diff.keys()) if action.action == ActionType.UPDATE else ""
        table.add_row(
            str(action.position),
            f"[{style}]{action.action.value}[/{style}]",
            action.logical_id,
            action.kind.value,
            changes,
            ", ".join(action.depends_on),
        )

    console.print(table)
    summary = plan_summary(actions)
    console.print(
        f"\n[bold]Plan:[/bold] [green]{summary['create']} to create[/green], "
        f"[yellow]{summary['update']} to update[/yellow], "
        f"[red]{summary['delete']} to delete[/red], "
        f"{summary['no-op']} unchanged."
    )


def render_report(report: ExecutionReport) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Resource", style="cyan")
    table.add_column("Action")
    table.add_column("Outcome")
    table.add_column("Remote ID", style="dim")
    table.add_column("Detail")

    for result in report.results:
        style = OUTCOME_STYLES[result.outcome]
        if result.error is not None:
            detail = result.error.message
        elif result.blocked_by:
            detail = f"blocked by {result.blocked_by}"
        else:
            detail = ""
        table.add_row(
            result.logical_id,
            result.action.value,
            f"[{style}]{result.outcome.value}[/{style}]",
            result.record.remote_id if result.record else "",
            escape(detail),
        )
    console.print(table)

    for result in report.possibly_created():
        console.print(
            f"[yellow]⚠ {escape(result.logical_id)}: create timed out; the resource may exist "
            f"remotely without a state record[/yellow]"
        )

    counts = (
        f"Applied: {report.count(ActionOutcome.APPLIED)}\n"
        f"Unchanged: {report.count(ActionOutcome.UNCHANGED)}\n"
        f"Skipped: {report.count(ActionOutcome.SKIPPED)}\n"
        f"Failed: {report.count(ActionOutcome.FAILED)}\n"
        f"Cancelled: {report.count(ActionOutcome.CANCELLED)}\n"
        f"Duration: {report.duration:.2f}s"
    )
    if report.status == ExecutionStatus.FULL_SUCCESS:
        console.print(Panel.fit(f"[green]✓ Apply complete[/green]\n\n{counts}", title="Apply Complete", border_style="green"))
    elif report.status == ExecutionStatus.PARTIAL_FAILURE:
        console.print(Panel.fit(f"[yellow]⚠ Apply partially failed[/yellow]\n\n{counts}", title="Apply Partial", border_style="yellow"))
    else:
        console.print(Panel.fit(f"[red]✗ Apply failed[/red]\n\n{counts}", title="Apply Failed", border_style="red"))


def render_deployment(record: DeploymentRecord) -> None:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Phase", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Outcome")
    table.add_column("Exit", justify="right")
    table.add_column("Output")

    for command in record.commands:
        exit_code = "" if command.exit_code is None else str(command.exit_code)
        output = command.output if len(command.output) <= 60 else command.output[:57] + "..."
        table.add_row(command.phase, command.step, command.outcome.value, exit_code, escape(output))
    console.print(table)

    body = (
        f"Deployment: {record.deployment_id}\n"
        f"Artifact: {record.artifact_ref}\n"
        f"Host: {record.target_host}\n"
        f"Previous: {record.previous_artifact_ref or 'none'}\n"
        f"Duration: {record.duration:.1f}s"
    )
    if record.error:
        body += f"\nError: {escape(record.error)}"
    if record.rollback_error:
        body += f"\nRollback error: {escape(record.rollback_error)}"

    if record.status == DeploymentStatus.HEALTHY:
        console.print(Panel.fit(f"[green]✓ Deployment healthy[/green]\n\n{body}", title="Deployment Complete", border_style="green"))
    elif record.status == DeploymentStatus.ROLLED_BACK:
        console.print(Panel.fit(f"[yellow]⚠ Deployment rolled back[/yellow]\n\n{body}", title="Rolled Back", border_style="yellow"))
    else:
        console.print(Panel.fit(
            f"[red]✗ Deployment failed[/red]\n\n{body}\n\n"
            "[bold]The host may be in an unknown state; manual intervention is required.[/bold]",
            title="Deployment Failed",
            border_style="red"
        ))


@cli.command()
@click.option('--json', 'as_json', is_flag=True, help='Print the plan as JSON')
@click.pass_context
def plan(ctx, as_json):
    """Show the changes apply would make."""
    try:
        engine = create_engine(ctx.obj['config_path'])
        actions = engine.plan()
    except VmshipError as e:
        report_error(e)
    except Exception as e:
        logger.exception("Unexpected error during planning")
        fail("[red]Unexpected error:[/red]", str(e))

    if as_json:
        click.echo(json.dumps({
            'summary': plan_summary(actions),
            'actions': [
                {
                    'position': action.position,
                    'action': action.action.value,
                    'id': action.logical_id,
                    'kind': action.kind.value,
                    'changes': action.diff.keys(),
                    'depends_on': list(action.depends_on),
                    'expected_version': action.expected_version,
                }
                for action in actions
            ],
        }, indent=2))
        return

    if not actions:
        console.print("[yellow]No resources declared and none in state[/yellow]")
        return
    render_plan(actions)
    logger.debug(f"Plan:\n{format_plan(actions)}")


@cli.command()
@click.option('--workers', type=click.IntRange(min=1), help='Maximum concurrent actions (default: executor.workers)')
@click.option('--yes', '-y', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def apply(ctx, workers, yes):
    """Create, update and delete resources to match the configuration."""
    try:
        engine = create_engine(ctx.obj['config_path'])
        actions = engine.plan()

        if not has_changes(actions):
            console.print("[green]No changes. Infrastructure matches the configuration.[/green]")
            return

        render_plan(actions)
        if not yes:
            console.print()
            if not click.confirm("Apply these changes?"):
                console.print("[yellow]Apply cancelled[/yellow]")
                return

        with cancel_on_interrupt() as cancel_event, Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        ) as progress:
            task_id = progress.add_task("[cyan]Starting apply...", total=None)
            progress_callback = RichProgressCallback(progress, task_id, len(actions))
            report = engine.apply(
                workers=workers,
                cancel_event=cancel_event,
                progress_callback=progress_callback,
                plan=actions,
            )

    except VmshipError as e:
        report_error(e)
    except Exception as e:
        logger.exception("Unexpected error during apply")
        fail("[red]Unexpected error:[/red]", str(e))

    console.print()
    render_report(report)
    if report.exit_code:
        sys.exit(report.exit_code)


@cli.command()
@click.argument('artifact_ref')
@click.option('--previous', 'previous_ref', help='Artifact to roll back to (default: last healthy deployment)')
@click.option('--host', help='Target host (default: read from state)')
@click.pass_context
def deploy(ctx, artifact_ref, previous_ref, host):
    """Replace the running container with ARTIFACT_REF."""
    try:
        engine = create_engine(ctx.obj['config_path'])
        with cancel_on_interrupt() as cancel_event:
            with console.status(f"[cyan]Deploying {artifact_ref}...[/cyan]"):
                record = engine.deploy(
                    artifact_ref,
                    target_host=host,
                    previous_artifact_ref=previous_ref,
                    cancel_event=cancel_event,
                )
    except VmshipError as e:
        report_error(e)
    except Exception as e:
        logger.exception("Unexpected error during deployment")
        fail("[red]Unexpected error:[/red]", str(e))

    render_deployment(record)
    exit_code = DEPLOY_EXIT_CODES[record.status]
    if exit_code:
        sys.exit(exit_code)


@cli.group()
def state():
    """Inspect recorded resource state."""
    pass


@state.command('list')
@click.pass_context
def state_list(ctx):
    """List resources in the state file."""
    try:
        engine = create_engine(ctx.obj['config_path'])
        config = engine.load_config()
        records = engine.state_store(config).load()
    except VmshipError as e:
        report_error(e)

    if not records:
        console.print("[yellow]State is empty[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("Remote ID")
    table.add_column("Version", justify="right")
    table.add_column("Depends On", style="dim")
    table.add_column("Updated", style="dim")

    for resource_id in sorted(records):
        record = records[resource_id]
        table.add_row(
            record.id,
            record.kind.value,
            record.remote_id,
            str(record.version),
            ", ".join(record.dependencies),
            record.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    console.print(f"\n[dim]Total resources: {len(records)}[/dim]")


@state.command('show')
@click.argument('resource_id')
@click.pass_context
def state_show(ctx, resource_id):
    """Show the full state record of RESOURCE_ID."""
    try:
        engine = create_engine(ctx.obj['config_path'])
        config = engine.load_config()
        record = engine.state_store(config).get(resource_id)
    except VmshipError as e:
        report_error(e)

    if record is None:
        fail("[red]Error:[/red]", f"Resource not found in state: {resource_id}")

    console.print(Panel.fit(
        f"[bold]{record.id}[/bold] ({record.kind.value})\n"
        f"Remote ID: {record.remote_id}\n"
        f"Version: {record.version}\n"
        f"Updated: {record.updated_at.isoformat()}",
        title="Resource",
        border_style="cyan"
    ))
    console.print("\n[bold]Attributes:[/bold]")
    console.print_json(data=record.attributes)
    console.print("\n[bold]Outputs:[/bold]")
    console.print_json(data=record.outputs)


@cli.command()
@click.option('--host', help='Only deployments to this host')
@click.option('--limit', default=10, help='Number of deployments to show')
@click.pass_context
def history(ctx, host, limit):
    """List recent deployments."""
    try:
        engine = create_engine(ctx.obj['config_path'])
        config = engine.load_config()
        records = engine.history(config).list_deployments(host=host, limit=limit)
    except VmshipError as e:
        report_error(e)

    if not records:
        console.print("[yellow]No deployment history found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("Deployment", style="cyan")
    table.add_column("Started", style="dim")
    table.add_column("Host")
    table.add_column("Artifact", style="magenta")
    table.add_column("Status")
    table.add_column("Duration", justify="right")

    status_styles = {
        DeploymentStatus.HEALTHY: "green",
        DeploymentStatus.ROLLED_BACK: "yellow",
        DeploymentStatus.FAILED: "red",
    }
    for record in records:
        style = status_styles.get(record.status, "white")
        table.add_row(
            record.deployment_id,
            record.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.target_host,
            record.artifact_ref,
            f"[{style}]{record.status.value}[/{style}]",
            f"{record.duration:.1f}s",
        )
    console.print(table)


if __name__ == '__main__':
    cli()
