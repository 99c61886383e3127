"""Shipwright workflow commands: run, retry, skip and status."""

from pathlib import Path
from typing import List, Optional

import click
from rich.console import Console
from rich.table import Table

from shipwright.cli.context import get_services
from shipwright.core.plan import ImplementationPlan, WorkStatus
from shipwright.core.workflow_state import EventType, Workflow, WorkflowStatus
from shipwright.orchestrator.controller import OrchestrationController
from shipwright.tracking.activity_logger import ActivityEvent, ActivityLogger

console = Console()

EVENT_STYLES = {
    EventType.STARTED: "blue",
    EventType.PROGRESS: "white",
    EventType.COMPLETED: "green",
    EventType.ERROR: "red",
}

STATUS_STYLES = {
    WorkStatus.NOT_STARTED: "dim",
    WorkStatus.IN_PROGRESS: "yellow",
    WorkStatus.COMPLETED: "green",
    WorkStatus.FAILED: "red",
}


@click.command()
@click.argument("requirements", required=False)
@click.option(
    "--file",
    "-f",
    "requirements_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Read requirements from a file",
)
@click.option(
    "--repo",
    "-r",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Repository to change (default: current directory)",
)
@click.option("--max-iterations", type=int, help="Task dispatch budget for this workflow")
@click.option("--no-memory", is_flag=True, help="Do not put memories into prompts")
@click.option("--no-store-memories", is_flag=True, help="Do not store reported facts")
@click.pass_context
def run_command(
    ctx: click.Context,
    requirements: Optional[str],
    requirements_file: Optional[Path],
    repo: Path,
    max_iterations: Optional[int],
    no_memory: bool,
    no_store_memories: bool,
) -> None:
    """Plan and implement REQUIREMENTS in a repository.

    Follows the workflow's events until it completes, fails or is aborted.
    Press Ctrl+C to abort.

    Examples:
        shipwright run "Add a --json flag to the export command"
        shipwright run -f requirements.md --repo ../service
    """
    if requirements_file is not None:
        requirements = requirements_file.read_text(encoding="utf-8")
    if not requirements or not requirements.strip():
        raise click.UsageError("Provide REQUIREMENTS or --file")

    controller = get_services(ctx).controller
    workflow = controller.start(
        requirements,
        str(repo),
        max_iterations=max_iterations,
        use_memory=not no_memory,
        store_new_memories=not no_store_memories,
    )
    console.print(f"[blue]Started workflow[/blue] [cyan]{workflow.id}[/cyan]")
    if workflow.branch:
        console.print(f"[dim]Branch:[/dim] {workflow.branch}")

    _follow(controller, workflow.id)


@click.command()
@click.argument("workflow_id")
@click.pass_context
def retry_command(ctx: click.Context, workflow_id: str) -> None:
    """Reset the failed task of WORKFLOW_ID and resume it."""
    controller = get_services(ctx).controller
    controller.retry(workflow_id)
    _follow(controller, workflow_id)


@click.command()
@click.argument("workflow_id")
@click.pass_context
def skip_command(ctx: click.Context, workflow_id: str) -> None:
    """Skip the current task and phase of WORKFLOW_ID and resume it."""
    controller = get_services(ctx).controller
    controller.skip(workflow_id)
    _follow(controller, workflow_id)


@click.command()
@click.argument("workflow_id", required=False)
@click.option(
    "--activity", "-a", default=0, type=int, help="Also show the last N activity entries"
)
@click.pass_context
def status_command(ctx: click.Context, workflow_id: Optional[str], activity: int) -> None:
    """Show persisted workflows, or the plan of WORKFLOW_ID.

    Examples:
        shipwright status                  # List workflows
        shipwright status 3f2a9c1d0b7e     # Show one workflow's plan
        shipwright status 3f2a9c1d0b7e -a 20
    """
    services = get_services(ctx)
    controller = services.controller
    if workflow_id:
        _print_summary(controller.get(workflow_id), controller.get_plan(workflow_id))
        if activity > 0:
            _print_activity(
                ActivityLogger(workflow_id, services.config.get_log_dir()).get_recent_events(activity)
            )
        return

    workflows = controller.list_all()
    if not workflows:
        console.print("[yellow]No workflows found[/yellow]")
        console.print("Use 'shipwright run' to start one")
        return

    table = Table(title="Workflows")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status", style="yellow")
    table.add_column("Phase", style="magenta")
    table.add_column("Iterations", style="green")
    table.add_column("Repository", style="white")
    table.add_column("Requirements", style="dim")

    for workflow in sorted(workflows, key=lambda w: w.created_at, reverse=True):
        requirements = workflow.requirements.strip().splitlines()[0]
        if len(requirements) > 50:
            requirements = requirements[:47] + "..."
        table.add_row(
            workflow.id,
            workflow.status.value,
            str(workflow.current_phase or "-"),
            f"{workflow.iteration_count}/{workflow.max_iterations}",
            workflow.repository_path,
            requirements,
        )
    console.print(table)


def _follow(controller: OrchestrationController, workflow_id: str) -> None:
    """Print events until the workflow reaches a final state."""
    subscription = controller.stream_events(workflow_id)
    try:
        for event in subscription:
            style = EVENT_STYLES.get(event.type, "white")
            stamp = event.timestamp.strftime("%H:%M:%S")
            console.print(f"[dim]{stamp}[/dim] [{style}]{event.message}[/{style}]")
    except KeyboardInterrupt:
        console.print("\n[yellow]Aborting workflow after the current step...[/yellow]")
        controller.abort(workflow_id)
    finally:
        subscription.close()

    workflow = controller.wait(workflow_id)
    controller.shutdown()
    _print_summary(workflow, controller.get_plan(workflow_id))

    if workflow.status != WorkflowStatus.COMPLETE:
        raise click.ClickException(f"Workflow {workflow_id} ended as {workflow.status.value}")


def _print_summary(workflow: Workflow, plan: Optional[ImplementationPlan]) -> None:
    console.print()
    console.print(f"[bold]Workflow {workflow.id}[/bold]: {workflow.status.value}")
    console.print(f"[dim]Iterations:[/dim] {workflow.iteration_count}/{workflow.max_iterations}")

    if plan is not None:
        table = Table(title=f"Plan {plan.id}")
        table.add_column("Task", style="cyan", no_wrap=True)
        table.add_column("Phase", style="magenta")
        table.add_column("Status")
        table.add_column("Attempts", style="green")
        table.add_column("Description", style="white")
        for phase in plan.phases:
            for task in phase.tasks:
                style = STATUS_STYLES.get(task.status, "white")
                status = task.status.value + (" (skipped)" if task.skipped else "")
                table.add_row(
                    task.id,
                    f"{phase.index}. {phase.name}",
                    f"[{style}]{status}[/{style}]",
                    str(task.attempt_count),
                    task.description,
                )
        console.print(table)

    for error in workflow.errors[-3:]:
        console.print(f"[red]{error.error_type}:[/red] {error.message}")


def _print_activity(events: List[ActivityEvent]) -> None:
    if not events:
        console.print("[yellow]No activity recorded[/yellow]")
        return

    table = Table(title="Recent Activity")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Kind", style="magenta")
    table.add_column("Task", style="cyan")
    table.add_column("Message", style="white")
    for event in events:
        table.add_row(
            event.timestamp.strftime("%H:%M:%S"),
            event.kind.value,
            event.task_id or "-",
            event.message,
        )
    console.print(table)
