"""Shipwright memory commands."""

from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from shipwright.cli.context import get_config
from shipwright.memory.models import MemoryFilter
from shipwright.memory.service import MemoryService, repository_identity
from shipwright.memory.validator import RecommendedAction
from shipwright.services import build_memory_service

console = Console()

ACTION_STYLES = {
    RecommendedAction.REFRESH: "green",
    RecommendedAction.UPDATE_CITATIONS: "yellow",
    RecommendedAction.REVIEW_MANUALLY: "magenta",
    RecommendedAction.DELETE: "red",
}

repo_option = click.option(
    "--repo",
    "-r",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Repository the memories belong to (default: current directory)",
)


def _service(ctx: click.Context) -> MemoryService:
    return build_memory_service(get_config(ctx))


@click.group(invoke_without_command=True)
@click.pass_context
def memory_group(ctx: click.Context) -> None:
    """Manage citation-backed memories about a repository."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@memory_group.command("list")
@repo_option
@click.option("--query", "-q", help="Search subjects and facts")
@click.option("--file", "-f", "file_path", help="Only memories citing this file")
@click.option("--all", "include_expired", is_flag=True, help="Include expired memories")
@click.option("--limit", "-n", default=20, type=int, help="Maximum results")
@click.pass_context
def list_command(
    ctx: click.Context,
    repo: Path,
    query: Optional[str],
    file_path: Optional[str],
    include_expired: bool,
    limit: int,
) -> None:
    """List memories, most recently relevant first.

    Examples:
        shipwright memory list
        shipwright memory list -q testing
        shipwright memory list --file pyproject.toml --all
    """
    service = _service(ctx)
    repository_id = repository_identity(repo)
    if query:
        memories = service.search(repository_id, query, limit=limit)
    else:
        memories = service.list(
            repository_id,
            MemoryFilter(affects_file=file_path, include_expired=include_expired, max_results=limit),
        )

    if not memories:
        console.print("[yellow]No memories found[/yellow]")
        console.print("Use 'shipwright memory add' to record one")
        return

    table = Table(title=f"Memories for {repository_id}")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Subject", style="magenta")
    table.add_column("Fact", style="white")
    table.add_column("Citations", style="dim")
    table.add_column("Used", style="green")
    table.add_column("Expires", style="yellow")

    for memory in memories:
        table.add_row(
            memory.id[:8],
            memory.subject,
            memory.fact,
            "\n".join(str(c) for c in memory.citations),
            str(memory.use_count),
            memory.expires_at.strftime("%Y-%m-%d"),
        )
    console.print(table)


@memory_group.command("add")
@repo_option
@click.argument("subject")
@click.argument("fact")
@click.option(
    "--citation",
    "-c",
    "citations",
    multiple=True,
    required=True,
    help="Evidence as path or path:line (repeatable)",
)
@click.option("--reason", help="Why this fact matters")
@click.option("--user", "user_id", help="Recorded as the creator")
@click.pass_context
def add_command(
    ctx: click.Context,
    repo: Path,
    subject: str,
    fact: str,
    citations: Tuple[str, ...],
    reason: Optional[str],
    user_id: Optional[str],
) -> None:
    """Record FACT about SUBJECT, backed by citations.

    Examples:
        shipwright memory add testing "Tests run with pytest" -c pyproject.toml:12
    """
    memory = _service(ctx).create(
        repository_identity(repo),
        subject=subject,
        fact=fact,
        citations=list(citations),
        reason=reason,
        created_by_user_id=user_id,
    )
    console.print(f"[green]✓[/green] Stored memory [cyan]{memory.id}[/cyan]")


@memory_group.command("validate")
@repo_option
@click.option("--delete-invalid", is_flag=True, help="Delete memories with no valid citation")
@click.pass_context
def validate_command(ctx: click.Context, repo: Path, delete_invalid: bool) -> None:
    """Re-check every memory's citations against the working tree."""
    service = _service(ctx)
    report = service.validate_repository(repository_identity(repo), delete_invalid=delete_invalid)

    if not report.results:
        console.print("[yellow]No memories to validate[/yellow]")
        return

    table = Table(title="Memory Validation")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Confidence", style="white")
    table.add_column("Action")
    table.add_column("Issues", style="dim")

    for result in report.results:
        style = ACTION_STYLES.get(result.action, "white")
        issues = [
            f"{check.citation}: {check.issue.value}" for check in result.checks if check.issue
        ]
        table.add_row(
            result.memory_id[:8],
            f"{result.confidence:.2f}",
            f"[{style}]{result.action.value}[/{style}]",
            "\n".join(issues),
        )
    console.print(table)
    console.print(
        f"Refreshed {report.refreshed}, updated {report.updated}, "
        f"flagged {report.flagged_for_review}, deletable {report.deleted}"
    )


@memory_group.command("prune")
@click.option("--repo", "-r", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.pass_context
def prune_command(ctx: click.Context, repo: Optional[Path]) -> None:
    """Delete expired memories (of one repository, or all of them)."""
    repository_id = repository_identity(repo) if repo else None
    removed = _service(ctx).prune(repository_id)
    console.print(f"[green]✓[/green] Pruned {removed} expired memories")
