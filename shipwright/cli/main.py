"""Main CLI entry point for Shipwright."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console

from shipwright.cli.commands.memory import memory_group
from shipwright.cli.commands.run import (
    retry_command,
    run_command,
    skip_command,
    status_command,
)
from shipwright.cli.commands.serve import serve_command
from shipwright.core.exceptions import ShipwrightError

console = Console()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to project configuration file",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config: Optional[Path]) -> None:
    """Shipwright: phased, memory-assisted code changes.

    Turns requirements into a phased plan, drives each task through
    generate/verify/review attempts with checkpoint commits, and keeps a
    citation-backed memory of facts about each repository.

    \b
    Examples:
        shipwright run "Add a --json flag to the export command"
        shipwright memory list
        shipwright memory add testing "Tests run with pytest" -c pyproject.toml:12
        shipwright memory validate
        shipwright serve
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = config


cli.add_command(run_command, name="run")
cli.add_command(retry_command, name="retry")
cli.add_command(skip_command, name="skip")
cli.add_command(status_command, name="status")
cli.add_command(serve_command, name="serve")
cli.add_command(memory_group, name="memory")


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli()
    except ShipwrightError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
