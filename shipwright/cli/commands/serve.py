"""Shipwright web server command."""

import click
from rich.console import Console

from shipwright.cli.context import get_config

console = Console()


@click.command()
@click.option("--host", "-h", default=None, help="Host to bind to (default: from config)")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to (default: from config)")
@click.option("--reload", "-r", is_flag=True, help="Enable auto-reload for development")
@click.pass_context
def serve_command(ctx: click.Context, host: str, port: int, reload: bool) -> None:
    """Start the Shipwright API server.

    Exposes workflows (with server-sent event streams) and memories over
    HTTP. Expired memories are pruned in the background while it runs.

    Examples:
        shipwright serve                 # Start on http://127.0.0.1:8000
        shipwright serve --port 3000     # Start on custom port
        shipwright serve --host 0.0.0.0  # Allow external connections
    """
    config = get_config(ctx)
    host = host or config.server.host
    port = port or config.server.port

    console.print("[blue]Starting Shipwright server...[/blue]")
    console.print(f"[green]✓[/green] API available at: http://{host}:{port}/api")
    console.print(f"[green]✓[/green] API documentation at: http://{host}:{port}/docs")
    console.print("[dim]Press Ctrl+C to stop the server[/dim]")
    console.print()

    from shipwright.web.server import run_server

    try:
        run_server(host=host, port=port, reload=reload, config=config)
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")
