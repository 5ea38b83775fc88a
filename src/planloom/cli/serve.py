"""
planloom CLI - serve command.

Run the HTTP API with uvicorn.
"""

import typer
import uvicorn
from rich.console import Console

from planloom.core.config import load_config

console = Console()


def serve(
    ctx: typer.Context,
    host: str | None = typer.Option(None, "--host", help="Bind address"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port to listen on"),
) -> None:
    """
    Serve the planloom HTTP API.

    Plans left running by an earlier process are paused on startup; resume
    them through the API.
    """
    debug = bool(ctx.obj and ctx.obj.get("debug"))
    server = load_config().server
    host = host or server.host
    port = port or server.port

    console.print(f"[cyan]Serving planloom API on http://{host}:{port}[/cyan]")
    try:
        uvicorn.run(
            "planloom.core.api.app:create_app",
            factory=True,
            host=host,
            port=port,
            log_level="debug" if debug else "info",
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]Server stopped[/yellow]")
