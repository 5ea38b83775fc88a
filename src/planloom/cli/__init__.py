"""
planloom CLI - main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

import logging
import sys

import typer
from rich.console import Console

from planloom import __version__
from planloom.cli import plan, refine, serve, task
from planloom.core.config.env import load_layered_env

app = typer.Typer(
    name="planloom",
    help="Plan orchestration: run phased task plans and refine them conversationally",
    no_args_is_help=True,
    add_completion=False,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"planloom {__version__}")
        raise typer.Exit()


def configure_logging(debug: bool) -> None:
    """Log to stderr; DEBUG with --debug, otherwise warnings only."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit",
    ),
) -> None:
    """
    planloom - phased plan execution with conversational refinement.

    Quick Start:
        planloom plan import plan.yaml --ready
        planloom plan run <plan-id>
        planloom refine <plan-id> "split the API phase in two"

    Serve the HTTP API:
        planloom serve --port 8420
    """
    # Precedence: OS env > project .env > user .env
    load_layered_env()
    configure_logging(debug)
    ctx.obj = {"debug": debug}


app.add_typer(plan.app, name="plan")
app.add_typer(task.app, name="task")
app.command(name="refine")(refine.refine)
app.command(name="serve")(serve.serve)


def cli_main() -> None:
    """Main CLI entry point."""
    app()


__all__ = ["app", "cli_main"]
