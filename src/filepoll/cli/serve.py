"""
filepoll serve - Long-running service.

Runs the scheduler in the foreground: every tick it dispatches due
configurations, and a watchdog closes executions abandoned by a crash.
Stops cleanly on SIGINT/SIGTERM.
"""

from pathlib import Path

import typer

from filepoll.exceptions import FilePollError
from filepoll.service.server import run_service

app = typer.Typer(name="serve", help="Run filepoll as a long-running service", invoke_without_command=True)


@app.callback()
def serve(
    ctx: typer.Context,
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """
    Run the discovery scheduler until interrupted.
    """
    if ctx.invoked_subcommand is None:
        try:
            run_service(project_dir=project_dir, env=env, verbose=verbose)
        except (FilePollError, RuntimeError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from e
