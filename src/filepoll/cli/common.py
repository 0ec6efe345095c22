"""
Helpers shared by CLI commands.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import typer
from rich.console import Console

from filepoll.config.loader import load_config
from filepoll.config.settings import ServiceSettings
from filepoll.exceptions import FilePollError
from filepoll.state.store import StateStore
from filepoll.utils.logging import setup_logging_from_config

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "pending": "dim",
    "running": "yellow",
    "completed": "green",
    "failed": "red",
}


def fail(message: str) -> typer.Exit:
    err_console.print(f"[red]Error:[/red] {message}")
    return typer.Exit(1)


def load_settings(project_dir: Path, env: str | None) -> ServiceSettings:
    """Load config.yaml, set up logging and build typed settings; exit 1 on problems."""
    try:
        config = load_config(project_dir, env=env)
        setup_logging_from_config(config, project_dir=project_dir, console=err_console)
        return ServiceSettings.from_config(config, project_dir=project_dir)
    except FilePollError as e:
        raise fail(e.message) from None


def open_state(project_dir: Path, env: str | None) -> StateStore:
    settings = load_settings(project_dir, env)
    store = StateStore(settings.state_path)
    try:
        store.initialize()
    except FilePollError as e:
        raise fail(e.message) from None
    return store


def parse_when(value: str | None) -> datetime | None:
    """ISO date or datetime from the command line, taken as UTC when naive."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise fail(f"Not an ISO date or datetime: {value}") from None
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed


def fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"
