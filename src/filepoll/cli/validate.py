"""
filepoll validate - Check config.yaml and its configuration seeds.
"""

from pathlib import Path

import typer

from filepoll.cli.common import console, fail, load_settings
from filepoll.exceptions import ValidationError
from filepoll.state.configurations import parse_configurations


def validate(
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
) -> None:
    """
    Validate service settings and every configuration seed without touching state.
    """
    settings = load_settings(project_dir, env)
    console.print(f"[green]✓[/green] Service settings valid (state: {settings.state_path})")

    if not settings.configurations:
        console.print("[dim]No configuration seeds in config.yaml[/dim]")
        return
    try:
        parsed = parse_configurations(settings.configurations)
    except ValidationError as e:
        for problem in e.details.get("errors", []):
            console.print(f"  [red]✗[/red] {problem}")
        raise fail(e.message) from None
    console.print(f"[green]✓[/green] {len(parsed)} configuration seed(s) valid")
