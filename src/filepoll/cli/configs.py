"""
filepoll configs - Manage retrieval configurations.

Load configurations from YAML (or the ``configurations`` seeds in
config.yaml), list them, and deactivate them.
"""

from pathlib import Path

import typer
import yaml
from rich.table import Table

from filepoll.cli.common import console, fail, fmt_time, load_settings, open_state
from filepoll.exceptions import FilePollError, ValidationError
from filepoll.state.configurations import ConfigurationStore, parse_configurations
from filepoll.state.store import StateStore

app = typer.Typer(name="configs", help="Manage retrieval configurations")


def _read_entries(path: Path) -> list[dict]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise fail(f"Could not read {path}: {e}") from None
    if isinstance(data, dict):
        data = data.get("configurations", [])
    if not isinstance(data, list):
        raise fail(f"{path} must contain a list of configurations")
    return data


@app.command("load")
def load(
    file: Path | None = typer.Argument(None, help="YAML file with configurations (default: config.yaml seeds)"),
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Validate only, write nothing"),
) -> None:
    """
    Create or redefine configurations.
    """
    settings = load_settings(project_dir, env)
    entries = _read_entries(file) if file else settings.configurations
    if not entries:
        console.print("[yellow]No configurations to load[/yellow]")
        return

    try:
        parsed = parse_configurations(entries)
    except ValidationError as e:
        for problem in e.details.get("errors", []):
            console.print(f"  [red]✗[/red] {problem}")
        raise fail(e.message) from None

    if dry_run:
        console.print(f"[green]✓[/green] {len(parsed)} configuration(s) valid")
        return

    store = StateStore(settings.state_path)
    try:
        configurations = ConfigurationStore(store)
        store.initialize()
        for config in parsed:
            saved = configurations.upsert(config, modified_by="cli")
            console.print(
                f"[green]✓[/green] {saved.tenant_id}/{saved.configuration_id} "
                f"(version {saved.version}, next run {fmt_time(saved.next_scheduled_run)})"
            )
    except FilePollError as e:
        raise fail(e.message) from None
    finally:
        store.close()


@app.command("list")
def list_configs(
    tenant: str | None = typer.Option(None, "--tenant", "-t", help="Only this tenant"),
    all_: bool = typer.Option(False, "--all", "-a", help="Include inactive configurations"),
    limit: int = typer.Option(50, "--limit", "-n", help="Page size"),
    page_token: str | None = typer.Option(None, "--page-token", help="Continuation token from a previous page"),
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
) -> None:
    """
    List configurations with their schedule state.
    """
    store = open_state(project_dir, env)
    try:
        page = ConfigurationStore(store).list(
            tenant, include_inactive=all_, page_size=limit, continuation_token=page_token
        )
    except FilePollError as e:
        raise fail(e.message) from None
    finally:
        store.close()

    if not page.items:
        console.print("[dim]No configurations found[/dim]")
        return

    table = Table(title=f"Configurations ({len(page.items)})", show_header=True)
    table.add_column("Tenant", style="cyan")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Protocol", style="green")
    table.add_column("Schedule", style="magenta")
    table.add_column("Last run", style="dim")
    table.add_column("Next run", style="yellow")
    table.add_column("Active")
    for config in page.items:
        table.add_row(
            config.tenant_id,
            config.configuration_id,
            config.name,
            config.protocol.value,
            f"{config.schedule.cron} ({config.schedule.timezone})",
            fmt_time(config.last_executed_at),
            fmt_time(config.next_scheduled_run),
            "yes" if config.is_active else "[red]no[/red]",
        )
    console.print(table)
    if page.continuation_token:
        console.print(f"[dim]More results: --page-token {page.continuation_token}[/dim]")


@app.command("deactivate")
def deactivate(
    tenant_id: str = typer.Argument(..., help="Tenant id"),
    configuration_id: str = typer.Argument(..., help="Configuration id"),
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
) -> None:
    """
    Stop scheduling a configuration (it stays readable).
    """
    store = open_state(project_dir, env)
    try:
        ConfigurationStore(store).deactivate(tenant_id, configuration_id, modified_by="cli")
    except FilePollError as e:
        raise fail(e.message) from None
    finally:
        store.close()
    console.print(f"[green]✓[/green] Deactivated {tenant_id}/{configuration_id}")
