"""
filepoll history - Inspect execution history.
"""

import json
from datetime import timedelta
from pathlib import Path

import typer
from rich.table import Table

from filepoll.cli.common import console, fail, fmt_time, open_state, parse_when, styled_status
from filepoll.cli.trigger import render_record
from filepoll.core.models import ExecutionStatus, utcnow
from filepoll.exceptions import FilePollError
from filepoll.state.history import ExecutionHistory
from filepoll.state.ledger import DeduplicationLedger

app = typer.Typer(name="history", help="Inspect execution history")


@app.command("list")
def list_executions(
    tenant_id: str = typer.Argument(..., help="Tenant id"),
    configuration: str | None = typer.Option(None, "--config", "-c", help="Only this configuration"),
    status: ExecutionStatus | None = typer.Option(None, "--status", "-s", help="Only this status"),
    since: str | None = typer.Option(None, "--since", help="Created at or after (ISO date/time)"),
    until: str | None = typer.Option(None, "--until", help="Created before (ISO date/time)"),
    limit: int = typer.Option(50, "--limit", "-n", help="Page size"),
    page_token: str | None = typer.Option(None, "--page-token", help="Continuation token from a previous page"),
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
) -> None:
    """
    List executions for a tenant, newest first.
    """
    store = open_state(project_dir, env)
    try:
        page = ExecutionHistory(store).list(
            tenant_id,
            configuration_id=configuration,
            status=status,
            since=parse_when(since),
            until=parse_when(until),
            page_size=limit,
            continuation_token=page_token,
        )
    except FilePollError as e:
        raise fail(e.message) from None
    finally:
        store.close()

    if not page.items:
        console.print("[dim]No executions found[/dim]")
        return

    table = Table(title=f"Executions for {tenant_id}", show_header=True)
    table.add_column("Execution", style="cyan", no_wrap=True)
    table.add_column("Configuration")
    table.add_column("Trigger", style="dim")
    table.add_column("Status")
    table.add_column("Created", style="dim")
    table.add_column("Duration", justify="right")
    table.add_column("Found", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Error", style="red")
    for record in page.items:
        table.add_row(
            record.execution_id,
            record.configuration_id,
            record.trigger.value,
            styled_status(record.status.value),
            fmt_time(record.created_at),
            f"{record.duration_ms} ms" if record.duration_ms is not None else "-",
            str(record.files_found),
            str(record.files_processed),
            record.error_category.value if record.error_category else "",
        )
    console.print(table)
    if page.continuation_token:
        console.print(f"[dim]More results: --page-token {page.continuation_token}[/dim]")


@app.command("show")
def show(
    execution_id: str = typer.Argument(..., help="Execution id"),
    as_json: bool = typer.Option(False, "--json", help="Print the record as JSON"),
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
) -> None:
    """
    Show one execution.
    """
    store = open_state(project_dir, env)
    try:
        record = ExecutionHistory(store).get(execution_id)
    except FilePollError as e:
        raise fail(e.message) from None
    finally:
        store.close()
    if record is None:
        raise fail(f"Execution not found: {execution_id}")

    if as_json:
        typer.echo(json.dumps(record.to_dict(), indent=2))
    else:
        console.print(render_record(record))


@app.command("files")
def files(
    execution_id: str = typer.Argument(..., help="Execution id"),
    filename: str | None = typer.Option(None, "--filename", "-f", help="Filename contains (case-insensitive)"),
    limit: int = typer.Option(50, "--limit", "-n", help="Page size"),
    page_token: str | None = typer.Option(None, "--page-token", help="Continuation token from a previous page"),
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
) -> None:
    """
    List the files an execution processed.
    """
    store = open_state(project_dir, env)
    try:
        record = ExecutionHistory(store).get(execution_id)
        if record is None:
            raise fail(f"Execution not found: {execution_id}")
        page = DeduplicationLedger(store).query(
            record.tenant_id,
            record.configuration_id,
            filename=filename,
            execution_id=execution_id,
            page_size=limit,
            continuation_token=page_token,
        )
    except FilePollError as e:
        raise fail(e.message) from None
    finally:
        store.close()

    if not page.items:
        console.print("[dim]No files processed by this execution[/dim]")
        return

    table = Table(title=f"Files processed by {execution_id}", show_header=True)
    table.add_column("Filename", style="cyan")
    table.add_column("Locator", style="dim")
    table.add_column("Size", justify="right")
    table.add_column("Last modified")
    table.add_column("Discovery date", style="yellow")
    table.add_column("Processed at", style="dim")
    for item in page.items:
        table.add_row(
            item.filename,
            item.locator,
            str(item.file_size) if item.file_size is not None else "-",
            fmt_time(item.last_modified),
            item.discovery_date.isoformat(),
            fmt_time(item.processed_at),
        )
    console.print(table)
    if page.continuation_token:
        console.print(f"[dim]More results: --page-token {page.continuation_token}[/dim]")


@app.command("metrics")
def metrics(
    tenant_id: str = typer.Argument(..., help="Tenant id"),
    configuration: str | None = typer.Option(None, "--config", "-c", help="Only this configuration"),
    start: str | None = typer.Option(None, "--start", help="Window start (default: 7 days ago)"),
    end: str | None = typer.Option(None, "--end", help="Window end (default: now)"),
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
) -> None:
    """
    Aggregate execution statistics over a time window.
    """
    window_end = parse_when(end) or utcnow()
    window_start = parse_when(start) or window_end - timedelta(days=7)
    if window_start >= window_end:
        raise fail("--start must be before --end")

    store = open_state(project_dir, env)
    try:
        result = ExecutionHistory(store).metrics(
            tenant_id, configuration_id=configuration, start=window_start, end=window_end
        )
    except FilePollError as e:
        raise fail(e.message) from None
    finally:
        store.close()

    summary = Table(title=f"Executions {fmt_time(window_start)} to {fmt_time(window_end)}", show_header=False)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")
    summary.add_row("Total", str(result.total_executions))
    summary.add_row("Successful", f"[green]{result.successful_executions}[/green]")
    summary.add_row("Failed", f"[red]{result.failed_executions}[/red]")
    summary.add_row("Success rate", f"{result.success_rate:.1%}")
    avg = result.average_duration_ms
    summary.add_row("Average duration", f"{avg:.0f} ms" if avg is not None else "-")
    summary.add_row("Files discovered", str(result.files_discovered))
    summary.add_row("Files processed", str(result.files_processed))
    console.print(summary)

    if result.failures_by_category:
        failures = Table(title="Failures by category", show_header=True)
        failures.add_column("Category", style="red")
        failures.add_column("Count", justify="right")
        for category, count in sorted(result.failures_by_category.items()):
            failures.add_row(category, str(count))
        console.print(failures)

    if result.files_discovered_per_day:
        daily = Table(title="Files discovered per day", show_header=True)
        daily.add_column("Day", style="yellow")
        daily.add_column("Files", justify="right")
        for day, count in sorted(result.files_discovered_per_day.items()):
            daily.add_row(day.isoformat(), str(count))
        console.print(daily)
