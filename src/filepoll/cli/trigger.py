"""
filepoll trigger - Run one configuration now.

Executes a single discovery cycle in the foreground and prints its outcome.
Exits 1 when the execution fails.
"""

import asyncio
from pathlib import Path

import typer
from rich.table import Table

from filepoll.cli.common import console, fail, fmt_time, load_settings, styled_status
from filepoll.core.models import ExecutionRecord, ExecutionStatus
from filepoll.exceptions import FilePollError
from filepoll.service.server import FilePollService


def render_record(record: ExecutionRecord) -> Table:
    table = Table(title=f"Execution {record.execution_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Configuration", f"{record.tenant_id}/{record.configuration_id}")
    table.add_row("Trigger", record.trigger.value)
    table.add_row("Status", styled_status(record.status.value))
    table.add_row("Started", fmt_time(record.started_at))
    table.add_row("Completed", fmt_time(record.completed_at))
    table.add_row("Duration", f"{record.duration_ms} ms" if record.duration_ms is not None else "-")
    table.add_row("Resolved path", record.resolved_path or "-")
    table.add_row("Resolved filename", record.resolved_filename or "-")
    table.add_row("Files found", str(record.files_found))
    table.add_row("Files processed", str(record.files_processed))
    table.add_row("Notifications", str(record.notifications_emitted))
    table.add_row("Retries", str(record.retry_count))
    if record.error_category:
        table.add_row("Error", f"[red]{record.error_category.value}[/red]: {record.error_message or ''}")
    return table


async def _run_once(service: FilePollService, tenant_id: str, configuration_id: str) -> ExecutionRecord:
    await service.start(enable_scheduler=False)
    try:
        return await service.run_once(tenant_id, configuration_id)
    finally:
        await service.stop()


def trigger(
    tenant_id: str = typer.Argument(..., help="Tenant id"),
    configuration_id: str = typer.Argument(..., help="Configuration id"),
    env: str | None = typer.Option(None, help="Environment (dev, staging, prod)"),
    project_dir: Path = typer.Option(Path.cwd(), "--project-dir", "-d", help="Project directory"),
) -> None:
    """
    Run one discovery cycle for a configuration and wait for the result.
    """
    settings = load_settings(project_dir, env)
    try:
        service = FilePollService(settings)
        record = asyncio.run(_run_once(service, tenant_id, configuration_id))
    except FilePollError as e:
        raise fail(e.message) from None

    console.print(render_record(record))
    if record.status != ExecutionStatus.COMPLETED:
        raise typer.Exit(1)
