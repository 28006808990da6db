"""Operator commands: ``promote``, ``rollback``, ``cancel`` and ``archive-artifacts``."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.panel import Panel

from pipewarden.cli.commands.common import (
    ConfigOption,
    build_coordinator,
    console,
    fail,
    report_run,
)
from pipewarden.core.errors import PipewardenError


def promote_cmd(
    run_id: str = typer.Argument(..., help="Run whose artifact to promote."),
    to_env: str = typer.Argument(..., help="Target environment."),
    requested_by: str = typer.Option(None, "--by", help="Operator identity for the ledger."),
    config_path: Path = ConfigOption,
) -> None:
    """Promote the artifact of RUN_ID into TO_ENV without rebuilding."""
    coordinator = build_coordinator(config_path)
    try:
        run = coordinator.promote(run_id, to_env, requested_by=requested_by)
    except PipewardenError as exc:
        fail(exc)
    report_run(run)


def rollback_cmd(
    environment: str = typer.Argument(..., help="Environment to roll back."),
    requested_by: str = typer.Option(None, "--by", help="Operator identity for the ledger."),
    config_path: Path = ConfigOption,
) -> None:
    """Restore the verified artifact that preceded the current one."""
    coordinator = build_coordinator(config_path)
    try:
        record = coordinator.rollback(environment, requested_by=requested_by)
    except PipewardenError as exc:
        fail(exc)
    console.print(
        Panel(
            f"[bold]{environment}[/bold] rolled back from "
            f"[red]{record.failed_tag or '-'}[/red] to [green]{record.target_tag}[/green]",
            title="[bold magenta]Rollback complete[/bold magenta]",
            border_style="magenta",
            padding=(1, 2),
        )
    )


def cancel_cmd(
    run_id: str = typer.Argument(..., help="Run to cancel."),
    config_path: Path = ConfigOption,
) -> None:
    """Cancel a suspended run or a run whose deployment is still queued."""
    coordinator = build_coordinator(config_path)
    try:
        run = coordinator.cancel(run_id)
    except PipewardenError as exc:
        fail(exc)
    console.print(f"[bold]{run.run_id}[/bold]: {run.status.value}")


def archive_cmd(
    config_path: Path = ConfigOption,
) -> None:
    """Archive artifacts past retention that no environment is running."""
    coordinator = build_coordinator(config_path)
    archived = coordinator.archive_artifacts()
    if not archived:
        console.print("[dim]No artifacts past retention.[/dim]")
        return
    for tag in archived:
        console.print(f"  archived [bold]{tag}[/bold]")
    console.print(f"[green]{len(archived)} artifact(s) archived.[/green]")
