"""Approval commands: ``approve``, ``reject``, ``approval-status`` and
``expire-approvals``.

Deciding a request resumes the suspended run in this process, so
``approve`` performs the production deploy and verify before it returns.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from pipewarden.cli.commands.common import (
    ConfigOption,
    build_coordinator,
    console,
    fail,
    report_run,
)
from pipewarden.core.errors import PipewardenError


def _decide(request_id: str, approve: bool, approver: str, config_path: Path) -> None:
    coordinator = build_coordinator(config_path)
    try:
        state, run = coordinator.decide(request_id, approve, approver)
    except PipewardenError as exc:
        fail(exc)
    console.print(f"Approval [bold]{request_id}[/bold]: {state}")
    if run is not None:
        report_run(run)


def approve_cmd(
    request_id: str = typer.Argument(..., help="Approval request id."),
    approver: str = typer.Option(..., "--approver", "-a", help="Approver identity."),
    config_path: Path = ConfigOption,
) -> None:
    """Approve a pending production promotion."""
    _decide(request_id, True, approver, config_path)


def reject_cmd(
    request_id: str = typer.Argument(..., help="Approval request id."),
    approver: str = typer.Option(..., "--approver", "-a", help="Approver identity."),
    config_path: Path = ConfigOption,
) -> None:
    """Reject a pending production promotion; the run fails."""
    _decide(request_id, False, approver, config_path)


def approval_status_cmd(
    request_id: str = typer.Argument(None, help="Approval request id (all open if omitted)."),
    config_path: Path = ConfigOption,
) -> None:
    """Show one approval request, or every open one."""
    coordinator = build_coordinator(config_path)
    try:
        requests = (
            [coordinator.approvals.status(request_id)]
            if request_id
            else coordinator.approvals.open_requests()
        )
    except PipewardenError as exc:
        fail(exc)

    if not requests:
        console.print("[dim]No open approval requests.[/dim]")
        return

    table = Table(title="Approval requests", header_style="bold cyan")
    table.add_column("Request", style="cyan")
    table.add_column("Run")
    table.add_column("Artifact")
    table.add_column("Promotion")
    table.add_column("State", justify="center")
    table.add_column("Approvals", justify="right")
    table.add_column("Expires")
    for request in requests:
        table.add_row(
            request.request_id,
            request.run_id,
            request.tag,
            f"{request.source_env} -> {request.target_env}",
            request.state.value,
            f"{len(request.approvals)}/{request.required_approvals}",
            request.expires_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def expire_approvals_cmd(config_path: Path = ConfigOption) -> None:
    """Expire overdue approval requests and fail the runs waiting on them."""
    coordinator = build_coordinator(config_path)
    runs = coordinator.expire_approvals()
    if not runs:
        console.print("[dim]No approval requests were due.[/dim]")
        return
    for run in runs:
        console.print(f"[bold]{run.run_id}[/bold]: {run.status.value}")
