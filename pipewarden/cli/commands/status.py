"""``pipewarden status [RUN_ID]`` — show a run, or the whole installation.

With a run id, displays the run monitor: every stage, its attempts and
classification, the promotion decisions, and hash chain status.  Without
one, lists recent runs and the deployed artifact of every environment.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from pipewarden.cli.commands.common import ConfigOption, build_coordinator, console
from pipewarden.core.run_ledger import LedgerIntegrityError
from pipewarden.monitor.projection import MonitorProjection
from pipewarden.monitor.renderer import MonitorRenderer

_RECENT_RUNS = 20


def status_cmd(
    run_id: str = typer.Argument(None, help="Run to display (overview if omitted)."),
    live: bool = typer.Option(
        False,
        "--live",
        "-L",
        help="Enable continuous live monitoring mode (Ctrl+C to exit).",
    ),
    verify_chain: bool = typer.Option(
        False,
        "--verify-chain",
        "-V",
        help="Verify the hash chain integrity before displaying.",
    ),
    refresh_hz: float = typer.Option(2.0, "--refresh", "-r", help="Refresh rate for live mode."),
    config_path: Path = ConfigOption,
) -> None:
    """Show run status, or an overview of runs and environments."""
    coordinator = build_coordinator(config_path)
    renderer = MonitorRenderer(console=console)

    if run_id is None:
        _print_overview(coordinator, renderer)
        return

    ledger = coordinator.ledger
    if not ledger.get_run_entries(run_id):
        console.print(f"[bold red]Run not found:[/bold red] {run_id}")
        all_runs = ledger.get_all_run_ids()
        if all_runs:
            console.print("\n[bold]Available runs:[/bold]")
            for rid in all_runs[:10]:
                console.print(f"  [cyan]{rid}[/cyan]")
            if len(all_runs) > 10:
                console.print(f"  [dim]... and {len(all_runs) - 10} more[/dim]")
        raise typer.Exit(code=1)

    if verify_chain:
        console.print("[bold cyan]Verifying hash chain...[/bold cyan]")
        try:
            renderer.print_chain_verification(run_id, ledger.verify_chain(run_id))
        except LedgerIntegrityError as exc:
            console.print(f"[bold red]Chain verification failed:[/bold red] {exc}")
            renderer.print_chain_verification(run_id, False)
            raise typer.Exit(code=1) from exc
        console.print()

    projection = MonitorProjection(ledger)
    if live:
        console.print(
            f"[dim]Live monitoring run {run_id} at {refresh_hz} Hz. Press Ctrl+C to exit.[/dim]"
        )
        renderer.render_live(run_id, projection, refresh_hz=refresh_hz)
    else:
        renderer.print_snapshot(projection.snapshot(run_id))


def _print_overview(coordinator, renderer: MonitorRenderer) -> None:
    runs = coordinator.list_runs()[:_RECENT_RUNS]
    if runs:
        table = Table(title="Recent runs", header_style="bold cyan", expand=True)
        table.add_column("Run", style="cyan")
        table.add_column("Commit")
        table.add_column("Environments")
        table.add_column("Artifact")
        table.add_column("Status", justify="center")
        for run in runs:
            status = "awaiting approval" if run.is_suspended else run.status.value
            table.add_row(
                run.run_id,
                f"{run.branch}@{run.commit_sha[:12]}",
                ", ".join(run.environments) or "[dim]-[/dim]",
                run.artifact_tag or "[dim]-[/dim]",
                status,
            )
        console.print(table)
    else:
        console.print("[dim]No runs yet. Start one with: pipewarden trigger[/dim]")

    states = [coordinator.environments.state(name) for name in coordinator.environments.names()]
    console.print(renderer.render_environments(states))
