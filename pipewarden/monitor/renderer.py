"""Rich terminal renderer for the Pipewarden run monitor.

Turns ``MonitorSnapshot`` and ``EnvironmentState`` into Rich renderables
for terminal display, with color-coded stage states and an optional
continuous ``Rich.Live`` mode.

Color scheme
------------
- green     : SUCCESS
- red       : FAILED, TIMED_OUT
- yellow    : RUNNING
- dim       : PENDING, SKIPPED
- magenta   : ROLLED_BACK
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from pipewarden.models.stages import StageStatus

if TYPE_CHECKING:
    from pipewarden.models.environments import EnvironmentState
    from pipewarden.monitor.projection import MonitorProjection, MonitorSnapshot


# ---------------------------------------------------------------------------
# Status -> Rich style mapping
# ---------------------------------------------------------------------------

_STATUS_STYLES: dict[StageStatus, str] = {
    StageStatus.SUCCESS: "bold green",
    StageStatus.FAILED: "bold red",
    StageStatus.TIMED_OUT: "bold red",
    StageStatus.RUNNING: "bold yellow",
    StageStatus.PENDING: "dim",
    StageStatus.SKIPPED: "dim",
    StageStatus.ROLLED_BACK: "bold magenta",
}

_STATUS_LABELS: dict[StageStatus, str] = {
    StageStatus.SUCCESS: "[green]SUCCESS[/green]",
    StageStatus.FAILED: "[bold red]FAILED[/bold red]",
    StageStatus.TIMED_OUT: "[bold red]TIMED OUT[/bold red]",
    StageStatus.RUNNING: "[yellow]RUNNING[/yellow]",
    StageStatus.PENDING: "[dim]PENDING[/dim]",
    StageStatus.SKIPPED: "[dim]SKIPPED[/dim]",
    StageStatus.ROLLED_BACK: "[magenta]ROLLED BACK[/magenta]",
}

_OUTCOME_STYLES: dict[str, str] = {
    "succeeded": "green",
    "failed": "bold red",
    "cancelled": "dim",
    "awaiting approval": "yellow",
    "running": "yellow",
}


class MonitorRenderer:
    """Renders monitor snapshots as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Single snapshot render
    # ------------------------------------------------------------------

    def render_snapshot(self, snapshot: MonitorSnapshot) -> Panel:
        """Render a MonitorSnapshot as a Rich Panel containing a Table."""
        table = self._build_stage_table(snapshot)

        outcome_style = _OUTCOME_STYLES.get(snapshot.outcome, "")
        summary_parts: list[str] = [
            f"[bold]Run:[/bold] {snapshot.run_id}",
            f"[bold]Commit:[/bold] {snapshot.branch or '?'}@{snapshot.commit_sha or '?'}",
            f"[bold]Outcome:[/bold] [{outcome_style}]{snapshot.outcome}[/{outcome_style}]",
            f"[bold]Progress:[/bold] {snapshot.completed_count}/{snapshot.total_stages}",
            f"[bold]Artifacts:[/bold] {snapshot.artifact_count}",
        ]
        if snapshot.pending_approval:
            summary_parts.append(
                f"[yellow][bold]Approval:[/bold] {snapshot.pending_approval}[/yellow]"
            )
        chain_status = (
            "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        )
        summary_parts.append(f"[bold]Chain:[/bold] {chain_status}")

        parts: list = [table, Text(""), Text.from_markup("  |  ".join(summary_parts))]
        if snapshot.promotions:
            parts.extend([Text(""), self._build_promotion_table(snapshot)])
        if snapshot.failure:
            parts.append(Text(""))
            parts.append(
                Text.from_markup(
                    f"[bold red]{snapshot.failure.get('classification')}[/bold red] at "
                    f"[bold]{snapshot.failure.get('stage_id')}[/bold]: "
                )
                + Text(str(snapshot.failure.get("message", "")))
            )

        return Panel(
            Group(*parts),
            title="[bold]Pipewarden Run Monitor[/bold]",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def _build_stage_table(self, snapshot: MonitorSnapshot) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True, pad_edge=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Stage", min_width=20)
        table.add_column("Status", min_width=12, justify="center")
        table.add_column("Attempts", justify="right", width=9)
        table.add_column("Details", min_width=20)

        for i, stage in enumerate(snapshot.stages):
            name_style = _STATUS_STYLES.get(stage.status, "")
            details_parts: list[str] = []
            if stage.classification:
                details_parts.append(f"[red]{stage.classification}[/red]")
            if stage.rolled_back_to:
                details_parts.append(f"[magenta]restored {stage.rolled_back_to}[/magenta]")
            if stage.entered_at:
                details_parts.append(f"[dim]{stage.entered_at.strftime('%H:%M:%S')}[/dim]")
            table.add_row(
                str(i),
                f"[{name_style}]{stage.display_name}[/{name_style}]",
                _STATUS_LABELS.get(stage.status, stage.status.value),
                str(stage.attempts) if stage.attempts else "[dim]-[/dim]",
                " | ".join(details_parts) if details_parts else "[dim]-[/dim]",
            )
        return table

    @staticmethod
    def _build_promotion_table(snapshot: MonitorSnapshot) -> Table:
        table = Table(title="Promotions", header_style="bold cyan", expand=True)
        table.add_column("Target")
        table.add_column("From")
        table.add_column("Decision", justify="center")
        table.add_column("Reason")
        table.add_column("Approver")
        for promotion in snapshot.promotions:
            style = "green" if promotion.decision == "allowed" else "red"
            table.add_row(
                promotion.target_env,
                promotion.source_env,
                f"[{style}]{promotion.decision}[/{style}]",
                promotion.block_reason or "[dim]-[/dim]",
                promotion.approver or "[dim]-[/dim]",
            )
        return table

    def render_environments(self, states: list[EnvironmentState]) -> Table:
        """Render the deploy pointer of every environment."""
        table = Table(title="Environments", header_style="bold cyan", expand=True)
        table.add_column("Environment", style="bold")
        table.add_column("Artifact")
        table.add_column("Run")
        table.add_column("Verified at")
        table.add_column("Health", justify="center")
        for state in states:
            current = state.current
            health = (
                f"[bold red]DEGRADED[/bold red] {state.degraded_reason or ''}"
                if state.degraded
                else "[green]ok[/green]"
            )
            table.add_row(
                state.name,
                f"{current.tag} ({current.action.value})" if current else "[dim]none[/dim]",
                current.run_id if current else "[dim]-[/dim]",
                current.verified_at.strftime("%Y-%m-%d %H:%M:%S") if current else "[dim]-[/dim]",
                health,
            )
        return table

    # ------------------------------------------------------------------
    # Continuous live rendering
    # ------------------------------------------------------------------

    def render_live(
        self,
        run_id: str,
        projection: MonitorProjection,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Continuously render a run in Rich Live mode until Ctrl+C."""
        interval = 1.0 / max(refresh_hz, 0.1)
        with Live(console=self.console, refresh_per_second=refresh_hz, transient=False) as live:
            try:
                while True:
                    live.update(self.render_snapshot(projection.snapshot(run_id)))
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(projection.snapshot(run_id)))

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_snapshot(self, snapshot: MonitorSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
