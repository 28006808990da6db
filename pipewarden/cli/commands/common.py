"""Helpers shared by the CLI commands: configuration loading, coordinator
construction, and uniform result/error output."""

from __future__ import annotations

from pathlib import Path
from typing import NoReturn

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from pipewarden.config import ProdConfig
from pipewarden.core.coordinator import PipelineCoordinator
from pipewarden.core.errors import PipewardenError, ValidationError, exit_code_for
from pipewarden.core.production_guard import ProductionConfigError
from pipewarden.core.stage_bodies import bodies_from_commands
from pipewarden.models.config import PipelineConfig
from pipewarden.models.runs import PipelineRun, RunStatus

console = Console()

DEFAULT_CONFIG_PATH = Path("pipewarden.yaml")

ConfigOption = typer.Option(
    DEFAULT_CONFIG_PATH,
    "--config",
    "-c",
    help="Pipeline configuration file (defaults apply if it does not exist).",
)


def load_pipeline(config_path: Path) -> PipelineConfig:
    if not config_path.exists():
        return PipelineConfig()
    try:
        return PipelineConfig.from_yaml(config_path)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        raise ValidationError(f"Invalid pipeline configuration {config_path}: {exc}") from exc


def build_coordinator(config_path: Path, *, dry_run: bool = False) -> PipelineCoordinator:
    """Construct the coordinator, exiting with a readable error on bad config."""
    try:
        pipeline = load_pipeline(config_path)
        bodies = (
            bodies_from_commands(pipeline.stage_commands, cwd=config_path.parent, dry_run=True)
            if dry_run
            else None
        )
        return PipelineCoordinator(pipeline, prod_config=ProdConfig(), bodies=bodies)
    except ProductionConfigError as exc:
        console.print(f"[bold red]Production configuration rejected:[/bold red]\n{exc}")
        raise typer.Exit(code=1) from exc
    except PipewardenError as exc:
        fail(exc)


def fail(exc: PipewardenError) -> NoReturn:
    """Print a classified error and exit with its code."""
    console.print(
        f"[bold red]{exc.classification.value}:[/bold red] {escape(exc.message)}"
        + (f"\n[dim]detail: {exc.detail_ref}[/dim]" if exc.detail_ref else "")
    )
    raise typer.Exit(code=exc.exit_code)


def report_run(run: PipelineRun) -> None:
    """Print the outcome of a run and exit non-zero if it failed."""
    if run.is_suspended:
        console.print(
            Panel(
                "\n".join(
                    [
                        f"[bold]Run:[/bold]       {run.run_id}",
                        f"[bold]Artifact:[/bold]  {run.artifact_tag}",
                        f"[bold]Approval:[/bold]  {run.pending_approval_id}",
                        "",
                        "[dim]Approve with: pipewarden approve "
                        f"{run.pending_approval_id} --approver <name>[/dim]",
                    ]
                ),
                title="[bold yellow]Awaiting approval[/bold yellow]",
                border_style="yellow",
                padding=(1, 2),
            )
        )
        return

    if run.status == RunStatus.SUCCEEDED:
        console.print(
            Panel(
                "\n".join(
                    [
                        f"[bold]Run:[/bold]           {run.run_id}",
                        f"[bold]Commit:[/bold]        {run.branch}@{run.commit_sha}",
                        f"[bold]Artifact:[/bold]      {run.artifact_tag or '-'}",
                        f"[bold]Environments:[/bold]  {', '.join(run.environments) or 'none'}",
                    ]
                ),
                title="[bold green]Run succeeded[/bold green]",
                border_style="green",
                padding=(1, 2),
            )
        )
        return

    failure = run.failure
    lines = [
        f"[bold]Run:[/bold]             {run.run_id}",
        f"[bold]Status:[/bold]          {run.status.value}",
    ]
    if failure is not None:
        lines += [
            f"[bold]Stage:[/bold]           {failure.stage_id}",
            f"[bold]Classification:[/bold]  {failure.classification}",
            f"[bold]Commit:[/bold]          {failure.commit_sha}",
            f"[bold]Artifact:[/bold]        {failure.artifact_tag or '-'}",
            f"[bold]Detail:[/bold]          {failure.detail_ref or '-'}",
            "",
            escape(failure.message),
        ]
    console.print(
        Panel(
            "\n".join(lines),
            title=f"[bold red]Run {run.status.value}[/bold red]",
            border_style="red",
            padding=(1, 2),
        )
    )
    raise typer.Exit(code=exit_code_for(failure.classification if failure else None))
