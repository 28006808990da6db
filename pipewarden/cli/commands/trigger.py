"""``pipewarden trigger`` — start a run for a commit.

Resolves the branch to its environments, then drives the run through
validate, build, test/scan and each environment's deploy and verify.  A
promotion into a protected environment leaves the run suspended and
prints the approval request id.
"""

from __future__ import annotations

from pathlib import Path

import typer

from pipewarden.cli.commands.common import ConfigOption, build_coordinator, fail, report_run
from pipewarden.core.errors import PipewardenError
from pipewarden.models.runs import TriggerKind


def trigger_cmd(
    repository: str = typer.Argument(..., help="Repository URL or slug."),
    branch: str = typer.Argument(..., help="Branch the commit was pushed to."),
    commit_sha: str = typer.Argument(..., help="Commit SHA to build."),
    trigger: TriggerKind = typer.Option(
        TriggerKind.PUSH, "--trigger", "-t", help="Event that caused this run."
    ),
    workflow: Path = typer.Option(
        None,
        "--workflow",
        "-w",
        exists=True,
        dir_okay=False,
        help="Workflow definition to check during validate.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Use no-op bodies for every stage without a configured command.",
    ),
    config_path: Path = ConfigOption,
) -> None:
    """Trigger a pipeline run for COMMIT_SHA on BRANCH."""
    coordinator = build_coordinator(config_path, dry_run=dry_run)
    try:
        run = coordinator.trigger(repository, branch, commit_sha, trigger, workflow)
    except PipewardenError as exc:
        fail(exc)
    report_run(run)
