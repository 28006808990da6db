"""Standalone checks: ``policy-check`` and ``validate-repo``.

Both run without touching pipeline state, so they can gate a pull request
before any run exists.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.markup import escape
from rich.table import Table

from pipewarden.cli.commands.common import console, fail
from pipewarden.core.errors import PipewardenError, PolicyViolation, ValidationError
from pipewarden.core.policy_evaluator import evaluate, evaluate_many
from pipewarden.core.repo_validator import validate_repository
from pipewarden.models.policy import PolicyResult, Severity
from pipewarden.workflows import load_workflow

_SEVERITY_STYLES = {Severity.DENY: "bold red", Severity.WARN: "yellow"}


def policy_check_cmd(
    path: Path = typer.Argument(
        ..., exists=True, help="Workflow file, or a directory of workflow files."
    ),
) -> None:
    """Evaluate workflow definitions against the policy rules.

    Exits with the policy-violation code if any deny rule matches.
    """
    try:
        results: dict[str, PolicyResult] = (
            evaluate_many(path) if path.is_dir() else {path.name: evaluate(load_workflow(path))}
        )
    except PipewardenError as exc:
        fail(exc)

    if not results:
        console.print(f"[dim]No workflow files found in {path}.[/dim]")
        return

    table = Table(title="Policy check", header_style="bold cyan", expand=True)
    table.add_column("Workflow", style="cyan")
    table.add_column("Severity", justify="center")
    table.add_column("Rule")
    table.add_column("Message")
    for name, result in results.items():
        if not result.violations:
            table.add_row(name, "[green]ok[/green]", "[dim]-[/dim]", "[dim]-[/dim]")
        for violation in result.violations:
            style = _SEVERITY_STYLES[violation.severity]
            table.add_row(
                name,
                f"[{style}]{violation.severity.value}[/{style}]",
                violation.rule,
                escape(violation.message),
            )
    console.print(table)

    denials = [(v.rule, v.message) for r in results.values() for v in r.denials]
    if denials:
        console.print(f"[bold red]{len(denials)} deny violation(s).[/bold red]")
        raise typer.Exit(code=PolicyViolation.exit_code)
    console.print("[bold green]Policy check passed.[/bold green]")


def validate_repo_cmd(
    repo_dir: Path = typer.Argument(
        Path("."), exists=True, file_okay=False, help="Repository root to check."
    ),
) -> None:
    """Check that a repository is ready to run on the platform."""
    validation = validate_repository(repo_dir)

    if validation.findings:
        table = Table(title=f"Repository checks: {repo_dir}", header_style="bold cyan")
        table.add_column("Check", style="cyan")
        table.add_column("Severity", justify="center")
        table.add_column("Message")
        for finding in validation.findings:
            style = _SEVERITY_STYLES[finding.severity]
            table.add_row(
                finding.check,
                f"[{style}]{finding.severity.value}[/{style}]",
                escape(finding.message),
            )
        console.print(table)

    if not validation.passed:
        console.print("[bold red]Repository validation failed.[/bold red]")
        raise typer.Exit(code=ValidationError.exit_code)
    console.print("[bold green]Repository validation passed.[/bold green]")
