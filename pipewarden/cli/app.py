"""Main Typer application — imports and registers all CLI commands.

Entry point: ``pipewarden`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from pipewarden.cli.commands.approvals import (
    approval_status_cmd,
    approve_cmd,
    expire_approvals_cmd,
    reject_cmd,
)
from pipewarden.cli.commands.checks import policy_check_cmd, validate_repo_cmd
from pipewarden.cli.commands.operations import (
    archive_cmd,
    cancel_cmd,
    promote_cmd,
    rollback_cmd,
)
from pipewarden.cli.commands.status import status_cmd
from pipewarden.cli.commands.trigger import trigger_cmd
from pipewarden.config import ProdConfig, configure_logging

app = typer.Typer(
    name="pipewarden",
    help="Pipewarden: policy-gated CI/CD pipeline orchestration and promotion.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None, "--log-level", help="Override PIPEWARDEN_LOG_LEVEL for this invocation."
    ),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(log_level or ProdConfig().log_level)


# Register subcommands
app.command(name="trigger", help="Start a run for a commit.")(trigger_cmd)
app.command(name="promote", help="Promote a run's artifact to an environment.")(promote_cmd)
app.command(name="rollback", help="Restore an environment's previous artifact.")(rollback_cmd)
app.command(name="cancel", help="Cancel a suspended or queued run.")(cancel_cmd)
app.command(name="status", help="Show a run, or runs and environments.")(status_cmd)
app.command(name="approve", help="Approve a production promotion.")(approve_cmd)
app.command(name="reject", help="Reject a production promotion.")(reject_cmd)
app.command(name="approval-status", help="Show approval requests.")(approval_status_cmd)
app.command(name="expire-approvals", help="Expire overdue approval requests.")(
    expire_approvals_cmd
)
app.command(name="policy-check", help="Check workflow files against policy.")(policy_check_cmd)
app.command(name="validate-repo", help="Check a repository's onboarding files.")(
    validate_repo_cmd
)
app.command(name="archive-artifacts", help="Archive artifacts past retention.")(archive_cmd)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
