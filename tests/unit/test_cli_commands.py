"""Unit tests for the CLI — Typer command registration and end-to-end behavior.

Every command runs against storage inside a temp directory; the paths are
handed to ``ProdConfig`` through PIPEWARDEN_* environment variables, the
same way an operator configures an installation.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from pipewarden.cli.app import app
from pipewarden.config import ProdConfig
from pipewarden.core.coordinator import PipelineCoordinator

runner = CliRunner()

REPO = "git@example.com:team/app.git"

PIPELINE_YAML = """\
environments:
  - name: staging
  - name: production
    predecessors: [staging]
    soak_seconds: 0
    protection:
      auto_deploy: false
      required_approvals: 1
branch_rules:
  - pattern: main
    environments: [staging, production]
stage_commands:
  deploy: "true"
  verify: "true"
"""


@pytest.fixture(autouse=True)
def installation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point every CLI invocation at an isolated installation."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("PIPEWARDEN_LEDGER_PATH", str(tmp_path / "ledger.db"))
    monkeypatch.setenv("PIPEWARDEN_STATE_PATH", str(tmp_path / "state.db"))
    monkeypatch.setenv("PIPEWARDEN_REGISTRY_PATH", str(tmp_path / "registry.db"))
    monkeypatch.setenv("PIPEWARDEN_AUTHORIZED_APPROVERS", '["alice"]')
    monkeypatch.setenv("PIPEWARDEN_ENVIRONMENT", "development")
    return tmp_path


def open_request_id() -> str:
    coordinator = PipelineCoordinator(prod_config=ProdConfig(), bodies={})
    requests = coordinator.approvals.open_requests()
    assert len(requests) == 1
    return requests[0].request_id


# ---------------------------------------------------------------------------
# Test: CLI help and registration
# ---------------------------------------------------------------------------


class TestCliApp:
    """The CLI must register all expected commands and show help."""

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        # Typer's no_args_is_help may exit with 0 or 2 depending on version
        assert result.exit_code in (0, 2)
        assert "usage" in result.output.lower()

    @pytest.mark.parametrize(
        "command",
        [
            "trigger",
            "promote",
            "rollback",
            "cancel",
            "status",
            "approve",
            "reject",
            "approval-status",
            "expire-approvals",
            "policy-check",
            "validate-repo",
            "archive-artifacts",
        ],
    )
    def test_command_registered(self, command):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


# ---------------------------------------------------------------------------
# Test: trigger
# ---------------------------------------------------------------------------


class TestTriggerCommand:
    def test_dry_run_feature_branch_succeeds(self):
        result = runner.invoke(app, ["trigger", REPO, "feature/login", "abc1234", "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "Run succeeded" in result.output

    def test_without_bodies_build_fails_validation(self):
        result = runner.invoke(app, ["trigger", REPO, "feature/login", "abc1234"])
        assert result.exit_code == 10

    def test_malformed_sha_rejected(self):
        result = runner.invoke(app, ["trigger", REPO, "feature/login", "not-a-sha", "--dry-run"])
        assert result.exit_code == 10
        assert "validation_error" in result.output

    def test_invalid_config_file(self, installation: Path):
        (installation / "pipewarden.yaml").write_text("environments: 7\n", encoding="utf-8")
        result = runner.invoke(app, ["trigger", REPO, "feature/login", "abc1234", "--dry-run"])
        assert result.exit_code == 10

    def test_denied_workflow_fails_validate(self, installation: Path):
        workflow = installation / "ci.yml"
        workflow.write_text("on: push\njobs:\n  build: {steps: [{run: make}]}\n", encoding="utf-8")
        result = runner.invoke(
            app,
            ["trigger", REPO, "feature/login", "abc1234", "--dry-run", "--workflow", str(workflow)],
        )
        assert result.exit_code == 11


# ---------------------------------------------------------------------------
# Test: approvals
# ---------------------------------------------------------------------------


class TestApprovalCommands:
    def test_main_suspends_then_approve_deploys(self, installation: Path):
        (installation / "pipewarden.yaml").write_text(PIPELINE_YAML, encoding="utf-8")

        result = runner.invoke(app, ["trigger", REPO, "main", "abc1234", "--dry-run"])
        assert result.exit_code == 0, result.output
        assert "Awaiting approval" in result.output

        request_id = open_request_id()
        listed = runner.invoke(app, ["approval-status"])
        assert listed.exit_code == 0
        assert "Approval requests" in listed.output

        approved = runner.invoke(app, ["approve", request_id, "--approver", "alice"])
        assert approved.exit_code == 0, approved.output
        assert "approved" in approved.output
        assert "Run succeeded" in approved.output

    def test_reject_fails_the_run(self, installation: Path):
        (installation / "pipewarden.yaml").write_text(PIPELINE_YAML, encoding="utf-8")
        runner.invoke(app, ["trigger", REPO, "main", "abc1234", "--dry-run"])

        result = runner.invoke(app, ["reject", open_request_id(), "--approver", "alice"])
        assert result.exit_code == 17
        assert "rejected" in result.output

    def test_unauthorized_approver(self, installation: Path):
        (installation / "pipewarden.yaml").write_text(PIPELINE_YAML, encoding="utf-8")
        runner.invoke(app, ["trigger", REPO, "main", "abc1234", "--dry-run"])

        result = runner.invoke(app, ["approve", open_request_id(), "--approver", "mallory"])
        assert result.exit_code == 12

    def test_unknown_request(self):
        result = runner.invoke(app, ["approval-status", "apr-missing"])
        assert result.exit_code == 10

    def test_nothing_open(self):
        result = runner.invoke(app, ["approval-status"])
        assert result.exit_code == 0
        assert "No open approval requests" in result.output

    def test_expire_with_nothing_due(self):
        result = runner.invoke(app, ["expire-approvals"])
        assert result.exit_code == 0
        assert "No approval requests were due" in result.output


# ---------------------------------------------------------------------------
# Test: status and operator commands
# ---------------------------------------------------------------------------


class TestStatusAndOperations:
    def test_status_unknown_run(self):
        result = runner.invoke(app, ["status", "pw-missing"])
        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_status_overview_when_empty(self):
        result = runner.invoke(app, ["status"])
        assert result.exit_code == 0
        assert "No runs yet" in result.output

    def test_status_of_a_finished_run(self):
        runner.invoke(app, ["trigger", REPO, "feature/login", "abc1234", "--dry-run"])
        run_id = PipelineCoordinator(prod_config=ProdConfig(), bodies={}).list_runs()[0].run_id

        result = runner.invoke(app, ["status", run_id, "--verify-chain"])
        assert result.exit_code == 0, result.output
        assert "is valid" in result.output
        assert "BROKEN" not in result.output

    def test_rollback_without_history(self):
        result = runner.invoke(app, ["rollback", "dev"])
        assert result.exit_code == 18

    def test_cancel_unknown_run(self):
        result = runner.invoke(app, ["cancel", "pw-missing"])
        assert result.exit_code == 10

    def test_archive_keeps_deployed_and_recent_artifacts(self):
        runner.invoke(app, ["trigger", REPO, "feature/login", "abc1234", "--dry-run"])
        result = runner.invoke(app, ["archive-artifacts"])
        assert result.exit_code == 0
        assert "No artifacts past retention" in result.output


# ---------------------------------------------------------------------------
# Test: standalone checks
# ---------------------------------------------------------------------------


class TestChecks:
    def test_policy_check_denies(self, installation: Path):
        workflow = installation / "bad.yml"
        workflow.write_text("on: push\njobs:\n  build: {steps: [{run: make}]}\n", encoding="utf-8")
        result = runner.invoke(app, ["policy-check", str(workflow)])
        assert result.exit_code == 11
        assert "deny violation" in result.output

    def test_policy_check_passes_directory(self, installation: Path):
        workflows = installation / "workflows"
        workflows.mkdir()
        (workflows / "good.yml").write_text(
            "on: push\n"
            "permissions:\n  id-token: write\n"
            "jobs:\n"
            "  build: {steps: [{run: make}]}\n"
            "  test: {steps: [{run: pytest}]}\n"
            "  scan: {steps: [{run: trivy}]}\n"
            "  deploy: {steps: [{run: ./deploy.sh}]}\n",
            encoding="utf-8",
        )
        result = runner.invoke(app, ["policy-check", str(workflows)])
        assert result.exit_code == 0, result.output
        assert "Policy check passed" in result.output

    def test_validate_repo_fails_on_empty_repository(self, installation: Path):
        repo = installation / "repo"
        repo.mkdir()
        result = runner.invoke(app, ["validate-repo", str(repo)])
        assert result.exit_code == 10
        assert "Repository validation failed" in result.output
