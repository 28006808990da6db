"""Adversarial tests — state machine and prerequisite bypass attempts.

These tests verify that:
1. Invalid state transitions are always rejected
2. Prerequisites cannot be bypassed (no deploy before test AND scan)
3. Terminal states cannot be exited
4. Cascade skipping is thorough (no orphaned stages)
"""

from __future__ import annotations

import pytest

from pipewarden.core.stage_graph import PrerequisiteNotMetError
from pipewarden.core.stage_machine import InvalidTransitionError, StageMachine
from pipewarden.models.runs import PipelineRun
from pipewarden.models.stages import StageStatus

ENVIRONMENTS = ["dev", "staging", "production"]


def _pass(machine: StageMachine, run: PipelineRun, *stage_ids: str) -> PipelineRun:
    for stage_id in stage_ids:
        run = machine.transition(run, stage_id, StageStatus.RUNNING)
        run = machine.transition(run, stage_id, StageStatus.SUCCESS)
    return run


@pytest.fixture
def sm(machine_for, make_run) -> tuple[StageMachine, PipelineRun]:
    machine = machine_for(ENVIRONMENTS)
    return machine, machine.initialize(make_run(environments=ENVIRONMENTS))


class TestPrerequisiteBypassAttempts:
    """Try to start stages without satisfying prerequisites."""

    def test_cannot_deploy_without_build(self, sm):
        machine, run = sm
        with pytest.raises(PrerequisiteNotMetError):
            machine.transition(run, "deploy:dev", StageStatus.RUNNING)

    def test_cannot_deploy_with_only_test_passed(self, sm):
        """deploy requires BOTH test and scan. Passing only one must fail."""
        machine, run = sm
        run = _pass(machine, run, "validate", "build", "test")
        with pytest.raises(PrerequisiteNotMetError, match="scan"):
            machine.transition(run, "deploy:dev", StageStatus.RUNNING)

    def test_cannot_reach_production_before_staging_verified(self, sm):
        machine, run = sm
        run = _pass(machine, run, "validate", "build", "test", "scan", "deploy:dev", "verify:dev")
        run = _pass(machine, run, "deploy:staging")
        with pytest.raises(PrerequisiteNotMetError):
            machine.transition(run, "deploy:production", StageStatus.RUNNING)

    def test_cannot_verify_before_deploy(self, sm):
        machine, run = sm
        run = _pass(machine, run, "validate", "build", "test", "scan")
        with pytest.raises(PrerequisiteNotMetError):
            machine.transition(run, "verify:dev", StageStatus.RUNNING)


class TestInvalidTransitionAttempts:
    def test_cannot_go_pending_to_success(self, sm):
        machine, run = sm
        with pytest.raises(InvalidTransitionError):
            machine.transition(run, "validate", StageStatus.SUCCESS)

    def test_cannot_go_pending_to_failed(self, sm):
        machine, run = sm
        with pytest.raises(InvalidTransitionError):
            machine.transition(run, "validate", StageStatus.FAILED)

    def test_cannot_exit_terminal_success(self, sm):
        machine, run = sm
        run = _pass(machine, run, "validate")
        for target in StageStatus:
            with pytest.raises(InvalidTransitionError):
                machine.transition(run, "validate", target)

    def test_cannot_exit_skipped(self, sm):
        machine, run = sm
        run = machine.skip(run, "validate", "operator promotion")
        with pytest.raises(InvalidTransitionError):
            machine.transition(run, "validate", StageStatus.RUNNING)

    def test_cannot_go_running_to_pending(self, sm):
        machine, run = sm
        run = machine.transition(run, "validate", StageStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            machine.transition(run, "validate", StageStatus.PENDING)


class TestCascadeSkipCompleteness:
    def test_validate_failure_skips_entire_pipeline(self, sm):
        machine, run = sm
        run = machine.transition(run, "validate", StageStatus.RUNNING)
        run = machine.transition(run, "validate", StageStatus.FAILED)
        skipped = [sid for sid, r in run.stages.items() if r.status == StageStatus.SKIPPED]
        assert len(skipped) == len(run.stages) - 1

    def test_scan_timeout_skips_every_environment(self, sm):
        machine, run = sm
        run = _pass(machine, run, "validate", "build", "test")
        run = machine.transition(run, "scan", StageStatus.RUNNING)
        run = machine.transition(run, "scan", StageStatus.TIMED_OUT)
        for env in ENVIRONMENTS:
            assert run.stages[f"deploy:{env}"].status == StageStatus.SKIPPED
            assert run.stages[f"verify:{env}"].status == StageStatus.SKIPPED
        assert run.stages["test"].status == StageStatus.SUCCESS
