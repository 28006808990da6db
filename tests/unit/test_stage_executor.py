"""Tests for the StageExecutor — timeouts and raw outcomes."""

from __future__ import annotations

import threading
import time

from conftest import ScriptedBody, failing

from pipewarden.core.errors import AuthenticationError
from pipewarden.core.stage_bodies import BodyResult, StageSpec
from pipewarden.core.stage_executor import ExecutionRecord, StageExecutor
from pipewarden.models.stages import StageKind, StageStatus


def spec(kind: StageKind = StageKind.TEST, environment: str | None = None) -> StageSpec:
    return StageSpec(
        run_id="pw-1",
        stage_id=kind.value if environment is None else f"{kind.value}:{environment}",
        kind=kind,
        environment=environment,
        repository="app",
        branch="main",
        commit_sha="abc123",
    )


class TestStageExecutor:
    def test_success_carries_outputs(self, clock):
        body = ScriptedBody(BodyResult(outputs={"coverage": "91"}))
        outcome = StageExecutor({"test": body}, clock=clock).run(spec(), timeout=5)
        assert outcome.succeeded
        assert outcome.status == StageStatus.SUCCESS
        assert outcome.outputs == {"coverage": "91"}
        assert outcome.started_at == clock()

    def test_timeout_passed_to_body(self):
        body = ScriptedBody(BodyResult())
        StageExecutor({"test": body}).run(spec(), timeout=7.5)
        assert body.calls[0].timeout_seconds == 7.5

    def test_nonzero_exit_is_failed(self):
        body = ScriptedBody(failing("3 tests failed", exit_code=2))
        outcome = StageExecutor({"test": body}).run(spec(), timeout=5)
        assert outcome.status == StageStatus.FAILED
        assert outcome.exit_code == 2
        assert outcome.error == "3 tests failed"
        assert outcome.error_type is None

    def test_raised_exception_is_failed_with_type(self):
        body = ScriptedBody(AuthenticationError("token rejected"))
        outcome = StageExecutor({"deploy": body}).run(spec(StageKind.DEPLOY, "dev"), timeout=5)
        assert outcome.status == StageStatus.FAILED
        assert outcome.error_type == "AuthenticationError"
        assert outcome.error == "token rejected"

    def test_overrunning_body_times_out(self):
        release = threading.Event()

        def slow(_spec):
            release.wait(5)
            return BodyResult()

        try:
            outcome = StageExecutor({"test": slow}).run(spec(), timeout=0.1)
        finally:
            release.set()
        assert outcome.status == StageStatus.TIMED_OUT
        assert outcome.error_type == "TimeoutError"
        assert "exceeded" in outcome.error

    def test_overrunning_deploy_is_waited_for(self):
        finished = threading.Event()

        def slow_deploy(_spec):
            time.sleep(0.3)
            finished.set()
            return BodyResult()

        outcome = StageExecutor({"deploy": slow_deploy}).run(
            spec(StageKind.DEPLOY, "dev"), timeout=0.05
        )
        assert finished.is_set()
        assert outcome.status == StageStatus.TIMED_OUT
        assert outcome.duration_seconds >= 0.25

    def test_body_raising_timeout_is_timed_out(self):
        body = ScriptedBody(TimeoutError("deploy exceeded 30s"))
        outcome = StageExecutor({"test": body}).run(spec(), timeout=5)
        assert outcome.status == StageStatus.TIMED_OUT
        assert outcome.error == "deploy exceeded 30s"

    def test_missing_body_is_validation_failure(self):
        outcome = StageExecutor({}).run(spec(StageKind.DEPLOY, "staging"), timeout=5)
        assert outcome.status == StageStatus.FAILED
        assert outcome.error_type == "ValidationError"
        assert outcome.error == "No stage body configured for deploy in staging"

    def test_has_body_uses_lookup_order(self):
        executor = StageExecutor({"deploy:production": ScriptedBody(BodyResult())})
        assert executor.has_body(StageKind.DEPLOY, "production")
        assert not executor.has_body(StageKind.DEPLOY, "dev")
        assert not executor.has_body(StageKind.VALIDATE)


class TestExecutionRecords:
    def test_record_emitted_to_sink(self):
        records: list[ExecutionRecord] = []
        executor = StageExecutor({"deploy": ScriptedBody(BodyResult())}, sink=records.append)
        executor.run(spec(StageKind.DEPLOY, "dev").model_copy(update={"attempt": 2}), timeout=5)
        assert len(records) == 1
        record = records[0]
        assert record == executor.last_record
        assert record.stage_id == "deploy:dev"
        assert record.environment == "dev"
        assert record.attempt == 2
        assert record.outcome == StageStatus.SUCCESS

    def test_record_emitted_for_missing_body(self):
        executor = StageExecutor({})
        executor.run(spec(), timeout=5)
        assert executor.last_record.outcome == StageStatus.FAILED
