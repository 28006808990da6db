"""Tests for the PipelineCoordinator — run lifecycle and operator actions."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from conftest import ScriptedBody, failing

from pipewarden.core.errors import RollbackFailure, ValidationError
from pipewarden.core.stage_bodies import BodyResult
from pipewarden.models.artifacts import ArtifactState
from pipewarden.models.config import BranchRule, PipelineConfig
from pipewarden.models.environments import DeploymentAction
from pipewarden.models.promotion import ApprovalState
from pipewarden.models.runs import RunStatus, TriggerKind
from pipewarden.models.stages import StageStatus

REPO = "git@example.com:team/app.git"


def run_events(coordinator, run_id: str) -> list[str]:
    return [e.event for e in coordinator.ledger.get_subject_history(run_id, "run")]


class TestTrigger:
    def test_feature_branch_deploys_to_dev(self, make_coordinator):
        coordinator = make_coordinator()
        run = coordinator.trigger(REPO, "feature/login", "abc123")

        assert run.status == RunStatus.SUCCEEDED
        assert run.environments == ["dev"]
        assert run.artifact_tag == "abc123"
        assert all(r.status == StageStatus.SUCCESS for r in run.stages.values())
        assert coordinator.environments.state("dev").current.tag == "abc123"
        assert coordinator.artifacts.get("abc123").deployed_environments == ["dev"]
        assert run_events(coordinator, run.run_id) == ["run.created", "run.succeeded"]
        assert coordinator.ledger.verify_chain(run.run_id)
        assert coordinator.status(run.run_id) == run

    def test_artifact_metadata_is_traceable(self, make_coordinator):
        coordinator = make_coordinator()
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        metadata = coordinator.artifacts.get("abc123").metadata
        assert metadata["source_commit"] == "abc123"
        assert metadata["repository_url"] == REPO
        assert metadata["run_id"] == run.run_id
        assert metadata["branch"] == "feature/login"

    def test_build_tag_output_overrides_commit(self, make_coordinator):
        build = ScriptedBody(BodyResult(outputs={"digest": "sha256:" + "a" * 64, "tag": "1.4.0"}))
        run = make_coordinator(bodies={"build": build}).trigger(REPO, "feature/login", "abc123")
        assert run.artifact_tag == "1.4.0"

    @pytest.mark.parametrize("sha", ["HEAD", "abc12", "ABC123", ""])
    def test_malformed_commit_rejected(self, make_coordinator, sha):
        with pytest.raises(ValidationError):
            make_coordinator().trigger(REPO, "main", sha)

    def test_repository_required(self, make_coordinator):
        with pytest.raises(ValidationError, match="required"):
            make_coordinator().trigger(" ", "main", "abc123")

    def test_unknown_environment_in_branch_rule(self, make_coordinator):
        pipeline = PipelineConfig(branch_rules=[BranchRule(pattern="*", environments=["qa"])])
        with pytest.raises(ValidationError, match="qa"):
            make_coordinator(pipeline).trigger(REPO, "main", "abc123")

    def test_unmatched_branch_stops_after_scan(self, make_coordinator):
        run = make_coordinator().trigger(REPO, "experiment", "abc123")
        assert run.status == RunStatus.SUCCEEDED
        assert set(run.stages) == {"validate", "build", "test", "scan"}

    def test_execution_records_reach_sink(self, make_coordinator):
        records = []
        make_coordinator(sink=records.append).trigger(REPO, "feature/login", "abc123")
        assert [r.stage_id for r in records if r.stage_id.startswith(("deploy", "verify"))] == [
            "deploy:dev",
            "verify:dev",
        ]

    def test_deploy_receives_scoped_credential(self, make_coordinator):
        deploy = ScriptedBody(BodyResult())
        make_coordinator(bodies={"deploy": deploy}).trigger(REPO, "feature/login", "abc123")
        credential = deploy.calls[0].credential
        assert credential.scope.environment == "dev"
        assert deploy.calls[0].artifact_tag == "abc123"


class TestValidate:
    def test_policy_denial_fails_run(self, make_coordinator):
        workflow = {"jobs": {"build": {"steps": [{"run": "make"}]}}}
        run = make_coordinator().trigger(REPO, "feature/login", "abc123", workflow=workflow)
        assert run.status == RunStatus.FAILED
        assert run.failure.classification == "policy_violation"
        assert "mandatory-stage:scan" in run.failure.message
        assert run.stages["build"].status == StageStatus.SKIPPED

    def test_validate_body_runs_when_configured(self, make_coordinator):
        validate = ScriptedBody(failing("yamllint: 3 errors"))
        run = make_coordinator(bodies={"validate": validate}).trigger(REPO, "feature/login", "abc123")
        assert run.failure.stage_id == "validate"
        assert run.failure.classification == "stage_failure"


class TestHeadStageFailures:
    def test_build_failure(self, make_coordinator):
        coordinator = make_coordinator(bodies={"build": ScriptedBody(failing("compile error"))})
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        assert run.status == RunStatus.FAILED
        assert run.failure.stage_id == "build"
        assert run.failure.classification == "stage_failure"
        assert run.failure.detail_ref == f"ledger:{run.run_id}:build"
        assert run.stages["deploy:dev"].status == StageStatus.SKIPPED
        assert run_events(coordinator, run.run_id)[-1] == "run.failed"

    def test_build_without_digest(self, make_coordinator):
        run = make_coordinator(bodies={"build": ScriptedBody(BodyResult())}).trigger(
            REPO, "feature/login", "abc123"
        )
        assert run.failure.classification == "validation_error"
        assert "neither 'digest' nor 'artifact_path'" in run.failure.message

    def test_build_artifact_path_is_hashed(self, make_coordinator, tmp_path):
        image = tmp_path / "image.tar"
        image.write_bytes(b"layers")
        build = ScriptedBody(BodyResult(outputs={"artifact_path": str(image)}))
        coordinator = make_coordinator(bodies={"build": build})
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        assert run.status == RunStatus.SUCCEEDED
        assert coordinator.artifacts.get("abc123").digest.startswith("sha256:")

    def test_test_and_scan_run_concurrently(self, make_coordinator):
        # each body waits for the other; run one after the other they would time out
        barrier = threading.Barrier(2, timeout=5)

        def rendezvous(_spec):
            barrier.wait()
            return BodyResult(outputs={"critical": "0"})

        coordinator = make_coordinator(bodies={"test": rendezvous, "scan": rendezvous})
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        assert run.status == RunStatus.SUCCEEDED
        assert run.stages["test"].status == StageStatus.SUCCESS
        assert run.stages["scan"].status == StageStatus.SUCCESS

    def test_test_failure_does_not_hide_scan(self, make_coordinator):
        coordinator = make_coordinator(bodies={"test": ScriptedBody(failing("2 failed"))})
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        assert run.failure.stage_id == "test"
        assert run.stages["test"].status == StageStatus.FAILED
        assert run.stages["scan"].status == StageStatus.SUCCESS
        assert coordinator.artifacts.latest_scan("abc123") is not None

    def test_non_integer_scan_count(self, make_coordinator):
        scan = ScriptedBody(BodyResult(outputs={"critical": "many"}))
        run = make_coordinator(bodies={"scan": scan}).trigger(REPO, "feature/login", "abc123")
        assert run.failure.stage_id == "scan"
        assert run.stages["scan"].status == StageStatus.FAILED


class TestDeployAndVerify:
    def test_transient_deploy_failures_retried(self, make_coordinator, sleeps):
        deploy = ScriptedBody(failing("rate limit exceeded"), failing("rate limit exceeded"), BodyResult())
        run = make_coordinator(bodies={"deploy": deploy}).trigger(REPO, "feature/login", "abc123")
        assert run.status == RunStatus.SUCCEEDED
        assert sleeps == [30.0, 60.0]
        assert run.stages["deploy:dev"].attempt_count == 3

    def test_terminal_deploy_failure(self, make_coordinator, sleeps):
        coordinator = make_coordinator(bodies={"deploy": ScriptedBody(failing("permission denied"))})
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        assert run.failure.classification == "terminal_infrastructure_error"
        assert sleeps == []
        assert coordinator.environments.state("dev").current is None

    def test_first_deploy_verify_failure_degrades(self, make_coordinator):
        coordinator = make_coordinator(bodies={"verify": ScriptedBody(failing("smoke test failed"))})
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        assert run.failure.classification == "rollback_failure"
        assert run.stages["verify:dev"].rollback.succeeded is False
        assert coordinator.environments.state("dev").degraded is True


class TestApprovals:
    @pytest.fixture
    def coordinator(self, make_coordinator):
        return make_coordinator()

    @pytest.fixture
    def suspended(self, coordinator):
        return coordinator.trigger(REPO, "main", "abc123")

    def test_main_suspends_before_production(self, coordinator, suspended):
        assert suspended.is_suspended
        assert suspended.stages["verify:staging"].status == StageStatus.SUCCESS
        assert suspended.stages["deploy:production"].status == StageStatus.PENDING
        request = coordinator.approvals.status(suspended.pending_approval_id)
        assert request.target_env == "production"
        assert request.source_env == "staging"
        assert run_events(coordinator, suspended.run_id)[-1] == "run.suspended"

    def test_approval_after_soak_completes_run(self, coordinator, suspended, clock):
        clock.advance(3600)
        state, run = coordinator.decide(suspended.pending_approval_id, True, "alice")
        assert state == ApprovalState.APPROVED.value
        assert run.status == RunStatus.SUCCEEDED
        assert run.pending_approval_id is None
        assert coordinator.environments.state("production").current.tag == "abc123"

    def test_early_approval_still_waits_for_soak(self, coordinator, suspended):
        _, run = coordinator.decide(suspended.pending_approval_id, True, "alice")
        assert run.status == RunStatus.FAILED
        assert run.failure.block_reason == "soak_time_not_elapsed"
        assert coordinator.environments.state("production").current is None

    def test_rejection_fails_run(self, coordinator, suspended):
        state, run = coordinator.decide(suspended.pending_approval_id, False, "bob")
        assert state == "rejected"
        assert run.failure.classification == "promotion_blocked"
        assert run.failure.block_reason == "approval_rejected"

    def test_resume_with_open_request_keeps_waiting(self, coordinator, suspended):
        assert coordinator.resume(suspended.run_id) == suspended

    def test_resume_requires_suspended_run(self, coordinator):
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        with pytest.raises(ValidationError, match="not waiting"):
            coordinator.resume(run.run_id)

    def test_expire_approvals(self, coordinator, suspended, clock):
        clock.advance(86400)
        finished = coordinator.expire_approvals()
        assert [r.run_id for r in finished] == [suspended.run_id]
        assert finished[0].failure.block_reason == "approval_expired"

    def test_cancel_suspended_run(self, coordinator, suspended):
        run = coordinator.cancel(suspended.run_id)
        assert run.status == RunStatus.CANCELLED
        assert run.failure.classification == "cancelled"
        assert run.failure.stage_id == "deploy:production"
        assert run_events(coordinator, run.run_id)[-1] == "run.cancelled"

    def test_cancel_withdraws_open_approval(self, coordinator, suspended):
        request_id = suspended.pending_approval_id
        coordinator.cancel(suspended.run_id)

        assert coordinator.approvals.status(request_id).state == ApprovalState.EXPIRED
        assert coordinator.approvals.open_requests() == []
        with pytest.raises(ValidationError, match="already expired"):
            coordinator.decide(request_id, True, "alice")
        assert coordinator.status(suspended.run_id).status == RunStatus.CANCELLED

    def test_cancel_finished_run_refused(self, coordinator):
        run = coordinator.trigger(REPO, "feature/login", "abc123")
        with pytest.raises(ValidationError, match="succeeded"):
            coordinator.cancel(run.run_id)


class TestOperatorActions:
    def test_promote_reuses_artifact(self, make_coordinator):
        build = ScriptedBody(BodyResult(outputs={"digest": "sha256:" + "b" * 64}))
        coordinator = make_coordinator(bodies={"build": build})
        parent = coordinator.trigger(REPO, "feature/login", "abc123")

        run = coordinator.promote(parent.run_id, "staging", requested_by="alice")

        assert run.status == RunStatus.SUCCEEDED
        assert run.trigger == TriggerKind.MANUAL
        assert run.parent_run_id == parent.run_id
        assert run.environments == ["staging"]
        assert run.stages["build"].status == StageStatus.SKIPPED
        assert build.call_count == 1
        assert coordinator.environments.state("staging").current.tag == "abc123"

    def test_promote_requires_artifact(self, make_coordinator):
        coordinator = make_coordinator(bodies={"build": ScriptedBody(failing("boom"))})
        parent = coordinator.trigger(REPO, "feature/login", "abc123")
        with pytest.raises(ValidationError, match="no artifact"):
            coordinator.promote(parent.run_id, "staging")

    def test_promote_unknown_environment(self, make_coordinator):
        coordinator = make_coordinator()
        parent = coordinator.trigger(REPO, "feature/login", "abc123")
        with pytest.raises(ValidationError, match="qa"):
            coordinator.promote(parent.run_id, "qa")

    def test_rollback_restores_previous(self, make_coordinator):
        coordinator = make_coordinator()
        coordinator.trigger(REPO, "feature/login", "aaa111")
        coordinator.trigger(REPO, "feature/login", "bbb222")

        record = coordinator.rollback("dev", requested_by="alice")

        assert record.succeeded
        assert record.target_tag == "aaa111"
        current = coordinator.environments.state("dev").current
        assert current.tag == "aaa111"
        assert current.action == DeploymentAction.ROLLBACK

    def test_rollback_without_history(self, make_coordinator):
        coordinator = make_coordinator()
        coordinator.trigger(REPO, "feature/login", "aaa111")
        with pytest.raises(RollbackFailure, match="no previously verified"):
            coordinator.rollback("dev")

    def test_rollback_unknown_environment(self, make_coordinator):
        with pytest.raises(ValidationError):
            make_coordinator().rollback("qa")

    def test_status_unknown_run(self, make_coordinator):
        with pytest.raises(ValidationError, match="Unknown run"):
            make_coordinator().status("pw-missing")

    def test_list_runs(self, make_coordinator):
        coordinator = make_coordinator()
        first = coordinator.trigger(REPO, "feature/login", "aaa111")
        second = coordinator.trigger(REPO, "feature/login", "bbb222")
        assert {r.run_id for r in coordinator.list_runs()} == {first.run_id, second.run_id}

    def test_archive_keeps_deployed_artifacts(self, make_coordinator, clock):
        coordinator = make_coordinator()
        coordinator.trigger(REPO, "feature/login", "aaa111")
        coordinator.trigger(REPO, "feature/login", "bbb222")
        clock.advance(timedelta(days=91).total_seconds())

        assert coordinator.archive_artifacts() == ["aaa111"]
        assert coordinator.artifacts.get("aaa111").state == ArtifactState.ARCHIVED
        assert coordinator.artifacts.get("bbb222").state == ArtifactState.PUBLISHED
