"""Pipeline coordinator — the central driver for Pipewarden runs.

The PipelineCoordinator wires together the RunLedger, StateStore,
StageMachine, StageExecutor, FailureController, ArtifactLedger,
PromotionGate, ApprovalChannel and DeploymentQueue into one engine.

A run moves through a fixed stage graph::

    validate -> build -> {test, scan} -> deploy(env) -> verify(env) -> ...

Test and scan run concurrently.  Deploy and verify run once per resolved
environment, in order, each behind the promotion gate and holding the
environment's deployment slot.  A promotion into a protected environment
suspends the run: its state is persisted with ``pending_approval_id`` set
and no thread waits.  ``resume`` continues it once the approval is decided
or has expired.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack, contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pipewarden.config import ProdConfig
from pipewarden.core.approvals import ApprovalChannel
from pipewarden.core.artifact_ledger import ArtifactLedger, is_valid_commit_sha
from pipewarden.core.branch_resolver import BranchResolver
from pipewarden.core.deploy_queue import DeploymentQueue
from pipewarden.core.environments import EnvironmentRegistry
from pipewarden.core.errors import (
    FailureClass,
    PipewardenError,
    PolicyViolation,
    PromotionBlocked,
    RollbackFailure,
    RunCancelled,
    TerminalInfrastructureError,
    ValidationError,
    VerificationFailure,
    error_for,
)
from pipewarden.core.hasher import compute_input_hash, content_digest
from pipewarden.core.identity import (
    CredentialBroker,
    CredentialScope,
    LocalCredentialBroker,
    ScopedCredential,
    obtain_credential,
)
from pipewarden.core.policy_evaluator import PolicyRule, evaluate
from pipewarden.core.production_guard import enforce_production_constraints
from pipewarden.core.promotion_gate import PromotionGate
from pipewarden.core.registry import ArtifactRegistry, LocalRegistry
from pipewarden.core.retry_controller import (
    ControlledOutcome,
    ControlledStatus,
    FailureController,
    RetryPolicy,
    TransientClassifier,
    default_transient_classifier,
)
from pipewarden.core.run_ledger import RunLedger
from pipewarden.core.stage_bodies import StageBody, StageSpec, bodies_from_commands
from pipewarden.core.stage_executor import ExecutionRecord, StageExecutor
from pipewarden.core.stage_graph import StageGraph
from pipewarden.core.stage_machine import StageMachine
from pipewarden.core.state_store import ConcurrentModificationError, StateStore
from pipewarden.models.artifacts import Artifact, ScanReport
from pipewarden.models.config import PipelineConfig
from pipewarden.models.policy import WorkflowDefinition
from pipewarden.models.promotion import (
    BUILD_SOURCE,
    ApprovalState,
    BlockReason,
    PromotionRecord,
)
from pipewarden.models.runs import FailureReport, PipelineRun, RunStatus, TriggerKind
from pipewarden.models.stages import (
    RollbackRecord,
    StageAttempt,
    StageKind,
    StageStatus,
    build_stage_definitions,
    stage_key,
)
from pipewarden.workflows import load_workflow, parse_workflow

logger = logging.getLogger(__name__)

WorkflowInput = WorkflowDefinition | Mapping[str, Any] | Path | None

_SCAN_COUNTS = ("critical", "high", "medium", "low")
_HEAD_STAGES = ("validate", "build", "test", "scan")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _RunHalted(Exception):
    """Unwinds the driver once a run has been finalized as failed/cancelled."""

    def __init__(self, run: PipelineRun) -> None:
        super().__init__(run.run_id)
        self.run = run


class PipelineCoordinator:
    """Owns run lifecycles and sequences the stage graph.

    Parameters
    ----------
    pipeline:
        Project configuration: environments, branch rules, stage commands.
    prod_config:
        Runtime configuration. Uses ``ProdConfig()`` if not provided.
    bodies:
        Stage body table. Defaults to bodies built from
        ``pipeline.stage_commands``.
    registry:
        Artifact registry. Defaults to a ``LocalRegistry`` at
        ``prod_config.registry_path``.
    credential_broker:
        Source of short-lived deploy credentials.
    classifier:
        Transient-failure predicate for deploy retries.
    sleep:
        Backoff sleep between deploy attempts.
    clock:
        Returns the current UTC time.
    sink:
        Receives an ``ExecutionRecord`` after every stage body execution.
    ruleset:
        Policy rules checked during validate. Defaults to the built-in rules.
    """

    def __init__(
        self,
        pipeline: PipelineConfig | None = None,
        *,
        prod_config: ProdConfig | None = None,
        bodies: Mapping[str, StageBody] | None = None,
        registry: ArtifactRegistry | None = None,
        credential_broker: CredentialBroker | None = None,
        classifier: TransientClassifier | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = _utc_now,
        sink: Callable[[ExecutionRecord], None] | None = None,
        ruleset: list[PolicyRule] | None = None,
    ) -> None:
        self.pipeline = pipeline or PipelineConfig()
        self._prod_config = prod_config or ProdConfig()
        cfg = self._prod_config

        # Production guard: fails hard if production constraints are violated
        enforce_production_constraints(cfg, self.pipeline)

        self._clock = clock
        self._ruleset = ruleset

        # Core subsystems
        self.ledger = RunLedger(cfg.ledger_path)
        self.store = StateStore(cfg.state_path)
        self.registry = registry or LocalRegistry(
            cfg.registry_path, location=self.pipeline.registry_location
        )
        self.artifacts = ArtifactLedger(
            self.registry,
            self.store,
            short_sha_min_length=cfg.short_sha_min_length,
            clock=clock,
        )
        self.environments = EnvironmentRegistry(
            self.pipeline.environments,
            self.store,
            history_limit=cfg.deployment_history_limit,
            clock=clock,
        )
        self.approvals = ApprovalChannel(
            self.store,
            self.ledger,
            authorized_approvers=cfg.authorized_approvers,
            expiry_seconds=cfg.approval_expiry_seconds,
            clock=clock,
        )
        self.gate = PromotionGate(
            self.artifacts,
            self.environments,
            self.store,
            self.ledger,
            self.approvals,
            short_sha_min_length=cfg.short_sha_min_length,
            clock=clock,
        )
        self.resolver = BranchResolver(self.pipeline.branch_rules)
        self.executor = StageExecutor(
            bodies if bodies is not None else bodies_from_commands(self.pipeline.stage_commands),
            sink=sink,
            clock=clock,
        )
        self.controller = FailureController(
            self.executor,
            RetryPolicy.from_config(cfg),
            classifier=classifier or default_transient_classifier(cfg.transient_error_markers),
            sleep=sleep,
        )
        self.queue = DeploymentQueue(
            expiry_seconds=cfg.queue_expiry_seconds,
            leases=self.store,
            lease_seconds=cfg.environment_lease_seconds,
        )
        self.broker = credential_broker or LocalCredentialBroker(
            ttl_seconds=min(900.0, cfg.max_credential_ttl_seconds), clock=clock
        )

        self._locks_guard = threading.Lock()
        self._run_locks: dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def trigger(
        self,
        repository: str,
        branch: str,
        commit_sha: str,
        trigger: TriggerKind = TriggerKind.PUSH,
        workflow: WorkflowInput = None,
    ) -> PipelineRun:
        """Create a run for a commit and drive it as far as it can go.

        Returns the run when it is terminal or suspended at an approval.

        Raises
        ------
        ValidationError
            Malformed commit SHA, or a branch rule names an unknown
            environment.
        """
        if not repository.strip() or not branch.strip():
            raise ValidationError("repository and branch are required")
        if not is_valid_commit_sha(commit_sha, short_min=self._prod_config.short_sha_min_length):
            raise ValidationError(f"Malformed commit SHA: {commit_sha!r}")

        environments = self.resolver.resolve(branch)
        unknown = [env for env in environments if env not in self.environments]
        if unknown:
            raise ValidationError(f"Branch {branch} resolves to unknown environment(s): {unknown}")

        run = PipelineRun(
            repository=repository,
            branch=branch,
            commit_sha=commit_sha,
            trigger=trigger,
            environments=environments,
            status=RunStatus.RUNNING,
            started_at=self._clock(),
            created_at=self._clock(),
        )
        run = self._machine(run).initialize(run)
        self._save(run)
        self.ledger.record(
            run.run_id,
            "run",
            "run.created",
            details={
                "repository": repository,
                "branch": branch,
                "commit_sha": commit_sha,
                "trigger": trigger.value,
                "environments": environments,
            },
        )
        logger.info(
            "Run %s: %s@%s (%s) -> %s",
            run.run_id,
            branch,
            commit_sha,
            trigger.value,
            environments or "no environments",
        )

        with self._run_lock(run.run_id):
            return self._drive(run, lambda r: self._run_pipeline(r, workflow))

    def resume(self, run_id: str) -> PipelineRun:
        """Continue a run suspended at an approval, if it has been decided.

        An undecided, unexpired request leaves the run suspended.
        """
        with self._run_lock(run_id):
            run = self.status(run_id)
            if not run.is_suspended:
                raise ValidationError(f"Run {run_id} is not waiting for an approval")

            request = self.approvals.status(run.pending_approval_id or "")
            if request.is_open and self._clock() >= request.expires_at:
                self.approvals.expire_due()
                request = self.approvals.status(request.request_id)
            if request.is_open:
                logger.info("Run %s still waiting on %s", run_id, request.request_id)
                return run

            run = run.model_copy(update={"pending_approval_id": None})
            self._save(run)
            self.ledger.record(
                run_id, "run", "run.resumed", details={"approval": request.state.value}
            )
            record = self.gate.resolve_approval(request)
            index = run.environments.index(request.target_env)
            return self._drive(run, lambda r: self._continue_after_gate(r, index, record))

    def decide(
        self, request_id: str, approve: bool, approver: str
    ) -> tuple[str, PipelineRun | None]:
        """Record an approval decision and resume the run if it is now decided.

        Returns the request's resulting state and the run (None while the
        request still needs more approvals).
        """
        request = self.approvals.decide(request_id, approve, approver)
        if request.state == ApprovalState.REQUESTED:
            return request.state.value, None
        run = self.store.load_run(request.run_id)
        if run is None or run.pending_approval_id != request_id:
            return request.state.value, run
        return request.state.value, self.resume(request.run_id)

    def expire_approvals(self) -> list[PipelineRun]:
        """Expire overdue approval requests and finish every run they decided."""
        self.approvals.expire_due()
        resumed: list[PipelineRun] = []
        for run in self.store.list_runs(RunStatus.RUNNING.value):
            if run.pending_approval_id is None:
                continue
            if not self.approvals.status(run.pending_approval_id).is_open:
                resumed.append(self.resume(run.run_id))
        stale = self.queue.expire_stale()
        if stale:
            logger.info("Expired %d queued deployment request(s)", len(stale))
        return resumed

    def promote(self, run_id: str, to_env: str, *, requested_by: str | None = None) -> PipelineRun:
        """Promote the artifact of *run_id* into *to_env* without rebuilding.

        Creates a new manual run whose head stages are skipped and which
        deploys and verifies only *to_env*.
        """
        parent = self.status(run_id)
        if parent.artifact_tag is None:
            raise ValidationError(f"Run {run_id} produced no artifact to promote")
        if to_env not in self.environments:
            raise ValidationError(f"Unknown environment: {to_env!r}")
        artifact = self.artifacts.require(parent.artifact_tag)
        source = self._promotion_source(artifact, parent, to_env)

        run = PipelineRun(
            repository=parent.repository,
            branch=parent.branch,
            commit_sha=parent.commit_sha,
            trigger=TriggerKind.MANUAL,
            environments=[to_env],
            status=RunStatus.RUNNING,
            started_at=self._clock(),
            created_at=self._clock(),
            artifact_tag=artifact.tag,
            parent_run_id=parent.run_id,
            promotion_source=source,
        )
        machine = self._machine(run)
        run = machine.initialize(run)
        for stage_id in _HEAD_STAGES:
            run = machine.skip(run, stage_id, f"artifact {artifact.tag} reused from {parent.run_id}")
        self._save(run)
        self.ledger.record(
            run.run_id,
            "run",
            "run.created",
            details={
                "parent_run_id": parent.run_id,
                "promotion": f"{source} -> {to_env}",
                "requested_by": requested_by,
            },
            artifact_references=[artifact.reference],
        )
        with self._run_lock(run.run_id):
            return self._drive(run, lambda r: self._advance(r, 0))

    def rollback(self, environment: str, *, requested_by: str | None = None) -> RollbackRecord:
        """Operator rollback: restore the verified artifact before the current one.

        Raises
        ------
        RollbackFailure
            No earlier verified artifact exists, or its redeploy/verify failed.
        """
        if environment not in self.environments:
            raise ValidationError(f"Unknown environment: {environment!r}")
        current = self.environments.state(environment).current
        ts = self._clock().strftime("%Y%m%d-%H%M%S")
        operation_id = f"rb-{ts}-{uuid.uuid4().hex[:6]}"
        self.ledger.record(
            operation_id,
            "run",
            "rollback.requested",
            details={"environment": environment, "requested_by": requested_by},
        )
        commit = current.tag if current else ""
        # Queued FIFO: an operator rollback never supersedes waiting deploys
        with self.queue.slot(environment, run_id=operation_id, commit_sha=commit, production=True):
            credential = self._credential(operation_id, environment)
            record = self.gate.rollback(
                environment,
                run_id=operation_id,
                failed_tag=current.tag if current else "",
                redeploy=self._redeployer(
                    run_id=operation_id,
                    environment=environment,
                    repository=self.pipeline.project_name,
                    branch="",
                    commit_sha=commit,
                    credential=credential,
                ),
                restore_previous=True,
            )
        if not record.succeeded:
            raise RollbackFailure(
                f"Rollback of {environment} failed: {record.error}",
                detail_ref=f"ledger:{operation_id}:rollback:{environment}",
            )
        return record

    def cancel(self, run_id: str) -> PipelineRun:
        """Cancel a pending, suspended or queued run.

        A suspended run's open approval request is withdrawn with it.  A run
        whose deploy or verify is executing cannot be cancelled.
        """
        if self.queue.cancel_run(run_id):
            logger.info("Run %s: queued deployment cancelled", run_id)
            return self.status(run_id)
        with self._run_lock(run_id):
            run = self.status(run_id)
            if run.status != RunStatus.PENDING and not run.is_suspended:
                raise ValidationError(
                    f"Run {run_id} is {run.status.value}; only pending, suspended "
                    "or queued runs can be cancelled"
                )
            if run.pending_approval_id:
                self.approvals.withdraw(
                    run.pending_approval_id, reason=f"run {run_id} cancelled by operator"
                )
            stage_id = self._next_pending_stage(run) or "run"
            return self._finish_failed(
                run, stage_id, RunCancelled(f"Run {run_id} cancelled by operator")
            )

    def status(self, run_id: str) -> PipelineRun:
        run = self.store.load_run(run_id)
        if run is None:
            raise ValidationError(f"Unknown run: {run_id!r}")
        return run

    def list_runs(self) -> list[PipelineRun]:
        return self.store.list_runs()

    def archive_artifacts(self) -> list[str]:
        """Archive artifacts past retention that no environment is running."""
        return self.artifacts.archive_expired(
            timedelta(days=self._prod_config.artifact_retention_days),
            keep=self.environments.deployed_tags(),
        )

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _drive(
        self, run: PipelineRun, step: Callable[[PipelineRun], PipelineRun]
    ) -> PipelineRun:
        try:
            return step(run)
        except _RunHalted as halted:
            return halted.run

    def _run_pipeline(self, run: PipelineRun, workflow: WorkflowInput) -> PipelineRun:
        run = self._run_validate(run, workflow)
        run = self._run_build(run)
        run = self._run_test_and_scan(run)
        return self._advance(run, 0)

    def _advance(self, run: PipelineRun, start: int) -> PipelineRun:
        """Promote, deploy and verify each environment from index *start* on."""
        for index in range(start, len(run.environments)):
            env = run.environments[index]
            source = self._source_env(run, index)
            definition = self.environments.definition(env)
            record = self.gate.check_eligibility(
                run.artifact_tag,
                source,
                env,
                run_id=run.run_id,
                defer_soak=definition.protection.requires_approval,
            )
            if record.block_reason == BlockReason.AWAITING_APPROVAL:
                return self._suspend(run, record)
            run = self._continue_after_gate(run, index, record, advance=False)
        return self._finish_succeeded(run)

    def _continue_after_gate(
        self, run: PipelineRun, index: int, record: PromotionRecord, *, advance: bool = True
    ) -> PipelineRun:
        env = run.environments[index]
        deploy_id = stage_key(StageKind.DEPLOY, env)
        if not record.allowed:
            reason = record.block_reason.value if record.block_reason else "blocked"
            raise _RunHalted(
                self._finish_failed(
                    run,
                    deploy_id,
                    PromotionBlocked(
                        reason,
                        f"Promotion of {record.tag} to {env} {record.decision.value}: "
                        f"{record.detail or reason}",
                        detail_ref=f"promotion:{record.record_id}",
                    ),
                    block_reason=reason,
                )
            )
        run = self._deploy_and_verify(run, env)
        if advance:
            return self._advance(run, index + 1)
        return run

    def _suspend(self, run: PipelineRun, record: PromotionRecord) -> PipelineRun:
        request = self.gate.request_approval(record)
        run = run.model_copy(update={"pending_approval_id": request.request_id})
        self._save(run)
        self.ledger.record(
            run.run_id,
            "run",
            "run.suspended",
            details={"approval_id": request.request_id, "target_env": record.target_env},
        )
        logger.info(
            "Run %s suspended: promotion of %s to %s awaits approval %s",
            run.run_id,
            record.tag,
            record.target_env,
            request.request_id,
        )
        return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_validate(self, run: PipelineRun, workflow: WorkflowInput) -> PipelineRun:
        machine = self._machine(run)
        run = self._transition(machine, run, "validate", StageStatus.RUNNING)

        try:
            definition = self._load_workflow(workflow)
        except ValidationError as exc:
            raise _RunHalted(self._stage_failed(machine, run, "validate", exc)) from exc

        if definition is not None:
            result = evaluate(definition, self._ruleset)
            self.ledger.record(
                run.run_id,
                "validate",
                "policy.evaluated",
                details={
                    "allowed": result.allowed,
                    "violations": [v.model_dump(mode="json") for v in result.violations],
                },
            )
            if not result.allowed:
                error = PolicyViolation([(v.rule, v.message) for v in result.denials])
                raise _RunHalted(self._stage_failed(machine, run, "validate", error))

        if self.executor.has_body(StageKind.VALIDATE):
            outcome = self._execute(run, "validate")
            if outcome.status != ControlledStatus.SUCCEEDED:
                raise _RunHalted(self._controlled_failure(machine, run, "validate", outcome))
            run = self._transition(
                machine, run, "validate", StageStatus.SUCCESS, attempts=outcome.attempts
            )
        else:
            run = self._transition(machine, run, "validate", StageStatus.SUCCESS)
        return run

    def _run_build(self, run: PipelineRun) -> PipelineRun:
        machine = self._machine(run)
        run = self._transition(machine, run, "build", StageStatus.RUNNING)
        outcome = self._execute(run, "build")
        if outcome.status != ControlledStatus.SUCCEEDED:
            raise _RunHalted(self._controlled_failure(machine, run, "build", outcome))

        outputs = outcome.last.outputs
        try:
            digest = self._artifact_digest(outputs)
            artifact = self.artifacts.publish(
                outputs.get("tag") or run.commit_sha,
                digest,
                {
                    "source_commit": run.commit_sha,
                    "repository_url": run.repository,
                    "build_timestamp": self._clock().isoformat(),
                    "run_id": run.run_id,
                    "branch": run.branch,
                },
                name=self.pipeline.artifact_name,
            )
        except PipewardenError as exc:
            run = machine.update_record(run, "build", attempts=outcome.attempts)
            raise _RunHalted(self._stage_failed(machine, run, "build", exc)) from exc

        run = run.model_copy(update={"artifact_tag": artifact.tag})
        return self._transition(
            machine,
            run,
            "build",
            StageStatus.SUCCESS,
            attempts=outcome.attempts,
            artifact_references=[artifact.reference],
        )

    def _run_test_and_scan(self, run: PipelineRun) -> PipelineRun:
        machine = self._machine(run)
        run = self._transition(machine, run, "test", StageStatus.RUNNING)
        run = self._transition(machine, run, "scan", StageStatus.RUNNING)
        artifact = self.artifacts.require(run.artifact_tag or "")

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=run.run_id) as pool:
            futures = {
                stage_id: pool.submit(self._execute, run, stage_id, artifact=artifact)
                for stage_id in ("test", "scan")
            }
            outcomes = {stage_id: future.result() for stage_id, future in futures.items()}

        failure: tuple[str, PipewardenError] | None = None
        scan = outcomes["scan"]
        if scan.status == ControlledStatus.SUCCEEDED:
            try:
                self._record_scan(artifact, scan.last.outputs)
            except PipewardenError as exc:
                failure = ("scan", exc)

        for stage_id in ("test", "scan"):
            outcome = outcomes[stage_id]
            if outcome.status != ControlledStatus.SUCCEEDED:
                error = error_for(
                    outcome.classification or FailureClass.STAGE_FAILURE,
                    f"{stage_id} {outcome.stage_status.value}: {outcome.message}",
                    detail_ref=outcome.last.detail_ref,
                )
                run = self._transition(
                    machine,
                    run,
                    stage_id,
                    outcome.stage_status,
                    attempts=outcome.attempts,
                    classification=error.classification.value,
                    error=error.message,
                )
                failure = failure or (stage_id, error)
            elif failure is not None and failure[0] == stage_id:
                run = self._transition(
                    machine,
                    run,
                    stage_id,
                    StageStatus.FAILED,
                    attempts=outcome.attempts,
                    classification=failure[1].classification.value,
                    error=failure[1].message,
                )
            else:
                run = self._transition(
                    machine, run, stage_id, StageStatus.SUCCESS, attempts=outcome.attempts
                )

        if failure is not None:
            raise _RunHalted(self._finish_failed(run, failure[0], failure[1]))
        return run

    def _deploy_and_verify(self, run: PipelineRun, env: str) -> PipelineRun:
        definition = self.environments.definition(env)
        deploy_id = stage_key(StageKind.DEPLOY, env)
        verify_id = stage_key(StageKind.VERIFY, env)
        artifact = self.artifacts.require(run.artifact_tag or "")
        machine = self._machine(run)

        if definition.protection.requires_approval:
            self._require_approved(run, env)

        with ExitStack() as stack:
            try:
                stack.enter_context(
                    self.queue.slot(
                        env,
                        run_id=run.run_id,
                        commit_sha=run.commit_sha,
                        production=definition.protection.requires_approval,
                    )
                )
            except RunCancelled as exc:
                raise _RunHalted(self._finish_failed(run, deploy_id, exc)) from exc

            # The pointer is read under the slot; commit_verified CASes against it
            expected_version = self.environments.state(env).version

            # Deploy
            run = self._transition(machine, run, deploy_id, StageStatus.RUNNING)
            try:
                credential = self._credential(run.run_id, env)
            except PipewardenError as exc:
                raise _RunHalted(self._stage_failed(machine, run, deploy_id, exc)) from exc
            deployed_at = self._clock()
            outcome = self._execute(run, deploy_id, artifact=artifact, credential=credential)
            if outcome.status != ControlledStatus.SUCCEEDED:
                raise _RunHalted(self._controlled_failure(machine, run, deploy_id, outcome))
            run = self._transition(
                machine,
                run,
                deploy_id,
                StageStatus.SUCCESS,
                attempts=outcome.attempts,
                artifact_references=[artifact.reference],
            )

            # Verify
            run = self._transition(machine, run, verify_id, StageStatus.RUNNING)
            outcome = self._execute(run, verify_id, artifact=artifact, credential=credential)
            if outcome.status == ControlledStatus.SUCCEEDED:
                try:
                    self.environments.commit_verified(
                        env,
                        tag=artifact.tag,
                        digest=artifact.digest,
                        run_id=run.run_id,
                        deployed_at=deployed_at,
                        expected_version=expected_version,
                    )
                except ConcurrentModificationError as exc:
                    error = TerminalInfrastructureError(
                        f"{env} pointer not updated to {artifact.tag}: {exc}",
                        detail_ref=f"ledger:{run.run_id}:{verify_id}",
                    )
                    raise _RunHalted(
                        self._stage_failed(machine, run, verify_id, error)
                    ) from exc
                self.artifacts.mark_deployed(artifact.tag, env)
                return self._transition(
                    machine,
                    run,
                    verify_id,
                    StageStatus.SUCCESS,
                    attempts=outcome.attempts,
                    artifact_references=[artifact.reference],
                )
            raise _RunHalted(
                self._verify_failed(machine, run, env, artifact, outcome, credential)
            )

    def _verify_failed(
        self,
        machine: StageMachine,
        run: PipelineRun,
        env: str,
        artifact: Artifact,
        outcome: ControlledOutcome,
        credential: ScopedCredential,
    ) -> PipelineRun:
        verify_id = stage_key(StageKind.VERIFY, env)
        logger.warning("Verify of %s in %s failed; rolling back", artifact.tag, env)
        rollback = self.gate.rollback(
            env,
            run_id=run.run_id,
            failed_tag=artifact.tag,
            redeploy=self._redeployer(
                run_id=run.run_id,
                environment=env,
                repository=run.repository,
                branch=run.branch,
                commit_sha=run.commit_sha,
                credential=credential,
            ),
        )
        detail_ref = f"ledger:{run.run_id}:rollback:{env}"
        if rollback.succeeded:
            error: PipewardenError = VerificationFailure(
                f"Verify of {artifact.tag} in {env} failed ({outcome.message}); "
                f"rolled back to {rollback.target_tag}",
                detail_ref=detail_ref,
            )
            status = StageStatus.ROLLED_BACK
        else:
            error = RollbackFailure(
                f"Verify of {artifact.tag} in {env} failed ({outcome.message}) and "
                f"rollback failed: {rollback.error}; {env} is degraded",
                detail_ref=detail_ref,
            )
            status = StageStatus.FAILED
        run = self._transition(
            machine,
            run,
            verify_id,
            status,
            attempts=outcome.attempts,
            classification=error.classification.value,
            error=error.message,
            detail_ref=detail_ref,
            rollback=rollback,
        )
        return self._finish_failed(run, verify_id, error)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _machine(self, run: PipelineRun) -> StageMachine:
        return StageMachine(
            self.ledger, StageGraph(build_stage_definitions(run.environments)), clock=self._clock
        )

    @contextmanager
    def _run_lock(self, run_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._run_locks.setdefault(run_id, threading.Lock())
        with lock:
            yield

    def _save(self, run: PipelineRun) -> None:
        self.store.save_run(run)

    def _transition(
        self, machine: StageMachine, run: PipelineRun, stage_id: str, target: StageStatus, **kwargs
    ) -> PipelineRun:
        run = machine.transition(run, stage_id, target, **kwargs)
        self._save(run)
        return run

    def _spec(
        self,
        run: PipelineRun,
        stage_id: str,
        *,
        artifact: Artifact | None = None,
        credential: ScopedCredential | None = None,
    ) -> StageSpec:
        record = run.stages[stage_id]
        return StageSpec(
            run_id=run.run_id,
            stage_id=stage_id,
            kind=record.kind,
            environment=record.environment,
            repository=run.repository,
            branch=run.branch,
            commit_sha=run.commit_sha,
            artifact_tag=artifact.tag if artifact else None,
            artifact_digest=artifact.digest if artifact else None,
            credential=credential,
        )

    def _execute(
        self,
        run: PipelineRun,
        stage_id: str,
        *,
        artifact: Artifact | None = None,
        credential: ScopedCredential | None = None,
    ) -> ControlledOutcome:
        spec = self._spec(run, stage_id, artifact=artifact, credential=credential)
        input_hash = compute_input_hash(
            stage_id,
            spec.model_dump(mode="json", exclude={"attempt", "timeout_seconds"}),
        )

        def on_attempt(attempt: StageAttempt) -> None:
            self.ledger.record(
                run.run_id,
                stage_id,
                "attempt.finished",
                details={"input_hash": input_hash, **attempt.model_dump(mode="json")},
            )

        return self.controller.run(
            spec, self._prod_config.timeout_for(spec.kind.value), on_attempt=on_attempt
        )

    def _controlled_failure(
        self, machine: StageMachine, run: PipelineRun, stage_id: str, outcome: ControlledOutcome
    ) -> PipelineRun:
        error = error_for(
            outcome.classification or FailureClass.STAGE_FAILURE,
            f"{stage_id} {outcome.stage_status.value}: {outcome.message}",
            detail_ref=outcome.last.detail_ref,
        )
        run = self._transition(
            machine,
            run,
            stage_id,
            outcome.stage_status,
            attempts=outcome.attempts,
            classification=error.classification.value,
            error=error.message,
            detail_ref=error.detail_ref,
        )
        return self._finish_failed(run, stage_id, error)

    def _stage_failed(
        self, machine: StageMachine, run: PipelineRun, stage_id: str, error: PipewardenError
    ) -> PipelineRun:
        run = self._transition(
            machine,
            run,
            stage_id,
            StageStatus.FAILED,
            classification=error.classification.value,
            error=error.message,
            detail_ref=error.detail_ref,
        )
        return self._finish_failed(run, stage_id, error)

    def _finish_failed(
        self,
        run: PipelineRun,
        stage_id: str,
        error: PipewardenError,
        *,
        block_reason: str | None = None,
    ) -> PipelineRun:
        machine = self._machine(run)
        for pending in [sid for sid, rec in run.stages.items() if rec.status == StageStatus.PENDING]:
            run = machine.skip(run, pending, f"run ended: {error.classification.value}")

        cancelled = isinstance(error, RunCancelled)
        report = FailureReport(
            stage_id=stage_id,
            classification=error.classification.value,
            message=error.message,
            commit_sha=run.commit_sha,
            artifact_tag=run.artifact_tag,
            detail_ref=error.detail_ref or f"ledger:{run.run_id}:{stage_id}",
            block_reason=block_reason,
        )
        run = run.model_copy(
            update={
                "status": RunStatus.CANCELLED if cancelled else RunStatus.FAILED,
                "ended_at": self._clock(),
                "failure": report,
                "pending_approval_id": None,
            }
        )
        self._save(run)
        self.ledger.record(
            run.run_id,
            "run",
            "run.cancelled" if cancelled else "run.failed",
            details=report.model_dump(mode="json"),
        )
        logger.error(
            "Run %s %s at %s [%s]: %s",
            run.run_id,
            run.status.value,
            stage_id,
            report.classification,
            report.message,
        )
        return run

    def _finish_succeeded(self, run: PipelineRun) -> PipelineRun:
        run = run.model_copy(update={"status": RunStatus.SUCCEEDED, "ended_at": self._clock()})
        self._save(run)
        self.ledger.record(
            run.run_id,
            "run",
            "run.succeeded",
            artifact_references=[run.artifact_tag] if run.artifact_tag else [],
        )
        logger.info("Run %s succeeded", run.run_id)
        return run

    def _load_workflow(self, workflow: WorkflowInput) -> WorkflowDefinition | None:
        if workflow is None:
            workflow = self.pipeline.workflow_path
        if workflow is None or isinstance(workflow, WorkflowDefinition):
            return workflow
        if isinstance(workflow, Path):
            return load_workflow(workflow)
        return parse_workflow(dict(workflow))

    @staticmethod
    def _artifact_digest(outputs: Mapping[str, str]) -> str:
        if outputs.get("digest"):
            return outputs["digest"]
        if outputs.get("artifact_path"):
            path = Path(outputs["artifact_path"])
            try:
                return content_digest(path.read_bytes())
            except OSError as exc:
                raise ValidationError(f"Cannot read build artifact {path}: {exc}") from exc
        raise ValidationError("Build reported neither 'digest' nor 'artifact_path'")

    def _record_scan(self, artifact: Artifact, outputs: Mapping[str, str]) -> None:
        if not any(key in outputs for key in _SCAN_COUNTS):
            logger.warning("Scan of %s reported no finding counts", artifact.tag)
            return
        try:
            counts = {key: int(outputs.get(key, "0") or 0) for key in _SCAN_COUNTS}
        except ValueError as exc:
            raise ValidationError(f"Scan reported a non-integer finding count: {exc}") from exc
        self.artifacts.record_scan(
            ScanReport(
                tag=artifact.tag,
                digest=artifact.digest,
                scanner=outputs.get("scanner", "external"),
                scanned_at=self._clock(),
                **counts,
            )
        )

    def _credential(self, run_id: str, env: str) -> ScopedCredential:
        return obtain_credential(
            self.broker,
            CredentialScope(run_id=run_id, environment=env),
            max_ttl_seconds=self._prod_config.max_credential_ttl_seconds,
            clock=self._clock,
        )

    def _redeployer(
        self,
        *,
        run_id: str,
        environment: str,
        repository: str,
        branch: str,
        commit_sha: str,
        credential: ScopedCredential,
    ) -> Callable[[str, str], tuple[StageStatus, StageStatus | None, str | None]]:
        """Build the callback the promotion gate uses to redeploy and re-verify."""

        def redeploy(tag: str, digest: str) -> tuple[StageStatus, StageStatus | None, str | None]:
            results: list[ControlledOutcome] = []
            for kind in (StageKind.DEPLOY, StageKind.VERIFY):
                spec = StageSpec(
                    run_id=run_id,
                    stage_id=f"rollback:{kind.value}:{environment}",
                    kind=kind,
                    environment=environment,
                    repository=repository,
                    branch=branch,
                    commit_sha=commit_sha,
                    artifact_tag=tag,
                    artifact_digest=digest,
                    parameters={"rollback": "true"},
                    credential=credential,
                )
                outcome = self.controller.run(spec, self._prod_config.timeout_for(kind.value))
                results.append(outcome)
                if outcome.status != ControlledStatus.SUCCEEDED:
                    break
            deploy = results[0].stage_status
            verify = results[1].stage_status if len(results) > 1 else None
            error = next((r.message for r in results if r.message), None)
            return deploy, verify, error

        return redeploy

    def _require_approved(self, run: PipelineRun, env: str) -> None:
        approved = [
            request
            for request in self.store.list_approvals(ApprovalState.APPROVED)
            if request.run_id == run.run_id and request.target_env == env
        ]
        if not approved:
            raise _RunHalted(
                self._finish_failed(
                    run,
                    stage_key(StageKind.DEPLOY, env),
                    PromotionBlocked(
                        BlockReason.AWAITING_APPROVAL.value,
                        f"Deploy to {env} requires an approved approval request",
                    ),
                    block_reason=BlockReason.AWAITING_APPROVAL.value,
                )
            )

    def _source_env(self, run: PipelineRun, index: int) -> str:
        if index > 0:
            return run.environments[index - 1]
        return run.promotion_source or BUILD_SOURCE

    def _promotion_source(self, artifact: Artifact, parent: PipelineRun, to_env: str) -> str:
        definition = self.environments.definition(to_env)
        for predecessor in definition.predecessors:
            current = self.environments.state(predecessor).current
            if current is not None and current.tag == artifact.tag:
                return predecessor
        if to_env in parent.environments:
            index = parent.environments.index(to_env)
            if index > 0:
                return parent.environments[index - 1]
        if definition.predecessors:
            return definition.predecessors[0]
        return BUILD_SOURCE

    @staticmethod
    def _next_pending_stage(run: PipelineRun) -> str | None:
        return next(
            (sid for sid, rec in run.stages.items() if rec.status == StageStatus.PENDING), None
        )
