"""Promotion gate — may this artifact enter that environment?

Eligibility is checked in a fixed order and the first failed check names
the block reason:

1. the artifact is published under an immutable tag
2. its metadata is complete and traceable
3. it was verified in the source environment, tag *and* digest
4. for environments with soak/scan requirements: soak time elapsed and
   the latest scan has no critical findings
5. the environment's deployment window is open

Every decision is appended to the promotion log (state store) and the run
ledger; records are never updated.  Protected environments additionally
need an approved ``ApprovalRequest`` before a promotion is ``allowed``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from pipewarden.core.approvals import ApprovalChannel
from pipewarden.core.artifact_ledger import ArtifactLedger, is_immutable_tag
from pipewarden.core.environments import EnvironmentRegistry
from pipewarden.core.errors import MissingMetadataError
from pipewarden.core.run_ledger import RunLedger
from pipewarden.core.state_store import StateStore
from pipewarden.models.artifacts import Artifact, ArtifactState
from pipewarden.models.environments import EnvironmentDefinition
from pipewarden.models.promotion import (
    BUILD_SOURCE,
    ApprovalRequest,
    ApprovalState,
    BlockReason,
    PromotionDecision,
    PromotionRecord,
)
from pipewarden.models.stages import RollbackRecord, StageStatus

logger = logging.getLogger(__name__)

# Redeploys (tag, digest) and verifies it; returns (deploy, verify, error).
Redeploy = Callable[[str, str], tuple[StageStatus, StageStatus | None, str | None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PromotionGate:
    """Eligibility checks, approval hand-off and rollback.

    Parameters
    ----------
    artifacts:
        Source of artifact state, metadata and scan results.
    environments:
        Environment definitions and deploy pointers.
    store:
        Destination of the append-only promotion log.
    ledger:
        Run ledger; every decision is recorded against its run.
    approvals:
        Approval channel for protected environments.
    short_sha_min_length:
        Passed through to the immutable-tag check.
    clock:
        Returns the current UTC time.
    """

    def __init__(
        self,
        artifacts: ArtifactLedger,
        environments: EnvironmentRegistry,
        store: StateStore,
        ledger: RunLedger,
        approvals: ApprovalChannel,
        *,
        short_sha_min_length: int = 6,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.artifacts = artifacts
        self.environments = environments
        self.approvals = approvals
        self._store = store
        self._ledger = ledger
        self._short_min = short_sha_min_length
        self._clock = clock

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    def check_eligibility(
        self,
        artifact: Artifact | str | None,
        from_env: str,
        to_env: str,
        *,
        run_id: str,
        defer_soak: bool = False,
        approver: str | None = None,
    ) -> PromotionRecord:
        """Decide whether *artifact* may move from *from_env* into *to_env*.

        With *defer_soak* the soak-time check is skipped; it is re-checked
        when the approval is resolved.  *approver* marks the approval
        requirement of a protected target as satisfied.

        Returns the appended ``PromotionRecord``: ``allowed``, or ``blocked``
        with the reason of the first failed check.  A protected target that
        passes every check without an *approver* is ``blocked`` with reason
        ``awaiting_approval``.
        """
        if isinstance(artifact, str):
            tag = artifact
            artifact = self.artifacts.get(tag)
        else:
            tag = artifact.tag if artifact is not None else ""
        definition = self.environments.definition(to_env)
        requested_at = self._clock()

        reason, detail = self._first_failure(artifact, tag, from_env, definition, defer_soak)
        if reason is None and definition.protection.requires_approval and approver is None:
            reason = BlockReason.AWAITING_APPROVAL
            detail = f"{to_env} requires {definition.protection.required_approvals} approval(s)"

        record = PromotionRecord(
            run_id=run_id,
            tag=tag,
            digest=artifact.digest if artifact is not None else "",
            source_env=from_env,
            target_env=to_env,
            decision=PromotionDecision.ALLOWED if reason is None else PromotionDecision.BLOCKED,
            block_reason=reason,
            approver=approver,
            detail=detail,
            requested_at=requested_at,
            decided_at=self._clock(),
        )
        return self._append(record)

    def _first_failure(
        self,
        artifact: Artifact | None,
        tag: str,
        from_env: str,
        target: EnvironmentDefinition,
        defer_soak: bool,
    ) -> tuple[BlockReason | None, str]:
        # (a) published and immutable
        if artifact is None or artifact.state != ArtifactState.PUBLISHED:
            return BlockReason.ARTIFACT_NOT_PUBLISHED, f"{tag or '<none>'} is not published"
        if not is_immutable_tag(artifact.tag, short_min=self._short_min):
            return BlockReason.MUTABLE_TAG, f"{artifact.tag} is not an immutable tag"

        # (b) traceable metadata
        try:
            self.artifacts.validate_metadata(artifact)
        except MissingMetadataError as exc:
            return BlockReason.METADATA_INCOMPLETE, exc.message

        # (c) verified in the source environment, exactly this artifact
        source_deployed_at: datetime | None = None
        if from_env == BUILD_SOURCE:
            if target.predecessors:
                return (
                    BlockReason.PREDECESSOR_NOT_VERIFIED,
                    f"{target.name} only accepts promotions from {', '.join(target.predecessors)}",
                )
        else:
            if target.predecessors and from_env not in target.predecessors:
                return (
                    BlockReason.PREDECESSOR_NOT_VERIFIED,
                    f"{target.name} does not accept promotions from {from_env}",
                )
            current = self.environments.state(from_env).current
            if current is None or current.tag != artifact.tag:
                return (
                    BlockReason.PREDECESSOR_NOT_VERIFIED,
                    f"{artifact.tag} is not the verified artifact in {from_env}",
                )
            if current.digest != artifact.digest:
                return (
                    BlockReason.ARTIFACT_MISMATCH,
                    f"{from_env} verified {current.digest}, artifact is {artifact.digest}",
                )
            source_deployed_at = current.deployed_at

        # (d) soak time and scan
        if target.soak_seconds > 0 and not defer_soak and source_deployed_at is not None:
            elapsed = (self._clock() - source_deployed_at).total_seconds()
            if elapsed < target.soak_seconds:
                return (
                    BlockReason.SOAK_TIME_NOT_ELAPSED,
                    f"{elapsed:.0f}s of {target.soak_seconds:.0f}s soak elapsed in {from_env}",
                )
        if target.require_clean_scan:
            scan = self.artifacts.latest_scan(artifact.tag)
            if scan is None or scan.digest != artifact.digest:
                return BlockReason.SCAN_MISSING, f"no scan result for {artifact.reference}"
            if not scan.is_clean:
                return (
                    BlockReason.CRITICAL_VULNERABILITY,
                    f"latest scan of {artifact.tag} has {scan.critical} critical finding(s)",
                )

        # (e) deployment window
        window = target.protection.deployment_window
        if window is not None and not window.allows(self._clock()):
            return (
                BlockReason.OUTSIDE_DEPLOYMENT_WINDOW,
                f"{target.name} deployments are closed at this time",
            )
        return None, ""

    # ------------------------------------------------------------------
    # Approval hand-off
    # ------------------------------------------------------------------

    def request_approval(self, record: PromotionRecord) -> ApprovalRequest:
        """Open an approval request for a record blocked on ``awaiting_approval``."""
        if record.block_reason != BlockReason.AWAITING_APPROVAL:
            raise ValueError(f"Promotion {record.record_id} is not awaiting approval")
        definition = self.environments.definition(record.target_env)
        return self.approvals.request_approval(
            record, required_approvals=definition.protection.required_approvals
        )

    def resolve_approval(self, request: ApprovalRequest) -> PromotionRecord:
        """Turn a decided approval request into a final promotion record.

        Approved requests re-run every eligibility check (soak included)
        before the promotion is allowed.
        """
        if request.state == ApprovalState.APPROVED:
            return self.check_eligibility(
                request.tag,
                request.source_env,
                request.target_env,
                run_id=request.run_id,
                approver=request.decided_by or ",".join(request.approvals),
            )
        if request.state in (ApprovalState.REJECTED, ApprovalState.EXPIRED):
            artifact = self.artifacts.get(request.tag)
            rejected = request.state == ApprovalState.REJECTED
            record = PromotionRecord(
                run_id=request.run_id,
                tag=request.tag,
                digest=artifact.digest if artifact is not None else "",
                source_env=request.source_env,
                target_env=request.target_env,
                decision=PromotionDecision.REJECTED,
                block_reason=(
                    BlockReason.APPROVAL_REJECTED if rejected else BlockReason.APPROVAL_EXPIRED
                ),
                approver=request.decided_by,
                detail=f"approval {request.request_id} {request.state.value}",
                requested_at=request.created_at,
                decided_at=request.decided_at or self._clock(),
            )
            return self._append(record)
        raise ValueError(f"Approval {request.request_id} is still open")

    def _append(self, record: PromotionRecord) -> PromotionRecord:
        self._store.append_promotion_record(record)
        self._ledger.record(
            record.run_id,
            f"promotion:{record.target_env}",
            f"promotion.{record.decision.value}",
            details={
                "record_id": record.record_id,
                "source_env": record.source_env,
                "block_reason": record.block_reason.value if record.block_reason else None,
                "approver": record.approver,
                "detail": record.detail,
            },
            artifact_references=[f"{record.tag}@{record.digest}"] if record.tag else [],
        )
        log = logger.info if record.allowed else logger.warning
        log(
            "Promotion %s %s -> %s: %s%s",
            record.tag,
            record.source_env,
            record.target_env,
            record.decision.value,
            f" ({record.block_reason.value})" if record.block_reason else "",
        )
        return record

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(
        self,
        environment: str,
        *,
        run_id: str,
        failed_tag: str,
        redeploy: Redeploy,
        restore_previous: bool = False,
    ) -> RollbackRecord:
        """Restore a verified artifact in *environment*.

        After a failed verify the pointer still names the last verified
        artifact, which is the target.  With *restore_previous* (operator
        rollback of a healthy deployment) the target is the verified
        artifact before the current one.

        The caller must hold the environment's deployment slot.

        Returns the ``RollbackRecord``.  ``succeeded`` is False when there
        was nothing to roll back to or the redeploy or its verify failed;
        the environment is then marked degraded (unless it was healthy and
        simply had no earlier artifact).
        """
        state = self.environments.state(environment)
        target = (
            self.environments.previous_verified(environment)
            if restore_previous
            else state.current
        )
        subject = f"rollback:{environment}"
        if target is None:
            error = f"no previously verified artifact in {environment}"
            self._ledger.record(run_id, subject, "rollback.no_target", details={"failed_tag": failed_tag})
            if not restore_previous:
                self.environments.mark_degraded(
                    environment, error, expected_version=state.version
                )
            return RollbackRecord(environment=environment, failed_tag=failed_tag, error=error)

        self._ledger.record(
            run_id,
            subject,
            "rollback.started",
            details={"failed_tag": failed_tag, "target_tag": target.tag},
            artifact_references=[f"{target.tag}@{target.digest}"],
        )
        deployed_at = self._clock()
        deploy_status, verify_status, error = redeploy(target.tag, target.digest)
        succeeded = deploy_status == StageStatus.SUCCESS and verify_status == StageStatus.SUCCESS
        record = RollbackRecord(
            environment=environment,
            failed_tag=failed_tag,
            target_tag=target.tag,
            deploy_status=deploy_status,
            verify_status=verify_status,
            succeeded=succeeded,
            error=error,
        )

        if succeeded:
            self.environments.record_rollback(
                environment,
                target_tag=target.tag,
                target_digest=target.digest,
                failed_tag=failed_tag,
                run_id=run_id,
                deployed_at=deployed_at,
                expected_version=state.version,
            )
            self._ledger.record(run_id, subject, "rollback.succeeded", details=record.model_dump(mode="json"))
            logger.warning("Rolled %s back from %s to %s", environment, failed_tag, target.tag)
            return record

        self.environments.mark_degraded(
            environment,
            f"rollback to {target.tag} failed: {error}",
            expected_version=state.version,
        )
        self._ledger.record(run_id, subject, "rollback.failed", details=record.model_dump(mode="json"))
        logger.error("Rollback of %s to %s failed: %s", environment, target.tag, error)
        return record
