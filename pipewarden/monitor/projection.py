"""MonitorProjection — pure read-only view over the RunLedger.

The run monitor is a PROJECTION of the Run Ledger.  It does not compute
truth; it displays it.  Every call re-reads from the ledger and replays
the stage transitions, promotion decisions and approval signals recorded
for the run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from pipewarden.core.run_ledger import LedgerIntegrityError, RunLedger
from pipewarden.models.ledger import LedgerEntry
from pipewarden.models.stages import StageStatus, build_stage_definitions


class StageView(BaseModel):
    """Point-in-time status of a single stage, derived from ledger entries."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    display_name: str
    status: StageStatus = StageStatus.PENDING
    entered_at: datetime | None = None
    attempts: int = 0
    classification: str | None = None
    error: str | None = None
    rolled_back_to: str | None = None
    artifact_refs: list[str] = []


class PromotionView(BaseModel):
    model_config = ConfigDict(frozen=True)

    target_env: str
    source_env: str
    decision: str
    block_reason: str | None = None
    approver: str | None = None
    decided_at: datetime


class MonitorSnapshot(BaseModel):
    """A frozen, point-in-time snapshot of a pipeline run.

    Every field is derived by re-reading the ledger.  This model is
    never persisted; it is computed fresh on every ``snapshot()`` call.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str
    branch: str | None = None
    commit_sha: str | None = None
    environments: list[str] = []
    outcome: str = "running"
    stages: list[StageView] = []
    promotions: list[PromotionView] = []
    pending_approval: str | None = None
    failure: dict[str, Any] | None = None
    artifact_count: int = 0
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def completed_count(self) -> int:
        """Number of stages that ended in SUCCESS or SKIPPED."""
        return sum(
            1 for s in self.stages if s.status in (StageStatus.SUCCESS, StageStatus.SKIPPED)
        )

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    @property
    def failed_stages(self) -> list[StageView]:
        """Stages that ended FAILED, TIMED_OUT or ROLLED_BACK."""
        return [
            s
            for s in self.stages
            if s.status in (StageStatus.FAILED, StageStatus.TIMED_OUT, StageStatus.ROLLED_BACK)
        ]

    @property
    def running_stages(self) -> list[StageView]:
        return [s for s in self.stages if s.status == StageStatus.RUNNING]


class MonitorProjection:
    """Pure read-only projection over the RunLedger.

    This class NEVER stores state.  Every method re-reads the ledger
    to compute a fresh view.

    Parameters
    ----------
    ledger:
        The RunLedger to project from.
    """

    def __init__(self, ledger: RunLedger) -> None:
        self._ledger = ledger

    def snapshot(self, run_id: str) -> MonitorSnapshot:
        """Produce a point-in-time snapshot of the pipeline run.

        Re-reads the ledger completely; nothing is cached.
        """
        entries = self._ledger.get_run_entries(run_id)

        created = next((e for e in entries if e.event == "run.created"), None)
        header = created.details if created else {}
        environments = list(header.get("environments", []))
        if not environments and "promotion" in header:
            # Operator promotion runs record "<source> -> <target>"
            environments = [header["promotion"].split("->")[-1].strip()]

        stage_states = self._compute_stage_states(entries)
        stages = [
            StageView(
                stage_id=definition.stage_id,
                display_name=definition.display_name,
                **stage_states.get(definition.stage_id, {}),
            )
            for definition in sorted(
                build_stage_definitions(environments), key=lambda d: d.ordinal
            )
        ]

        refs: set[str] = set()
        for entry in entries:
            refs.update(entry.artifact_references)

        return MonitorSnapshot(
            run_id=run_id,
            branch=header.get("branch"),
            commit_sha=header.get("commit_sha"),
            environments=environments,
            outcome=self._outcome(entries),
            stages=stages,
            promotions=self._promotions(entries),
            pending_approval=self._pending_approval(entries),
            failure=next(
                (e.details for e in reversed(entries) if e.event in ("run.failed", "run.cancelled")),
                None,
            ),
            artifact_count=len(refs),
            chain_valid=self._check_chain_valid(run_id),
            last_updated=entries[-1].timestamp_utc if entries else datetime.now(timezone.utc),
        )

    @staticmethod
    def _compute_stage_states(entries: list[LedgerEntry]) -> dict[str, dict[str, Any]]:
        """Replay ``from->to`` transitions to compute current stage states."""
        result: dict[str, dict[str, Any]] = {}
        for entry in entries:
            if "->" not in entry.event:
                continue
            _, to_state = entry.event.split("->", 1)
            try:
                status = StageStatus(to_state)
            except ValueError:
                continue
            info = result.setdefault(entry.subject, {"artifact_refs": []})
            info["status"] = status
            info["entered_at"] = entry.timestamp_utc
            info["attempts"] = entry.details.get("attempts", 0)
            if entry.details.get("classification"):
                info["classification"] = entry.details["classification"]
            if entry.details.get("error"):
                info["error"] = entry.details["error"]
            rollback = entry.details.get("rollback")
            if rollback and rollback.get("succeeded"):
                info["rolled_back_to"] = rollback.get("target_tag")
            info["artifact_refs"].extend(entry.artifact_references)
        return result

    @staticmethod
    def _promotions(entries: list[LedgerEntry]) -> list[PromotionView]:
        views: list[PromotionView] = []
        for entry in entries:
            if not entry.event.startswith("promotion."):
                continue
            views.append(
                PromotionView(
                    target_env=entry.subject.removeprefix("promotion:"),
                    source_env=entry.details.get("source_env", ""),
                    decision=entry.event.removeprefix("promotion."),
                    block_reason=entry.details.get("block_reason"),
                    approver=entry.details.get("approver"),
                    decided_at=entry.timestamp_utc,
                )
            )
        return views

    @staticmethod
    def _pending_approval(entries: list[LedgerEntry]) -> str | None:
        pending: str | None = None
        for entry in entries:
            if entry.event == "run.suspended":
                pending = entry.details.get("approval_id")
            elif entry.event in ("run.resumed", "run.failed", "run.cancelled", "run.succeeded"):
                pending = None
        return pending

    @staticmethod
    def _outcome(entries: list[LedgerEntry]) -> str:
        for entry in reversed(entries):
            if entry.event in ("run.succeeded", "run.failed", "run.cancelled"):
                return entry.event.removeprefix("run.")
            if entry.event == "run.suspended":
                return "awaiting approval"
            if entry.event == "run.resumed":
                break
        return "running"

    def _check_chain_valid(self, run_id: str) -> bool:
        """Check hash chain integrity without raising."""
        try:
            return self._ledger.verify_chain(run_id)
        except LedgerIntegrityError:
            return False
