"""Deterministic stage state machine.

Enforces:
- Valid state transitions only (VALID_TRANSITIONS table)
- Prerequisites checked before RUNNING
- Cascade skipping of pending dependents when a stage ends unsuccessfully
- Every transition recorded in the Run Ledger

Runs are frozen models, so every transition returns a new ``PipelineRun``;
the coordinator persists it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from pipewarden.core.run_ledger import RunLedger
from pipewarden.core.stage_graph import PrerequisiteNotMetError, StageGraph
from pipewarden.models.runs import PipelineRun
from pipewarden.models.stages import (
    TERMINAL_STAGE_STATUSES,
    VALID_TRANSITIONS,
    RollbackRecord,
    StageAttempt,
    StageRecord,
    StageStatus,
)

logger = logging.getLogger(__name__)

_UNSUCCESSFUL = frozenset({StageStatus.FAILED, StageStatus.TIMED_OUT, StageStatus.ROLLED_BACK})


class InvalidTransitionError(RuntimeError):
    """Raised when a requested state transition is not valid."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StageMachine:
    """Applies stage transitions to a run and records them in the ledger.

    Parameters
    ----------
    ledger:
        The Run Ledger to record transitions into.
    graph:
        The run's stage graph for dependency checking.
    """

    def __init__(
        self,
        ledger: RunLedger,
        graph: StageGraph,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._ledger = ledger
        self._graph = graph
        self._clock = clock

    @property
    def graph(self) -> StageGraph:
        return self._graph

    def initialize(self, run: PipelineRun) -> PipelineRun:
        """Create a PENDING record for every stage of the graph."""
        stages = {}
        for stage_id in self._graph.stage_ids:
            definition = self._graph.get_stage_definition(stage_id)
            stages[stage_id] = StageRecord(
                stage_id=stage_id,
                kind=definition.kind,
                environment=definition.environment,
            )
        return run.model_copy(update={"stages": stages})

    @staticmethod
    def statuses(run: PipelineRun) -> dict[str, StageStatus]:
        return {stage_id: record.status for stage_id, record in run.stages.items()}

    def can_start(self, run: PipelineRun, stage_id: str) -> tuple[bool, list[str]]:
        """Check if a stage can transition to RUNNING.

        Returns (can_start, blocking_reasons).
        """
        current = run.stages[stage_id].status
        if current != StageStatus.PENDING:
            return False, [f"Stage is currently {current.value}, not pending"]
        states = self.statuses(run)
        if not self._graph.are_prerequisites_met(stage_id, states):
            return False, self._graph.get_blocking_reasons(stage_id, states)
        return True, []

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        run: PipelineRun,
        stage_id: str,
        target: StageStatus,
        *,
        attempts: list[StageAttempt] | None = None,
        classification: str | None = None,
        error: str | None = None,
        detail_ref: str | None = None,
        rollback: RollbackRecord | None = None,
        details: dict[str, Any] | None = None,
        artifact_references: list[str] | None = None,
    ) -> PipelineRun:
        """Move *stage_id* to *target*, record it, and return the updated run.

        Validates:
        1. The transition is allowed by VALID_TRANSITIONS.
        2. If target is RUNNING, prerequisites are met.
        3. If the stage ends unsuccessfully, pending dependents are skipped.
        """
        record = run.stages[stage_id]
        current = record.status

        allowed = VALID_TRANSITIONS.get(current, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition {stage_id} from {current.value} to {target.value}. "
                f"Allowed: {sorted(s.value for s in allowed)}"
            )

        if target == StageStatus.RUNNING:
            states = self.statuses(run)
            if not self._graph.are_prerequisites_met(stage_id, states):
                reasons = self._graph.get_blocking_reasons(stage_id, states)
                raise PrerequisiteNotMetError(
                    f"Cannot start {stage_id}: prerequisites not met. "
                    f"Blocked by: {'; '.join(reasons)}"
                )

        now = self._clock()
        update: dict[str, Any] = {"status": target}
        if target == StageStatus.RUNNING:
            update["started_at"] = now
        if target in TERMINAL_STAGE_STATUSES:
            update["ended_at"] = now
        if attempts is not None:
            update["attempts"] = attempts
        if classification is not None:
            update["classification"] = classification
        if error is not None:
            update["error"] = error
        if detail_ref is not None:
            update["detail_ref"] = detail_ref
        if rollback is not None:
            update["rollback"] = rollback

        ledger_details: dict[str, Any] = {"attempts": len(attempts if attempts is not None else record.attempts)}
        if classification:
            ledger_details["classification"] = classification
        if error:
            ledger_details["error"] = error
        if rollback is not None:
            ledger_details["rollback"] = rollback.model_dump(mode="json")
        ledger_details.update(details or {})
        self._ledger.record(
            run.run_id,
            stage_id,
            f"{current.value}->{target.value}",
            details=ledger_details,
            artifact_references=artifact_references,
        )

        stages = dict(run.stages)
        stages[stage_id] = record.model_copy(update=update)
        run = run.model_copy(update={"stages": stages})

        if target in _UNSUCCESSFUL:
            run = self._skip_dependents(run, stage_id)
        return run

    def update_record(self, run: PipelineRun, stage_id: str, **fields: Any) -> PipelineRun:
        """Replace fields of a stage record without changing its status."""
        record = run.stages[stage_id]
        if record.is_terminal:
            raise InvalidTransitionError(f"Stage {stage_id} is terminal and immutable")
        stages = dict(run.stages)
        stages[stage_id] = record.model_copy(update=fields)
        return run.model_copy(update={"stages": stages})

    def skip(self, run: PipelineRun, stage_id: str, reason: str) -> PipelineRun:
        return self.transition(run, stage_id, StageStatus.SKIPPED, details={"reason": reason})

    def _skip_dependents(self, run: PipelineRun, failed_stage_id: str) -> PipelineRun:
        for stage_id in self._graph.cascade_skip(failed_stage_id, self.statuses(run)):
            run = self.transition(
                run,
                stage_id,
                StageStatus.SKIPPED,
                details={"reason": f"upstream {failed_stage_id} did not succeed"},
            )
        return run

