"""Pipeline run models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from pipewarden.models.stages import StageRecord


class TriggerKind(str, Enum):
    """The event that created a run."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "manual"
    SCHEDULE = "schedule"


class RunStatus(str, Enum):
    """Overall status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}
)


def new_run_id() -> str:
    """Generate a run id: ``pw-<utc timestamp>-<hex>``."""
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"pw-{ts}-{uuid.uuid4().hex[:6]}"


class FailureReport(BaseModel):
    """What an operator sees when a run fails — never a bare exit code."""

    model_config = ConfigDict(frozen=True)

    stage_id: str
    classification: str
    message: str
    commit_sha: str
    artifact_tag: str | None = None
    detail_ref: str | None = None
    block_reason: str | None = None


class PipelineRun(BaseModel):
    """One execution triggered by a commit or dispatch event.

    Owned exclusively by the PipelineCoordinator.  Terminal once the
    status leaves RUNNING.
    """

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(default_factory=new_run_id)
    repository: str
    branch: str
    commit_sha: str
    trigger: TriggerKind = TriggerKind.PUSH
    environments: list[str] = []
    status: RunStatus = RunStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    stages: dict[str, StageRecord] = {}
    artifact_tag: str | None = None
    failure: FailureReport | None = None
    pending_approval_id: str | None = None
    parent_run_id: str | None = None
    promotion_source: str | None = None  # source env of an operator promotion run
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def is_suspended(self) -> bool:
        """True while the run waits on a production approval decision."""
        return self.status == RunStatus.RUNNING and self.pending_approval_id is not None
