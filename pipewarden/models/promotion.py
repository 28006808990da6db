"""Promotion and approval models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# Source environment name used when promoting straight out of the build.
BUILD_SOURCE = "build"


class PromotionDecision(str, Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"
    REJECTED = "rejected"


class BlockReason(str, Enum):
    """Why a promotion was blocked or rejected."""

    ARTIFACT_NOT_PUBLISHED = "artifact_not_published"
    MUTABLE_TAG = "mutable_tag"
    METADATA_INCOMPLETE = "metadata_incomplete"
    PREDECESSOR_NOT_VERIFIED = "predecessor_not_verified"
    ARTIFACT_MISMATCH = "artifact_mismatch"
    SOAK_TIME_NOT_ELAPSED = "soak_time_not_elapsed"
    CRITICAL_VULNERABILITY = "critical_vulnerability"
    SCAN_MISSING = "scan_missing"
    OUTSIDE_DEPLOYMENT_WINDOW = "outside_deployment_window"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVAL_REJECTED = "approval_rejected"
    APPROVAL_EXPIRED = "approval_expired"


class PromotionRecord(BaseModel):
    """An append-only decision about moving an artifact to an environment."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    run_id: str
    tag: str
    digest: str
    source_env: str
    target_env: str
    decision: PromotionDecision
    block_reason: BlockReason | None = None
    approver: str | None = None
    detail: str = ""
    requested_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    decided_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def allowed(self) -> bool:
        return self.decision == PromotionDecision.ALLOWED


class ApprovalState(str, Enum):
    REQUESTED = "requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalRequest(BaseModel):
    """The persisted human gate in front of a protected environment."""

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: f"apr-{uuid.uuid4().hex[:12]}")
    promotion_record_id: str
    run_id: str
    tag: str
    source_env: str
    target_env: str
    state: ApprovalState = ApprovalState.REQUESTED
    required_approvals: int = 1
    approvals: list[str] = []
    decided_by: str | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    expires_at: datetime
    decided_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.state == ApprovalState.REQUESTED
