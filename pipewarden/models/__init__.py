"""Pipewarden data models — all Pydantic v2, all frozen (immutable)."""

from pipewarden.models.artifacts import (
    REQUIRED_METADATA_FIELDS,
    Artifact,
    ArtifactState,
    ScanReport,
)
from pipewarden.models.config import (
    DEFAULT_BRANCH_RULES,
    DEFAULT_ENVIRONMENTS,
    BranchRule,
    PipelineConfig,
)
from pipewarden.models.environments import (
    DeploymentAction,
    DeploymentRecord,
    DeploymentWindow,
    EnvironmentDefinition,
    EnvironmentState,
    ProtectionPolicy,
)
from pipewarden.models.ledger import LedgerEntry
from pipewarden.models.policy import (
    Job,
    PolicyResult,
    Severity,
    Step,
    Violation,
    WorkflowDefinition,
)
from pipewarden.models.promotion import (
    BUILD_SOURCE,
    ApprovalRequest,
    ApprovalState,
    BlockReason,
    PromotionDecision,
    PromotionRecord,
)
from pipewarden.models.runs import (
    FailureReport,
    PipelineRun,
    RunStatus,
    TriggerKind,
)
from pipewarden.models.stages import (
    VALID_TRANSITIONS,
    RollbackRecord,
    StageAttempt,
    StageDefinition,
    StageKind,
    StageRecord,
    StageStatus,
    build_stage_definitions,
    stage_key,
)

__all__ = [
    # artifacts
    "Artifact",
    "ArtifactState",
    "REQUIRED_METADATA_FIELDS",
    "ScanReport",
    # config
    "BranchRule",
    "DEFAULT_BRANCH_RULES",
    "DEFAULT_ENVIRONMENTS",
    "PipelineConfig",
    # environments
    "DeploymentAction",
    "DeploymentRecord",
    "DeploymentWindow",
    "EnvironmentDefinition",
    "EnvironmentState",
    "ProtectionPolicy",
    # ledger
    "LedgerEntry",
    # policy
    "Job",
    "PolicyResult",
    "Severity",
    "Step",
    "Violation",
    "WorkflowDefinition",
    # promotion
    "ApprovalRequest",
    "ApprovalState",
    "BUILD_SOURCE",
    "BlockReason",
    "PromotionDecision",
    "PromotionRecord",
    # runs
    "FailureReport",
    "PipelineRun",
    "RunStatus",
    "TriggerKind",
    # stages
    "RollbackRecord",
    "StageAttempt",
    "StageDefinition",
    "StageKind",
    "StageRecord",
    "StageStatus",
    "VALID_TRANSITIONS",
    "build_stage_definitions",
    "stage_key",
]
