"""Stage state machine models — the fixed CI/CD stage graph.

validate -> build -> {test, scan} -> deploy(env) -> verify(env)

Deploy and verify repeat once per resolved environment, each deploy
depending on the previous environment's verify.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class StageKind(str, Enum):
    """The six stage kinds of the pipeline."""

    VALIDATE = "validate"
    BUILD = "build"
    TEST = "test"
    SCAN = "scan"
    DEPLOY = "deploy"
    VERIFY = "verify"


class StageStatus(str, Enum):
    """Strict state model for each pipeline stage."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"


TERMINAL_STAGE_STATUSES: frozenset[StageStatus] = frozenset(
    {
        StageStatus.SUCCESS,
        StageStatus.FAILED,
        StageStatus.TIMED_OUT,
        StageStatus.SKIPPED,
        StageStatus.ROLLED_BACK,
    }
)

# Valid state transitions, enforced structurally by StageMachine.
# Retries add attempts while the stage stays RUNNING; terminal states
# have no outgoing transitions.
VALID_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {
        StageStatus.SUCCESS,
        StageStatus.FAILED,
        StageStatus.TIMED_OUT,
        StageStatus.ROLLED_BACK,
    },
    StageStatus.SUCCESS: set(),
    StageStatus.FAILED: set(),
    StageStatus.TIMED_OUT: set(),
    StageStatus.SKIPPED: set(),
    StageStatus.ROLLED_BACK: set(),
}


def stage_key(kind: StageKind, environment: str | None = None) -> str:
    """Return the stage id used in a run: ``build`` or ``deploy:staging``."""
    return f"{kind.value}:{environment}" if environment else kind.value


class StageDefinition(BaseModel):
    """Defines a stage node and its prerequisites within one run.

    The prerequisite list encodes the DAG: a stage cannot enter RUNNING
    unless every prerequisite is SUCCESS.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    kind: StageKind
    display_name: str
    ordinal: float
    environment: str | None = None
    prerequisites: list[str] = []


# The environment-independent head of every run.
BASE_STAGE_DEFINITIONS: list[StageDefinition] = [
    StageDefinition(
        stage_id="validate",
        kind=StageKind.VALIDATE,
        display_name="Validate",
        ordinal=0.0,
    ),
    StageDefinition(
        stage_id="build",
        kind=StageKind.BUILD,
        display_name="Build",
        ordinal=1.0,
        prerequisites=["validate"],
    ),
    StageDefinition(
        stage_id="test",
        kind=StageKind.TEST,
        display_name="Test",
        ordinal=2.0,
        prerequisites=["build"],
    ),
    StageDefinition(
        stage_id="scan",
        kind=StageKind.SCAN,
        display_name="Scan",
        ordinal=2.5,
        prerequisites=["build"],
    ),
]


def build_stage_definitions(environments: list[str]) -> list[StageDefinition]:
    """Expand the base stages with a deploy/verify pair per environment."""
    definitions = list(BASE_STAGE_DEFINITIONS)
    previous = ["test", "scan"]
    for index, env in enumerate(environments):
        deploy_id = stage_key(StageKind.DEPLOY, env)
        verify_id = stage_key(StageKind.VERIFY, env)
        definitions.append(
            StageDefinition(
                stage_id=deploy_id,
                kind=StageKind.DEPLOY,
                display_name=f"Deploy ({env})",
                ordinal=3.0 + 2 * index,
                environment=env,
                prerequisites=previous,
            )
        )
        definitions.append(
            StageDefinition(
                stage_id=verify_id,
                kind=StageKind.VERIFY,
                display_name=f"Verify ({env})",
                ordinal=4.0 + 2 * index,
                environment=env,
                prerequisites=[deploy_id],
            )
        )
        previous = [verify_id]
    return definitions


class StageAttempt(BaseModel):
    """One execution attempt of a stage body."""

    model_config = ConfigDict(frozen=True)

    number: int
    status: StageStatus
    started_at: datetime
    ended_at: datetime
    duration_seconds: float
    exit_code: int | None = None
    error: str | None = None
    classification: str | None = None
    backoff_seconds: float | None = None  # delay before the next attempt


class RollbackRecord(BaseModel):
    """What happened when a failed verify triggered a rollback."""

    model_config = ConfigDict(frozen=True)

    environment: str
    failed_tag: str
    target_tag: str | None = None
    deploy_status: StageStatus | None = None
    verify_status: StageStatus | None = None
    succeeded: bool = False
    error: str | None = None


class StageRecord(BaseModel):
    """A stage node execution within a run.

    Immutable once terminal; retries append to ``attempts``.
    """

    model_config = ConfigDict(frozen=True)

    stage_id: str
    kind: StageKind
    environment: str | None = None
    status: StageStatus = StageStatus.PENDING
    attempts: list[StageAttempt] = []
    started_at: datetime | None = None
    ended_at: datetime | None = None
    classification: str | None = None
    error: str | None = None
    detail_ref: str | None = None
    rollback: RollbackRecord | None = None

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STAGE_STATUSES
