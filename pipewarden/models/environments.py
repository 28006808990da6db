"""Environment models — static definitions plus the versioned deploy pointer."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DeploymentWindow(BaseModel):
    """Allowed deployment times in UTC.

    ``weekdays`` uses Monday=0 .. Sunday=6.  ``end_hour`` is exclusive.
    """

    model_config = ConfigDict(frozen=True)

    weekdays: list[int] = [0, 1, 2, 3, 4, 5, 6]
    start_hour: int = Field(default=0, ge=0, le=23)
    end_hour: int = Field(default=24, ge=1, le=24)

    def allows(self, at: datetime) -> bool:
        return at.weekday() in self.weekdays and self.start_hour <= at.hour < self.end_hour


class ProtectionPolicy(BaseModel):
    """How an environment may be deployed to."""

    model_config = ConfigDict(frozen=True)

    auto_deploy: bool = True
    required_approvals: int = 0
    deployment_window: DeploymentWindow | None = None

    @property
    def requires_approval(self) -> bool:
        return self.required_approvals > 0


class EnvironmentDefinition(BaseModel):
    """A deployment target and its promotion rules."""

    model_config = ConfigDict(frozen=True)

    name: str
    predecessors: list[str] = []
    protection: ProtectionPolicy = ProtectionPolicy()
    soak_seconds: float = 0.0  # minimum verified time in the predecessor
    require_clean_scan: bool = False


class DeploymentAction(str, Enum):
    DEPLOY = "deploy"
    ROLLBACK = "rollback"


class DeploymentRecord(BaseModel):
    """One verified change to an environment's deployed artifact."""

    model_config = ConfigDict(frozen=True)

    tag: str
    digest: str
    run_id: str
    action: DeploymentAction = DeploymentAction.DEPLOY
    deployed_at: datetime
    verified_at: datetime
    replaced_tag: str | None = None


class EnvironmentState(BaseModel):
    """The mutable, shared state of an environment.

    Writes go through compare-and-swap on ``version`` under the
    environment's deployment lock.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: int = 0
    current: DeploymentRecord | None = None
    history: list[DeploymentRecord] = []  # most recent last
    degraded: bool = False
    degraded_reason: str | None = None
