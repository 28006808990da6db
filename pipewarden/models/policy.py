"""Workflow-definition and policy-evaluation models.

The workflow document follows the GitHub Actions shape: top-level
``on``/``permissions``/``env``/``jobs``, each job holding ``steps`` with
``env`` and ``with`` maps.  Unknown keys are kept but ignored.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Severity(str, Enum):
    DENY = "deny"
    WARN = "warn"


def _stringify_map(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"expected a mapping, got {type(value).__name__}")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


class Step(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    name: str | None = None
    id: str | None = None
    uses: str | None = None
    run: str | None = None
    env: dict[str, str] = {}
    with_: dict[str, str] = Field(default={}, alias="with")

    @field_validator("env", "with_", mode="before")
    @classmethod
    def _coerce_maps(cls, v: Any) -> dict[str, str]:
        return _stringify_map(v)


class Job(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    name: str | None = None
    runs_on: Any = Field(default=None, alias="runs-on")
    needs: list[str] = []
    environment: Any = None
    permissions: str | dict[str, str] | None = None
    env: dict[str, str] = {}
    uses: str | None = None
    with_: dict[str, str] = Field(default={}, alias="with")
    steps: list[Step] = []

    @field_validator("needs", mode="before")
    @classmethod
    def _needs_as_list(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return [str(item) for item in v]

    @field_validator("env", "with_", mode="before")
    @classmethod
    def _coerce_maps(cls, v: Any) -> dict[str, str]:
        return _stringify_map(v)


class WorkflowDefinition(BaseModel):
    """A structured, read-only workflow document."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    name: str | None = None
    on: Any = None
    permissions: str | dict[str, str] | None = None
    env: dict[str, str] = {}
    jobs: dict[str, Job] = {}

    @field_validator("env", mode="before")
    @classmethod
    def _coerce_env(cls, v: Any) -> dict[str, str]:
        return _stringify_map(v)


class Violation(BaseModel):
    """A rule match produced by the policy evaluator."""

    model_config = ConfigDict(frozen=True)

    rule: str
    severity: Severity
    message: str


class PolicyResult(BaseModel):
    """Outcome of evaluating one workflow against a ruleset."""

    model_config = ConfigDict(frozen=True)

    violations: list[Violation] = []
    allowed: bool = True

    @property
    def denials(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == Severity.DENY]

    @property
    def warnings(self) -> list[Violation]:
        return [v for v in self.violations if v.severity == Severity.WARN]
