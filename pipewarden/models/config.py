"""Pipeline configuration models — environments, branch rules, stage bodies.

Loaded from ``pipewarden.yaml``; every field has a default matching the
standard dev -> staging -> production topology.
"""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict

from pipewarden.models.environments import EnvironmentDefinition, ProtectionPolicy


class BranchRule(BaseModel):
    """Maps a branch glob to an ordered list of target environments."""

    model_config = ConfigDict(frozen=True)

    pattern: str
    environments: list[str]


DEFAULT_ENVIRONMENTS: list[EnvironmentDefinition] = [
    EnvironmentDefinition(
        name="dev",
        protection=ProtectionPolicy(auto_deploy=True),
    ),
    EnvironmentDefinition(
        name="staging",
        protection=ProtectionPolicy(auto_deploy=True),
    ),
    EnvironmentDefinition(
        name="production",
        predecessors=["staging"],
        protection=ProtectionPolicy(auto_deploy=False, required_approvals=1),
        soak_seconds=3600.0,
        require_clean_scan=True,
    ),
]

DEFAULT_BRANCH_RULES: list[BranchRule] = [
    BranchRule(pattern="feature/*", environments=["dev"]),
    BranchRule(pattern="bugfix/*", environments=["dev"]),
    BranchRule(pattern="main", environments=["staging", "production"]),
    BranchRule(pattern="release/*", environments=["staging", "production"]),
    BranchRule(pattern="hotfix/*", environments=["dev", "staging", "production"]),
]


class PipelineConfig(BaseModel):
    """Project-level configuration for the pipeline engine."""

    model_config = ConfigDict(frozen=True)

    project_name: str = "pipewarden"
    artifact_name: str = "app"
    registry_location: str = "registry.local"
    environments: list[EnvironmentDefinition] = DEFAULT_ENVIRONMENTS
    branch_rules: list[BranchRule] = DEFAULT_BRANCH_RULES
    # stage kind (or "deploy:<env>") -> shell command for CommandStageBody
    stage_commands: dict[str, str] = {}
    workflow_path: Path | None = None

    def environment(self, name: str) -> EnvironmentDefinition:
        for env in self.environments:
            if env.name == name:
                return env
        raise KeyError(f"Unknown environment: {name!r}")

    @classmethod
    def from_yaml(cls, path: Path) -> PipelineConfig:
        """Load configuration from a YAML file."""
        with Path(path).open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        return cls.model_validate(data)
