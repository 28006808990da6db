"""Repository onboarding checks.

A repository joins the platform when it has an application workflow and
a CODEOWNERS file with at least one ownership rule.  Structural problems in
the workflow (no trigger, not calling the platform's reusable workflow) are
reported as warnings.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from pipewarden.models.policy import Severity

logger = logging.getLogger(__name__)

APP_WORKFLOW = Path(".github/workflows/app-pipeline.yml")
CODEOWNERS_LOCATIONS = (Path("CODEOWNERS"), Path(".github/CODEOWNERS"))
PLATFORM_WORKFLOW = "workflows/cicd-platform.yml"

_TRIGGER_LINE = re.compile(r"^on:", re.MULTILINE)
_PLATFORM_USES = re.compile(r"uses:.*" + re.escape(PLATFORM_WORKFLOW))


class RepoFinding(BaseModel):
    model_config = ConfigDict(frozen=True)

    check: str
    severity: Severity
    message: str


class RepoValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    repo_dir: Path
    findings: list[RepoFinding] = []

    @property
    def passed(self) -> bool:
        return not any(f.severity == Severity.DENY for f in self.findings)


def _ownership_rules(text: str) -> int:
    return sum(
        1 for line in text.splitlines() if line.strip() and not line.lstrip().startswith("#")
    )


def validate_repository(repo_dir: Path) -> RepoValidation:
    """Run the onboarding checks against *repo_dir*."""
    repo_dir = Path(repo_dir)
    findings: list[RepoFinding] = []

    def deny(check: str, message: str) -> None:
        findings.append(RepoFinding(check=check, severity=Severity.DENY, message=message))

    def warn(check: str, message: str) -> None:
        findings.append(RepoFinding(check=check, severity=Severity.WARN, message=message))

    workflow = repo_dir / APP_WORKFLOW
    if not workflow.is_file():
        deny("required-files", f"Missing {APP_WORKFLOW} (application CI/CD workflow)")

    codeowners = next(
        (repo_dir / loc for loc in CODEOWNERS_LOCATIONS if (repo_dir / loc).is_file()), None
    )
    if codeowners is None:
        deny("required-files", "Missing CODEOWNERS (must be at root or in .github/)")
    else:
        text = codeowners.read_text(encoding="utf-8")
        if not text.strip():
            deny("codeowners", "CODEOWNERS file is empty")
        elif _ownership_rules(text) == 0:
            deny("codeowners", "CODEOWNERS has no ownership rules (only comments/blank lines)")

    if workflow.is_file():
        text = workflow.read_text(encoding="utf-8")
        if not text.strip():
            deny("app-workflow", "Workflow file is empty")
        else:
            if not _TRIGGER_LINE.search(text):
                warn("app-workflow", "Workflow missing 'on:' trigger (may be invalid)")
            if not _PLATFORM_USES.search(text):
                warn(
                    "app-workflow",
                    f"Workflow doesn't use the platform reusable workflow ({PLATFORM_WORKFLOW})",
                )

    result = RepoValidation(repo_dir=repo_dir, findings=findings)
    logger.info(
        "Repository %s validation %s (%d finding(s))",
        repo_dir,
        "passed" if result.passed else "failed",
        len(findings),
    )
    return result
