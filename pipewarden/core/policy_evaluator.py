"""Policy evaluator — declarative deny/warn rules over a workflow definition.

Rules are plain objects implementing ``PolicyRule``: each one is a pure
predicate over a ``WorkflowDefinition`` plus a renderer for its message.
Rules never see each other and never mutate the workflow, so the result of
``evaluate`` depends only on the workflow and the set of rules, not on the
order in which they run.

A rule that looks for a field the workflow does not have simply does not
match.  Absence is only a violation when a rule checks for it explicitly
(``MandatoryStageRule``, ``OidcPermissionRule``).
"""

from __future__ import annotations

import abc
import logging
import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import ClassVar

from pipewarden.models.policy import (
    Job,
    PolicyResult,
    Severity,
    Violation,
    WorkflowDefinition,
)
from pipewarden.models.stages import StageKind
from pipewarden.workflows import load_workflow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Job -> stage vocabulary
# ---------------------------------------------------------------------------

# Vocabulary order is the tie-breaker: the first stage that matches wins.
STAGE_VOCABULARY: dict[StageKind, tuple[str, ...]] = {
    StageKind.VALIDATE: ("lint", "check", "checks", "static-analysis", "pre-commit"),
    StageKind.BUILD: ("compile", "package", "docker-build", "image-build"),
    StageKind.TEST: ("unit-test", "unit-tests", "tests", "integration-test", "e2e", "pytest"),
    StageKind.SCAN: ("security", "security-scan", "sast", "trivy", "codeql", "vulnerability"),
    StageKind.DEPLOY: ("release", "publish", "rollout", "ship"),
}

MANDATORY_STAGES: tuple[StageKind, ...] = (
    StageKind.BUILD,
    StageKind.TEST,
    StageKind.SCAN,
    StageKind.DEPLOY,
)

DEFAULT_PROHIBITED_SECRETS: frozenset[str] = frozenset(
    {
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "AZURE_CLIENT_SECRET",
        "AZURE_CREDENTIALS",
        "ARM_CLIENT_SECRET",
        "GCP_SA_KEY",
        "GCP_CREDENTIALS",
        "GOOGLE_APPLICATION_CREDENTIALS",
        "GOOGLE_CREDENTIALS",
    }
)

DEFAULT_MUTABLE_TAGS: frozenset[str] = frozenset(
    {"latest", "main", "master", "prod", "production", "stable", "dev"}
)

_TAG_KEYS = frozenset({"tag", "tags", "image-tag", "version", "image"})
_SECRET_REF = re.compile(r"\$\{\{\s*secrets\.([A-Za-z0-9_]+)\s*\}\}")
_TOKEN_SPLIT = re.compile(r"[\s,]+")


def _normalize(name: str) -> str:
    return name.strip().lower().replace("_", "-").replace(" ", "-")


def classify_job_name(*names: str | None) -> StageKind | None:
    """Map a job to a stage kind, or None if nothing in the vocabulary fits.

    *names* are tried in the order given (job id first, then display name).
    Matching precedence: exact stage name, then exact alias, then substring
    of a stage name or alias.  Within each level the vocabulary order wins.
    """
    candidates = [_normalize(n) for n in names if n]
    for candidate in candidates:
        for stage in STAGE_VOCABULARY:
            if candidate == stage.value:
                return stage
    for candidate in candidates:
        for stage, aliases in STAGE_VOCABULARY.items():
            if candidate in aliases:
                return stage
    for candidate in candidates:
        for stage, aliases in STAGE_VOCABULARY.items():
            if stage.value in candidate or any(alias in candidate for alias in aliases):
                return stage
    return None


def job_stages(workflow: WorkflowDefinition) -> dict[str, StageKind | None]:
    """Return ``job id -> stage kind`` for every job in *workflow*."""
    return {job_id: classify_job_name(job_id, job.name) for job_id, job in workflow.jobs.items()}


def _maps(workflow: WorkflowDefinition) -> Iterator[tuple[str, dict[str, str]]]:
    """Yield every ``(location, mapping)`` pair that may carry env or inputs."""
    yield "env", workflow.env
    for job_id, job in workflow.jobs.items():
        yield f"jobs.{job_id}.env", job.env
        yield f"jobs.{job_id}.with", job.with_
        secrets = (job.model_extra or {}).get("secrets")
        if isinstance(secrets, dict):
            yield f"jobs.{job_id}.secrets", {str(k): str(v) for k, v in secrets.items()}
        for index, step in enumerate(job.steps):
            label = step.id or step.name or str(index)
            yield f"jobs.{job_id}.steps[{label}].env", step.env
            yield f"jobs.{job_id}.steps[{label}].with", step.with_


def _permission_grants(permissions: str | dict[str, str] | None, scope: str, level: str) -> bool:
    if isinstance(permissions, dict):
        return permissions.get(scope) == level
    return False


# ---------------------------------------------------------------------------
# Rule interface
# ---------------------------------------------------------------------------


class PolicyRule(abc.ABC):
    """A single declarative compliance rule.

    Subclasses set ``name``, ``severity`` and ``message_template`` and
    implement ``matches``.  ``render`` fills the template from
    ``context(workflow)``.
    """

    name: str
    severity: Severity = Severity.DENY
    message_template: ClassVar[str] = "{name} matched"

    @abc.abstractmethod
    def matches(self, workflow: WorkflowDefinition) -> bool:
        """Return True if the rule fires for *workflow*."""
        ...

    def context(self, workflow: WorkflowDefinition) -> dict[str, str]:
        return {}

    def render(self, workflow: WorkflowDefinition) -> str:
        return self.message_template.format(name=self.name, **self.context(workflow))

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, severity={self.severity.value})"


class MandatoryStageRule(PolicyRule):
    """Deny unless some job performs *stage*."""

    message_template = "No job performs the mandatory '{stage}' stage"

    def __init__(self, stage: StageKind) -> None:
        self.stage = stage
        self.name = f"mandatory-stage:{stage.value}"

    def matches(self, workflow: WorkflowDefinition) -> bool:
        return self.stage not in job_stages(workflow).values()

    def context(self, workflow: WorkflowDefinition) -> dict[str, str]:
        return {"stage": self.stage.value}


class ProhibitedCredentialRule(PolicyRule):
    """Deny references to long-lived cloud credentials.

    Looks at env keys, ``with``/``secrets`` keys, and ``${{ secrets.NAME }}``
    expressions in env values, inputs and ``run`` scripts.
    """

    name = "prohibited-credential"
    message_template = "Long-lived credential(s) referenced: {found}"

    def __init__(self, blocklist: Iterable[str] = DEFAULT_PROHIBITED_SECRETS) -> None:
        self.blocklist = frozenset(name.upper() for name in blocklist)

    def _references(self, workflow: WorkflowDefinition) -> list[str]:
        found: set[str] = set()
        for location, mapping in _maps(workflow):
            for key, value in mapping.items():
                if key.upper() in self.blocklist:
                    found.add(f"{key.upper()} ({location})")
                for ref in _SECRET_REF.findall(value):
                    if ref.upper() in self.blocklist:
                        found.add(f"{ref.upper()} ({location})")
        for job_id, job in workflow.jobs.items():
            for step in job.steps:
                for ref in _SECRET_REF.findall(step.run or ""):
                    if ref.upper() in self.blocklist:
                        found.add(f"{ref.upper()} (jobs.{job_id}.run)")
        return sorted(found)

    def matches(self, workflow: WorkflowDefinition) -> bool:
        return bool(self._references(workflow))

    def context(self, workflow: WorkflowDefinition) -> dict[str, str]:
        return {"found": ", ".join(self._references(workflow))}


class MutableTagRule(PolicyRule):
    """Deny tag-like fields that name a mutable alias such as ``latest``."""

    name = "mutable-tag"
    message_template = "Mutable image tag(s) used: {found}"

    def __init__(self, blocklist: Iterable[str] = DEFAULT_MUTABLE_TAGS) -> None:
        self.blocklist = frozenset(tag.lower() for tag in blocklist)

    @staticmethod
    def _tag_of(token: str) -> str:
        # "registry:5000/app:latest" -> "latest"; a bare token is its own tag
        head, sep, tail = token.rpartition(":")
        if sep and head and "/" not in tail:
            return tail
        return token

    def _mutable_uses(self, workflow: WorkflowDefinition) -> list[str]:
        found: set[str] = set()
        for location, mapping in _maps(workflow):
            for key, value in mapping.items():
                normalized = _normalize(key)
                if normalized not in _TAG_KEYS and not normalized.endswith("-tag"):
                    continue
                if "${{" in value:
                    continue
                for token in filter(None, _TOKEN_SPLIT.split(value)):
                    if self._tag_of(token).lower() in self.blocklist:
                        found.add(f"{key}={token} ({location})")
        return sorted(found)

    def matches(self, workflow: WorkflowDefinition) -> bool:
        return bool(self._mutable_uses(workflow))

    def context(self, workflow: WorkflowDefinition) -> dict[str, str]:
        return {"found": ", ".join(self._mutable_uses(workflow))}


class OverbroadPermissionsRule(PolicyRule):
    """Warn on ``permissions: write-all`` at workflow or job level."""

    name = "overbroad-permissions"
    severity = Severity.WARN
    message_template = "write-all permissions granted at: {where}"

    def _locations(self, workflow: WorkflowDefinition) -> list[str]:
        where = ["workflow"] if workflow.permissions == "write-all" else []
        where += [
            f"jobs.{job_id}"
            for job_id, job in sorted(workflow.jobs.items())
            if job.permissions == "write-all"
        ]
        return where

    def matches(self, workflow: WorkflowDefinition) -> bool:
        return bool(self._locations(workflow))

    def context(self, workflow: WorkflowDefinition) -> dict[str, str]:
        return {"where": ", ".join(self._locations(workflow))}


class OidcPermissionRule(PolicyRule):
    """Warn when a deploy job exists but ``id-token: write`` is never granted."""

    name = "oidc-permission"
    severity = Severity.WARN
    message_template = (
        "Deploy job(s) {jobs} run without 'id-token: write'; "
        "short-lived OIDC credentials cannot be requested"
    )

    @staticmethod
    def _deploy_jobs(workflow: WorkflowDefinition) -> list[str]:
        return sorted(
            job_id for job_id, stage in job_stages(workflow).items() if stage == StageKind.DEPLOY
        )

    @staticmethod
    def _grants_id_token(workflow: WorkflowDefinition) -> bool:
        jobs: Iterable[Job] = workflow.jobs.values()
        return _permission_grants(workflow.permissions, "id-token", "write") or any(
            _permission_grants(job.permissions, "id-token", "write") for job in jobs
        )

    def matches(self, workflow: WorkflowDefinition) -> bool:
        return bool(self._deploy_jobs(workflow)) and not self._grants_id_token(workflow)

    def context(self, workflow: WorkflowDefinition) -> dict[str, str]:
        return {"jobs": ", ".join(self._deploy_jobs(workflow))}


def default_ruleset() -> list[PolicyRule]:
    """The built-in rules enforced on every workflow."""
    rules: list[PolicyRule] = [MandatoryStageRule(stage) for stage in MANDATORY_STAGES]
    rules += [
        ProhibitedCredentialRule(),
        MutableTagRule(),
        OverbroadPermissionsRule(),
        OidcPermissionRule(),
    ]
    return rules


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

_SEVERITY_ORDER = {Severity.DENY: 0, Severity.WARN: 1}


def evaluate(
    workflow: WorkflowDefinition, ruleset: Iterable[PolicyRule] | None = None
) -> PolicyResult:
    """Evaluate *workflow* against *ruleset* (the default rules if None).

    ``allowed`` is False iff at least one deny rule matched.  Violations are
    sorted by severity, rule name and message.
    """
    rules = default_ruleset() if ruleset is None else list(ruleset)
    violations = [
        Violation(rule=rule.name, severity=rule.severity, message=rule.render(workflow))
        for rule in rules
        if rule.matches(workflow)
    ]
    violations.sort(key=lambda v: (_SEVERITY_ORDER[v.severity], v.rule, v.message))
    allowed = not any(v.severity == Severity.DENY for v in violations)
    for violation in violations:
        log = logger.warning if violation.severity == Severity.DENY else logger.info
        log("[%s] %s: %s", violation.severity.value, violation.rule, violation.message)
    return PolicyResult(violations=violations, allowed=allowed)


def evaluate_many(
    workflows_dir: Path, ruleset: Iterable[PolicyRule] | None = None
) -> dict[str, PolicyResult]:
    """Evaluate every ``*.yml``/``*.yaml`` workflow in *workflows_dir*.

    Returns ``file name -> PolicyResult`` in file-name order.
    """
    rules = default_ruleset() if ruleset is None else list(ruleset)
    paths = sorted([*workflows_dir.glob("*.yml"), *workflows_dir.glob("*.yaml")])
    return {path.name: evaluate(load_workflow(path), rules) for path in paths}
