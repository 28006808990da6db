"""Stage bodies — the external work behind each stage.

The compute that builds, tests, scans, deploys and verifies lives outside
Pipewarden.  The engine calls it through the ``StageBody`` protocol: a
callable taking a ``StageSpec`` and returning a ``BodyResult``.

``CommandStageBody`` adapts a shell command to the protocol.  Stage context
is passed in ``PIPEWARDEN_*`` environment variables; ``key=value`` lines on
stdout become the result's outputs.  Recognised outputs:

- build: ``digest=sha256:<hex>`` or ``artifact_path=<file>``, optional ``tag``
- scan: ``critical``, ``high``, ``medium``, ``low``, optional ``scanner``
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from pipewarden.core.errors import ValidationError
from pipewarden.core.hasher import content_address
from pipewarden.core.identity import ScopedCredential
from pipewarden.models.stages import StageKind

logger = logging.getLogger(__name__)


class StageSpec(BaseModel):
    """Everything a stage body is told about the work it must do."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    stage_id: str
    kind: StageKind
    environment: str | None = None
    repository: str
    branch: str
    commit_sha: str
    artifact_tag: str | None = None
    artifact_digest: str | None = None
    attempt: int = 1
    timeout_seconds: float | None = None
    parameters: dict[str, str] = {}
    # Never serialized; lives only as long as the spec object.
    credential: ScopedCredential | None = Field(default=None, exclude=True, repr=False)


class BodyResult(BaseModel):
    """What a stage body reports back. Uninterpreted by the executor."""

    model_config = ConfigDict(frozen=True)

    exit_code: int = 0
    outputs: dict[str, str] = {}
    error: str | None = None
    detail_ref: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class StageBody(Protocol):
    def __call__(self, spec: StageSpec) -> BodyResult:
        ...


def parse_outputs(stdout: str) -> dict[str, str]:
    """Collect ``key=value`` lines; later keys override earlier ones."""
    outputs: dict[str, str] = {}
    for line in stdout.splitlines():
        key, sep, value = line.strip().partition("=")
        if sep and key and " " not in key:
            outputs[key] = value.strip()
    return outputs


class CommandStageBody:
    """Run a shell command as a stage body.

    Parameters
    ----------
    command:
        Shell command line, run with ``/bin/sh``.
    cwd:
        Working directory for the command. Defaults to the current directory.
    """

    def __init__(self, command: str, *, cwd: Path | None = None) -> None:
        self.command = command
        self.cwd = cwd

    def _environment(self, spec: StageSpec) -> dict[str, str]:
        env = dict(os.environ)
        env.update(
            {
                "PIPEWARDEN_RUN_ID": spec.run_id,
                "PIPEWARDEN_STAGE": spec.stage_id,
                "PIPEWARDEN_STAGE_KIND": spec.kind.value,
                "PIPEWARDEN_ENVIRONMENT": spec.environment or "",
                "PIPEWARDEN_REPOSITORY": spec.repository,
                "PIPEWARDEN_BRANCH": spec.branch,
                "PIPEWARDEN_COMMIT": spec.commit_sha,
                "PIPEWARDEN_ARTIFACT_TAG": spec.artifact_tag or "",
                "PIPEWARDEN_ARTIFACT_DIGEST": spec.artifact_digest or "",
                "PIPEWARDEN_ATTEMPT": str(spec.attempt),
            }
        )
        env.update({f"PIPEWARDEN_PARAM_{k.upper()}": v for k, v in spec.parameters.items()})
        if spec.credential is not None:
            env["PIPEWARDEN_CREDENTIAL"] = spec.credential.token.get_secret_value()
        return env

    def __call__(self, spec: StageSpec) -> BodyResult:
        logger.debug("Running %s for %s: %s", spec.stage_id, spec.run_id, self.command)
        try:
            completed = subprocess.run(
                self.command,
                shell=True,
                cwd=self.cwd,
                env=self._environment(spec),
                capture_output=True,
                text=True,
                timeout=spec.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise TimeoutError(f"{spec.stage_id} exceeded {exc.timeout}s") from exc
        error = None
        if completed.returncode != 0:
            tail = (completed.stderr or completed.stdout).strip().splitlines()[-5:]
            error = "\n".join(tail) or f"exit code {completed.returncode}"
        return BodyResult(
            exit_code=completed.returncode,
            outputs=parse_outputs(completed.stdout),
            error=error,
        )

    def __repr__(self) -> str:
        return f"CommandStageBody({self.command!r})"


class DryRunStageBody:
    """Succeeds without doing any work.

    Build reports a digest derived from the repository and commit so the
    rest of the pipeline has an artifact to promote.  Scan reports a clean
    result.  Used by ``pipewarden trigger --dry-run``.
    """

    def __call__(self, spec: StageSpec) -> BodyResult:
        if spec.kind == StageKind.BUILD:
            digest = content_address({"repository": spec.repository, "commit": spec.commit_sha})
            return BodyResult(outputs={"digest": digest})
        if spec.kind == StageKind.SCAN:
            return BodyResult(
                outputs={"critical": "0", "high": "0", "medium": "0", "low": "0", "scanner": "dry-run"}
            )
        return BodyResult()


def body_key_candidates(kind: StageKind, environment: str | None) -> list[str]:
    """Lookup order for a stage body: ``deploy:staging`` before ``deploy``."""
    keys = [f"{kind.value}:{environment}"] if environment else []
    return [*keys, kind.value]


def resolve_body(
    bodies: Mapping[str, StageBody], kind: StageKind, environment: str | None = None
) -> StageBody:
    for key in body_key_candidates(kind, environment):
        if key in bodies:
            return bodies[key]
    raise ValidationError(
        f"No stage body configured for {kind.value}"
        + (f" in {environment}" if environment else "")
    )


def bodies_from_commands(
    commands: Mapping[str, str], *, cwd: Path | None = None, dry_run: bool = False
) -> dict[str, StageBody]:
    """Build the body table from configured commands.

    With *dry_run*, every stage kind without a command gets a
    ``DryRunStageBody``.
    """
    bodies: dict[str, StageBody] = {
        key: CommandStageBody(command, cwd=cwd) for key, command in commands.items()
    }
    if dry_run:
        for kind in StageKind:
            bodies.setdefault(kind.value, DryRunStageBody())
    return bodies
