"""Artifact models — build outputs bound to immutable tags."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ArtifactState(str, Enum):
    """Lifecycle: created -> published -> archived.

    Per-environment deployment is tracked in ``deployed_environments``.
    """

    CREATED = "created"
    PUBLISHED = "published"
    ARCHIVED = "archived"


# Every published artifact must carry all of these, non-empty.
REQUIRED_METADATA_FIELDS: tuple[str, ...] = (
    "source_commit",
    "repository_url",
    "build_timestamp",
    "run_id",
)


class Artifact(BaseModel):
    """The build output, identified by an immutable tag.

    Once published, ``tag -> digest`` is permanent.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    tag: str
    digest: str  # "sha256:<hex>"
    metadata: dict[str, Any] = {}
    registry_location: str = ""
    state: ArtifactState = ArtifactState.CREATED
    deployed_environments: list[str] = []
    published_at: datetime | None = None

    @property
    def reference(self) -> str:
        """``name:tag@digest`` — the full traceable reference."""
        return f"{self.name}:{self.tag}@{self.digest}"


class ScanReport(BaseModel):
    """Latest vulnerability scan result for an artifact."""

    model_config = ConfigDict(frozen=True)

    tag: str
    digest: str
    critical: int = 0
    high: int = 0
    medium: int = 0
    low: int = 0
    scanner: str = "external"
    scanned_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_clean(self) -> bool:
        """True if the scan found zero critical findings."""
        return self.critical == 0
