"""Artifact ledger — tag/digest immutability and traceable metadata.

An artifact is published once.  After that the binding ``tag -> digest``
is permanent: republishing the same pair is a no-op, republishing the tag
with any other digest raises ``ImmutabilityViolation``.  Mutable aliases
such as ``latest`` are never accepted as tags.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from pipewarden.core.errors import (
    ImmutabilityViolation,
    MissingMetadataError,
    ValidationError,
)
from pipewarden.core.registry import ArtifactRegistry
from pipewarden.core.state_store import StateStore
from pipewarden.models.artifacts import (
    REQUIRED_METADATA_FIELDS,
    Artifact,
    ArtifactState,
    ScanReport,
)

logger = logging.getLogger(__name__)

MUTABLE_ALIASES: frozenset[str] = frozenset(
    {"latest", "main", "master", "prod", "production", "stable", "dev", "staging", "edge"}
)

_FULL_SHA = re.compile(r"^[0-9a-f]{40}$")
_HEX = re.compile(r"^[0-9a-f]+$")
_SEMVER = re.compile(
    r"^v?(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$"
)
_DIGEST = re.compile(r"^sha256:[0-9a-f]{64}$")


def is_valid_commit_sha(value: str, *, short_min: int = 6) -> bool:
    """A full 40-hex SHA, or an abbreviated one of at least *short_min* chars."""
    if _FULL_SHA.match(value):
        return True
    return short_min <= len(value) < 40 and bool(_HEX.match(value))


def is_immutable_tag(tag: str, *, short_min: int = 6) -> bool:
    """True if *tag* is a commit SHA or a semantic version, never an alias."""
    if tag.lower() in MUTABLE_ALIASES:
        return False
    return is_valid_commit_sha(tag, short_min=short_min) or bool(_SEMVER.match(tag))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ArtifactLedger:
    """Publishes artifacts and answers questions about them.

    Parameters
    ----------
    registry:
        The external artifact registry. Publication binds the tag there first.
    store:
        Durable state; artifacts and scan reports are persisted here.
    short_sha_min_length:
        Shortest abbreviated commit SHA accepted as a tag or source commit.
    clock:
        Returns the current UTC time. Injectable for tests.
    """

    def __init__(
        self,
        registry: ArtifactRegistry,
        store: StateStore,
        *,
        short_sha_min_length: int = 6,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._registry = registry
        self._store = store
        self._short_min = short_sha_min_length
        self._clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    def publish(
        self,
        tag: str,
        digest: str,
        metadata: dict[str, Any],
        *,
        name: str = "app",
    ) -> Artifact:
        """Bind *tag* to *digest* and record the artifact as published.

        Raises
        ------
        ImmutabilityViolation
            The tag is a mutable alias, or is already bound to another digest.
        MissingMetadataError
            A required metadata field is absent, empty, or malformed.
        ValidationError
            The digest is not a ``sha256:<64 hex>`` string.
        """
        if not is_immutable_tag(tag, short_min=self._short_min):
            raise ImmutabilityViolation(
                f"Tag {tag!r} is not an immutable identifier "
                "(expected a commit SHA or semantic version)"
            )
        if not _DIGEST.match(digest):
            raise ValidationError(f"Malformed artifact digest: {digest!r}")

        with self._lock:
            existing = self._store.load_artifact(tag)
            if existing is not None:
                if existing.digest != digest:
                    raise ImmutabilityViolation(
                        f"Tag {tag!r} is already published as {existing.digest}; "
                        f"refusing {digest}"
                    )
                logger.debug("Artifact %s already published, no-op", tag)
                return existing

            registered = self._registry.exists(tag)
            if registered is not None and registered != digest:
                raise ImmutabilityViolation(
                    f"Registry already binds {tag!r} to {registered}; refusing {digest}"
                )

            artifact = Artifact(
                name=name,
                tag=tag,
                digest=digest,
                metadata=dict(metadata),
                registry_location=self._registry.location,
            )
            self.validate_metadata(artifact)

            self._registry.publish(tag, digest, artifact.metadata)
            published = artifact.model_copy(
                update={"state": ArtifactState.PUBLISHED, "published_at": self._clock()}
            )
            self._store.save_artifact(published)

        logger.info("Published %s", published.reference)
        return published

    def validate_metadata(self, artifact: Artifact) -> None:
        """Raise ``MissingMetadataError`` unless every required field is usable."""
        missing = [
            field
            for field in REQUIRED_METADATA_FIELDS
            if artifact.metadata.get(field) in (None, "")
        ]
        commit = artifact.metadata.get("source_commit")
        if commit and not is_valid_commit_sha(str(commit), short_min=self._short_min):
            missing.append("source_commit (not a valid commit SHA)")
        if missing:
            raise MissingMetadataError(missing)

    # ------------------------------------------------------------------
    # Queries and lifecycle
    # ------------------------------------------------------------------

    def get(self, tag: str) -> Artifact | None:
        return self._store.load_artifact(tag)

    def require(self, tag: str) -> Artifact:
        """Like ``get`` but raises ``ValidationError`` for an unknown tag."""
        artifact = self._store.load_artifact(tag)
        if artifact is None:
            raise ValidationError(f"Unknown artifact tag: {tag!r}")
        return artifact

    def record_scan(self, report: ScanReport) -> ScanReport:
        """Store *report* as the latest scan for its artifact."""
        artifact = self.require(report.tag)
        if artifact.digest != report.digest:
            raise ValidationError(
                f"Scan digest {report.digest} does not match artifact {artifact.reference}"
            )
        self._store.save_scan(report)
        logger.info(
            "Scan recorded for %s: critical=%d high=%d", report.tag, report.critical, report.high
        )
        return report

    def latest_scan(self, tag: str) -> ScanReport | None:
        return self._store.load_scan(tag)

    def mark_deployed(self, tag: str, environment: str) -> Artifact:
        with self._lock:
            artifact = self.require(tag)
            if environment in artifact.deployed_environments:
                return artifact
            updated = artifact.model_copy(
                update={
                    "deployed_environments": [*artifact.deployed_environments, environment]
                }
            )
            self._store.save_artifact(updated)
        return updated

    def archive_expired(
        self, retention: timedelta, *, keep: frozenset[str] = frozenset()
    ) -> list[str]:
        """Archive published artifacts older than *retention*.

        Tags in *keep* (typically those currently deployed somewhere) are
        never archived.  Returns the archived tags.
        """
        cutoff = self._clock() - retention
        archived: list[str] = []
        with self._lock:
            for artifact in self._store.list_artifacts():
                if artifact.state != ArtifactState.PUBLISHED or artifact.tag in keep:
                    continue
                if artifact.published_at is None or artifact.published_at >= cutoff:
                    continue
                self._store.save_artifact(
                    artifact.model_copy(update={"state": ArtifactState.ARCHIVED})
                )
                archived.append(artifact.tag)
        if archived:
            logger.info("Archived %d artifact(s): %s", len(archived), ", ".join(archived))
        return archived
