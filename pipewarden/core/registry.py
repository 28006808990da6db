"""Artifact registry interface and a local SQLite-backed registry.

The registry storage engine is an external collaborator.  Pipewarden only
needs three operations from it: look up the digest bound to a tag, bind a
tag to a digest with metadata, and read that metadata back.  Tags in the
registry are immutable: binding an existing tag to another digest fails.

``LocalRegistry`` is the implementation used for development and tests.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pipewarden.core.errors import ImmutabilityViolation


@runtime_checkable
class ArtifactRegistry(Protocol):
    """What the engine requires of an artifact registry."""

    location: str

    def exists(self, tag: str) -> str | None:
        """Return the digest bound to *tag*, or None."""
        ...

    def publish(self, tag: str, digest: str, metadata: dict[str, Any]) -> None:
        """Bind *tag* to *digest*. Must refuse to rebind an existing tag."""
        ...

    def read_metadata(self, tag: str) -> dict[str, Any] | None:
        ...


_CREATE_TAGS = """
CREATE TABLE IF NOT EXISTS registry_tags (
    tag            TEXT PRIMARY KEY,
    digest         TEXT NOT NULL,
    metadata_json  TEXT NOT NULL DEFAULT '{}'
);
"""


class LocalRegistry:
    """A single-file registry with immutable tags.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    location:
        The registry location recorded on published artifacts.
    """

    def __init__(self, db_path: Path, location: str = "registry.local") -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.location = location
        with self._connect() as conn:
            conn.execute(_CREATE_TAGS)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def exists(self, tag: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT digest FROM registry_tags WHERE tag = ?", (tag,)
            ).fetchone()
        return row[0] if row else None

    def publish(self, tag: str, digest: str, metadata: dict[str, Any]) -> None:
        with self._lock:
            existing = self.exists(tag)
            if existing is not None:
                if existing != digest:
                    raise ImmutabilityViolation(
                        f"Registry tag {tag!r} is bound to {existing}; "
                        f"refusing to rebind to {digest}"
                    )
                return
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO registry_tags (tag, digest, metadata_json) VALUES (?, ?, ?)",
                    (tag, digest, json.dumps(metadata, sort_keys=True, default=str)),
                )
                conn.commit()

    def read_metadata(self, tag: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT metadata_json FROM registry_tags WHERE tag = ?", (tag,)
            ).fetchone()
        return json.loads(row[0]) if row else None
