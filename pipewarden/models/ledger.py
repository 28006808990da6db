"""Run ledger entry model — append-only and hash-chained.

The ledger is the audit trail for every stage transition, promotion
decision, and approval signal.  Entries are:
- Append-only (no UPDATE, no DELETE)
- Hash-chained (each entry links to the previous via SHA-256)
- Scoped to a run_id
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LedgerEntry(BaseModel):
    """A single entry in the append-only run ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    subject: str  # stage id, "promotion:<env>", "approval:<id>", "run"
    event: str  # "pending->running" or a dotted name like "promotion.allowed"
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: dict[str, Any] = {}
    artifact_references: list[str] = []
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed at append time, seals this entry
