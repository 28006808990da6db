"""SQLite-backed persistence for run, artifact, environment and approval state.

The run ledger records *what happened*; the state store holds *what is*:
the current PipelineRun documents, published artifacts, environment
pointers, open approval requests, and the append-only promotion log.
Everything the coordinator needs to resume after a restart lives here.

Environment rows carry a version counter and are written only through
``compare_and_swap_environment``.  Promotion records are insert-only.
Deployment leases give one process at a time the right to deploy to an
environment; they expire so a crashed holder cannot block it forever.
"""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path

from pipewarden.models.artifacts import Artifact, ScanReport
from pipewarden.models.environments import EnvironmentState
from pipewarden.models.promotion import (
    ApprovalRequest,
    ApprovalState,
    PromotionRecord,
)
from pipewarden.models.runs import PipelineRun

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS runs (
        run_id      TEXT PRIMARY KEY,
        status      TEXT NOT NULL,
        payload     TEXT NOT NULL,
        updated_at  TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS artifacts (
        tag         TEXT PRIMARY KEY,
        digest      TEXT NOT NULL,
        payload     TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scans (
        tag         TEXT PRIMARY KEY,
        payload     TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS environments (
        name        TEXT PRIMARY KEY,
        version     INTEGER NOT NULL,
        payload     TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approvals (
        request_id  TEXT PRIMARY KEY,
        run_id      TEXT NOT NULL,
        state       TEXT NOT NULL,
        payload     TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS promotion_records (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        record_id   TEXT NOT NULL UNIQUE,
        run_id      TEXT NOT NULL,
        tag         TEXT NOT NULL,
        target_env  TEXT NOT NULL,
        decision    TEXT NOT NULL,
        payload     TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS environment_leases (
        environment TEXT PRIMARY KEY,
        holder      TEXT NOT NULL,
        expires_at  REAL NOT NULL
    )
    """,
]


class ConcurrentModificationError(RuntimeError):
    """Raised when a compare-and-swap finds a newer version than expected."""


class StateStore:
    """Durable state for the pipeline engine.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.Lock()
        with self._connect() as conn:
            for ddl in _SCHEMA:
                conn.execute(ddl)
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _write(self, sql: str, params: tuple) -> int:
        with self._write_lock, self._connect() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount

    def _read_one(self, sql: str, params: tuple) -> tuple | None:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchone()

    def _read_all(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def save_run(self, run: PipelineRun) -> None:
        self._write(
            """
            INSERT INTO runs (run_id, status, payload, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(run_id) DO UPDATE SET
                status = excluded.status,
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (
                run.run_id,
                run.status.value,
                run.model_dump_json(),
                datetime.now(timezone.utc).isoformat(),
            ),
        )

    def load_run(self, run_id: str) -> PipelineRun | None:
        row = self._read_one("SELECT payload FROM runs WHERE run_id = ?", (run_id,))
        return PipelineRun.model_validate_json(row[0]) if row else None

    def list_runs(self, status: str | None = None) -> list[PipelineRun]:
        if status is None:
            rows = self._read_all("SELECT payload FROM runs ORDER BY updated_at DESC")
        else:
            rows = self._read_all(
                "SELECT payload FROM runs WHERE status = ? ORDER BY updated_at DESC",
                (status,),
            )
        return [PipelineRun.model_validate_json(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Artifacts and scans
    # ------------------------------------------------------------------

    def save_artifact(self, artifact: Artifact) -> None:
        self._write(
            """
            INSERT INTO artifacts (tag, digest, payload) VALUES (?, ?, ?)
            ON CONFLICT(tag) DO UPDATE SET payload = excluded.payload
            WHERE artifacts.digest = excluded.digest
            """,
            (artifact.tag, artifact.digest, artifact.model_dump_json()),
        )

    def load_artifact(self, tag: str) -> Artifact | None:
        row = self._read_one("SELECT payload FROM artifacts WHERE tag = ?", (tag,))
        return Artifact.model_validate_json(row[0]) if row else None

    def list_artifacts(self) -> list[Artifact]:
        rows = self._read_all("SELECT payload FROM artifacts ORDER BY tag")
        return [Artifact.model_validate_json(row[0]) for row in rows]

    def save_scan(self, report: ScanReport) -> None:
        self._write(
            """
            INSERT INTO scans (tag, payload) VALUES (?, ?)
            ON CONFLICT(tag) DO UPDATE SET payload = excluded.payload
            """,
            (report.tag, report.model_dump_json()),
        )

    def load_scan(self, tag: str) -> ScanReport | None:
        row = self._read_one("SELECT payload FROM scans WHERE tag = ?", (tag,))
        return ScanReport.model_validate_json(row[0]) if row else None

    # ------------------------------------------------------------------
    # Environments (versioned, compare-and-swap)
    # ------------------------------------------------------------------

    def load_environment(self, name: str) -> EnvironmentState:
        """Return the environment state; version 0 if never written."""
        row = self._read_one("SELECT payload FROM environments WHERE name = ?", (name,))
        if row is None:
            return EnvironmentState(name=name)
        return EnvironmentState.model_validate_json(row[0])

    def compare_and_swap_environment(
        self, new_state: EnvironmentState, expected_version: int
    ) -> EnvironmentState:
        """Write *new_state* iff the stored version equals *expected_version*.

        The stored version becomes ``expected_version + 1``.  Raises
        ``ConcurrentModificationError`` when another writer got there first.
        """
        stored = new_state.model_copy(update={"version": expected_version + 1})
        payload = stored.model_dump_json()
        if expected_version == 0:
            changed = self._write(
                "INSERT OR IGNORE INTO environments (name, version, payload) VALUES (?, ?, ?)",
                (stored.name, stored.version, payload),
            )
        else:
            changed = self._write(
                "UPDATE environments SET version = ?, payload = ? WHERE name = ? AND version = ?",
                (stored.version, payload, stored.name, expected_version),
            )
        if changed != 1:
            raise ConcurrentModificationError(
                f"Environment {new_state.name!r} changed concurrently "
                f"(expected version {expected_version})."
            )
        return stored

    # ------------------------------------------------------------------
    # Approvals
    # ------------------------------------------------------------------

    def save_approval(self, request: ApprovalRequest) -> None:
        self._write(
            """
            INSERT INTO approvals (request_id, run_id, state, payload) VALUES (?, ?, ?, ?)
            ON CONFLICT(request_id) DO UPDATE SET
                state = excluded.state,
                payload = excluded.payload
            """,
            (request.request_id, request.run_id, request.state.value, request.model_dump_json()),
        )

    def load_approval(self, request_id: str) -> ApprovalRequest | None:
        row = self._read_one(
            "SELECT payload FROM approvals WHERE request_id = ?", (request_id,)
        )
        return ApprovalRequest.model_validate_json(row[0]) if row else None

    def list_approvals(self, state: ApprovalState | None = None) -> list[ApprovalRequest]:
        if state is None:
            rows = self._read_all("SELECT payload FROM approvals")
        else:
            rows = self._read_all(
                "SELECT payload FROM approvals WHERE state = ?", (state.value,)
            )
        return [ApprovalRequest.model_validate_json(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Promotion records (insert-only)
    # ------------------------------------------------------------------

    def append_promotion_record(self, record: PromotionRecord) -> None:
        self._write(
            """
            INSERT INTO promotion_records
                (record_id, run_id, tag, target_env, decision, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.record_id,
                record.run_id,
                record.tag,
                record.target_env,
                record.decision.value,
                record.model_dump_json(),
            ),
        )

    def list_promotion_records(
        self, *, tag: str | None = None, target_env: str | None = None
    ) -> list[PromotionRecord]:
        clauses: list[str] = []
        params: list[str] = []
        if tag is not None:
            clauses.append("tag = ?")
            params.append(tag)
        if target_env is not None:
            clauses.append("target_env = ?")
            params.append(target_env)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._read_all(
            f"SELECT payload FROM promotion_records{where} ORDER BY id ASC", tuple(params)
        )
        return [PromotionRecord.model_validate_json(row[0]) for row in rows]

    # ------------------------------------------------------------------
    # Deployment leases (cross-process mutual exclusion per environment)
    # ------------------------------------------------------------------

    def acquire_lease(
        self, environment: str, holder: str, *, now: float, ttl_seconds: float
    ) -> bool:
        """Take the deployment lease on *environment* for *holder*.

        Succeeds when the lease is free, already held by *holder* (the
        expiry is then extended), or held by someone else but expired.
        The conditional upsert is a single statement, so two processes
        racing for a free lease cannot both win.

        Parameters
        ----------
        now:
            Wall-clock time in epoch seconds.
        ttl_seconds:
            How long the lease stays valid without being released.
        """
        changed = self._write(
            """
            INSERT INTO environment_leases (environment, holder, expires_at) VALUES (?, ?, ?)
            ON CONFLICT(environment) DO UPDATE SET
                holder = excluded.holder,
                expires_at = excluded.expires_at
            WHERE environment_leases.holder = excluded.holder
               OR environment_leases.expires_at <= ?
            """,
            (environment, holder, now + ttl_seconds, now),
        )
        return changed == 1

    def release_lease(self, environment: str, holder: str) -> bool:
        """Drop *holder*'s lease. Returns False if it did not hold one."""
        changed = self._write(
            "DELETE FROM environment_leases WHERE environment = ? AND holder = ?",
            (environment, holder),
        )
        return changed == 1

    def lease_holder(self, environment: str, *, now: float) -> str | None:
        """Return the holder of an unexpired lease on *environment*, if any."""
        row = self._read_one(
            "SELECT holder FROM environment_leases WHERE environment = ? AND expires_at > ?",
            (environment, now),
        )
        return row[0] if row else None
