"""Adversarial tests — ledger tampering and chain integrity.

These tests verify that the Run Ledger detects:
1. Corrupted entry hashes (tampered content)
2. Broken chain links (reordered/deleted entries)
3. Rewritten details of a recorded decision
"""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest

from pipewarden.core.run_ledger import LedgerIntegrityError, RunLedger
from pipewarden.monitor.projection import MonitorProjection


def _tamper(ledger: RunLedger, sql: str, params: tuple) -> None:
    conn = sqlite3.connect(str(ledger._db_path))
    conn.execute(sql, params)
    conn.commit()
    conn.close()


_NTH = "(SELECT id FROM run_ledger WHERE run_id = ? ORDER BY id ASC LIMIT 1 OFFSET ?)"


class TestLedgerTamperDetection:
    """Direct SQLite manipulation to simulate an attacker with DB access."""

    @pytest.fixture
    def seeded_ledger(self, tmp_path: Path) -> tuple[RunLedger, str]:
        """Seed a ledger with 5 entries for a single run."""
        ledger = RunLedger(tmp_path / "ledger.db")
        run_id = "pw-adversarial-001"
        for stage in ("validate", "build", "test", "scan", "deploy:dev"):
            ledger.record(run_id, stage, "pending->running", details={"attempts": 0})
        return ledger, run_id

    def test_corrupted_entry_hash_detected(self, seeded_ledger):
        """Overwrite an entry_hash directly in SQLite. verify_chain must catch it."""
        ledger, run_id = seeded_ledger
        _tamper(
            ledger,
            f"UPDATE run_ledger SET entry_hash = 'TAMPERED' WHERE id = {_NTH}",
            (run_id, 2),
        )
        with pytest.raises(LedgerIntegrityError, match="(Chain broken|Tampered)"):
            ledger.verify_chain(run_id)

    def test_corrupted_event_detected(self, seeded_ledger):
        """Rewrite a transition. Hash recomputation must detect it."""
        ledger, run_id = seeded_ledger
        _tamper(
            ledger,
            f"UPDATE run_ledger SET event = 'running->success' WHERE id = {_NTH}",
            (run_id, 1),
        )
        with pytest.raises(LedgerIntegrityError, match="Tampered"):
            ledger.verify_chain(run_id)

    def test_rewritten_details_detected(self, seeded_ledger):
        """Change the recorded details of an entry, e.g. to forge an approver."""
        ledger, run_id = seeded_ledger
        _tamper(
            ledger,
            f"UPDATE run_ledger SET details_json = ? WHERE id = {_NTH}",
            (json.dumps({"approver": "mallory"}), run_id, 3),
        )
        with pytest.raises(LedgerIntegrityError, match="Tampered"):
            ledger.verify_chain(run_id)

    def test_deleted_entry_breaks_chain(self, seeded_ledger):
        """Delete a middle entry. Chain linkage must fail."""
        ledger, run_id = seeded_ledger
        _tamper(ledger, f"DELETE FROM run_ledger WHERE id = {_NTH}", (run_id, 1))
        with pytest.raises(LedgerIntegrityError, match="Chain broken"):
            ledger.verify_chain(run_id)

    def test_broken_chain_link_detected(self, seeded_ledger):
        """Corrupt a previous_entry_hash link. Chain linkage must fail."""
        ledger, run_id = seeded_ledger
        _tamper(
            ledger,
            f"UPDATE run_ledger SET previous_entry_hash = 'WRONG_LINK' WHERE id = {_NTH}",
            (run_id, 2),
        )
        with pytest.raises(LedgerIntegrityError, match="Chain broken"):
            ledger.verify_chain(run_id)

    def test_tampering_one_run_leaves_others_valid(self, seeded_ledger):
        ledger, run_id = seeded_ledger
        ledger.record("pw-other", "validate", "pending->running")
        _tamper(
            ledger,
            f"UPDATE run_ledger SET entry_hash = 'X' WHERE id = {_NTH}",
            (run_id, 0),
        )
        assert ledger.verify_chain("pw-other") is True

    def test_monitor_reports_broken_chain(self, seeded_ledger):
        """The monitor projection never raises; it flags the chain instead."""
        ledger, run_id = seeded_ledger
        _tamper(
            ledger,
            f"UPDATE run_ledger SET event = 'pending->success' WHERE id = {_NTH}",
            (run_id, 0),
        )
        assert MonitorProjection(ledger).snapshot(run_id).chain_valid is False
