"""Tests for StatusProjection — pure read-only view over the DeployLedger.

Verifies that:
1. Snapshots re-derive every field from ledger entries.
2. Program history is ordered oldest first.
3. Chain validity is checked.
"""

from __future__ import annotations

import sqlite3

import pytest

from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.models.ledger import LedgerEvent
from progdeploy.models.phases import DeployPhase
from progdeploy.monitor.projection import StatusProjection


def _record_attempt(ledger: DeployLedger, attempt_id: str, program_id: str, final: str) -> None:
    ledger.record(attempt_id, program_id, LedgerEvent.PHASE, transition="->building")
    ledger.record(
        attempt_id, program_id, LedgerEvent.BUFFER_CREATED,
        account_id=f"{attempt_id}-buf", detail={"capacity": 100},
    )
    ledger.record(
        attempt_id, program_id, LedgerEvent.PHASE,
        transition="building->staged", artifact_hash="sha256:aa",
    )
    ledger.record(attempt_id, program_id, LedgerEvent.RETRY, detail={"attempt": 1})
    ledger.record(attempt_id, program_id, LedgerEvent.EXTENDED, detail={"extra_bytes": 250})
    if final == "verified":
        ledger.record(
            attempt_id, program_id, LedgerEvent.BUFFER_CONSUMED, account_id=f"{attempt_id}-buf"
        )
        for transition in ("staged->size_verified", "size_verified->activated", "activated->verified"):
            ledger.record(attempt_id, program_id, LedgerEvent.PHASE, transition=transition)
    else:
        ledger.record(
            attempt_id, program_id, LedgerEvent.PHASE,
            transition="staged->failed", detail={"reason": "stage_error"},
        )


class TestSnapshot:
    def test_fields_derive_from_entries(self, ledger: DeployLedger):
        _record_attempt(ledger, "a1", "Prog", "verified")
        snap = StatusProjection(ledger).snapshot("a1")
        assert snap.phase == DeployPhase.VERIFIED
        assert snap.is_terminal
        assert snap.artifact_hash == "sha256:aa"
        assert [s.phase for s in snap.steps][:2] == [DeployPhase.BUILDING, DeployPhase.STAGED]
        assert snap.retry_count == 1
        assert snap.extended_bytes == 250
        assert snap.open_buffers == []
        assert snap.chain_valid

    def test_failed_attempt_keeps_reason_and_open_buffer(self, ledger: DeployLedger):
        _record_attempt(ledger, "a1", "Prog", "failed")
        snap = StatusProjection(ledger).snapshot("a1")
        assert snap.phase == DeployPhase.FAILED
        assert snap.steps[-1].reason == "stage_error"
        assert snap.open_buffers == ["a1-buf"]

    def test_no_cached_state(self, ledger: DeployLedger):
        projection = StatusProjection(ledger)
        ledger.record("a1", "Prog", LedgerEvent.PHASE, transition="->building")
        assert projection.snapshot("a1").phase == DeployPhase.BUILDING
        ledger.record("a1", "Prog", LedgerEvent.PHASE, transition="building->cancelled")
        assert projection.snapshot("a1").phase == DeployPhase.CANCELLED

    def test_tampered_chain_reported(self, ledger: DeployLedger):
        _record_attempt(ledger, "a1", "Prog", "verified")
        with sqlite3.connect(str(ledger.db_path)) as conn:
            conn.execute(
                "UPDATE deploy_ledger SET artifact_hash = 'sha256:evil' "
                "WHERE attempt_id = 'a1' AND transition = 'building->staged'"
            )
        assert StatusProjection(ledger).snapshot("a1").chain_valid is False


class TestProgramStatus:
    def test_attempts_oldest_first(self, ledger: DeployLedger):
        _record_attempt(ledger, "a1", "Prog", "verified")
        _record_attempt(ledger, "a2", "Prog", "failed")
        _record_attempt(ledger, "b1", "Other", "verified")
        status = StatusProjection(ledger).program_status("Prog")
        assert [s.attempt_id for s in status.attempts] == ["a1", "a2"]
        assert status.latest.attempt_id == "a2"
        assert status.last_verified.attempt_id == "a1"
        assert status.on_chain is None

    def test_unknown_program_is_empty(self, ledger: DeployLedger):
        status = StatusProjection(ledger).program_status("Nobody")
        assert status.attempts == []
        assert status.latest is None
        assert status.last_verified is None

    def test_open_buffers_passthrough(self, ledger: DeployLedger):
        _record_attempt(ledger, "a1", "Prog", "failed")
        assert [b.address for b in StatusProjection(ledger).open_buffers()] == ["a1-buf"]


def test_unknown_attempt_raises(ledger: DeployLedger):
    with pytest.raises(KeyError):
        StatusProjection(ledger).snapshot("missing")
