"""Tests for DeployOrchestrator — phase sequencing, failure classes, cleanup."""

from __future__ import annotations

import sys

import pytest

from conftest import FlakyWriteGateway, StaleCapacityGateway, WrongHashGateway
from progdeploy.bridge.memory_gateway import InMemoryChainGateway
from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.core.errors import (
    AccountDataTooSmallError,
    RpcError,
    VerificationMismatch,
)
from progdeploy.core.hasher import content_hash
from progdeploy.models.accounts import TxReceipt
from progdeploy.models.ledger import LedgerEvent
from progdeploy.models.phases import DeployPhase


class _AlwaysTooSmallGateway(InMemoryChainGateway):
    def activate_program(self, program_id: str, buffer_id: str) -> TxReceipt:
        raise AccountDataTooSmallError("account data too small")


class _RejectingActivationGateway(InMemoryChainGateway):
    def activate_program(self, program_id: str, buffer_id: str) -> TxReceipt:
        raise RpcError("upgrade authority mismatch")


class _LostResponseGateway(InMemoryChainGateway):
    """Activation lands, but the first response is lost in transit."""

    def __init__(self) -> None:
        super().__init__()
        self.lost = False

    def activate_program(self, program_id: str, buffer_id: str) -> TxReceipt:
        receipt = super().activate_program(program_id, buffer_id)
        if not self.lost:
            self.lost = True
            raise RpcError("read timed out", transient=True)
        return receipt


class _CrashingReadGateway(InMemoryChainGateway):
    """Program reads fail with an unclassified exception."""

    def get_account_info(self, account_id: str):
        if account_id.startswith("buf-"):
            return super().get_account_info(account_id)
        raise RuntimeError("gateway crashed")


def _phases(ledger: DeployLedger, attempt_id: str) -> list[str]:
    return [
        e.transition
        for e in ledger.get_attempt_entries(attempt_id)
        if e.event == LedgerEvent.PHASE
    ]


class TestHappyPath:
    def test_first_deploy(self, make_orchestrator, gateway, artifact_file, program_id, ledger):
        path = artifact_file(2000)
        outcome = make_orchestrator(gateway).deploy(path, program_id)

        assert outcome.succeeded
        assert outcome.exit_code == 0
        assert outcome.artifact_size == 2000
        assert gateway.get_account_info(program_id).content_hash == outcome.artifact_hash
        assert outcome.buffers_created == 1
        assert outcome.buffers_consumed == 1
        assert outcome.buffers_leaked == 0
        assert gateway.open_accounts() == []
        assert _phases(ledger, outcome.attempt_id) == [
            "->building",
            "building->staged",
            "staged->size_verified",
            "size_verified->activated",
            "activated->verified",
        ]
        assert ledger.verify_chain(outcome.attempt_id)

    def test_upgrade_within_capacity(self, make_orchestrator, gateway, artifact_file, program_id):
        gateway.seed_program(program_id, 5000, data=b"old")
        outcome = make_orchestrator(gateway).deploy(artifact_file(3000), program_id)
        assert outcome.succeeded
        assert gateway.extensions == []

    def test_capacity_only_verification(self, make_orchestrator, artifact_file, program_id):
        gateway = InMemoryChainGateway(report_content_hash=False)
        outcome = make_orchestrator(gateway).deploy(artifact_file(800), program_id)
        assert outcome.succeeded

    def test_transient_write_counts_one_retry(self, make_orchestrator, artifact_file, program_id):
        gateway = FlakyWriteGateway(failures=1)
        outcome = make_orchestrator(gateway).deploy(artifact_file(1000), program_id)
        assert outcome.phase == DeployPhase.VERIFIED
        assert outcome.retry_count == 1

    def test_pending_confirmations_are_awaited(self, make_orchestrator, artifact_file, program_id):
        gateway = InMemoryChainGateway(pending_polls=2)
        assert make_orchestrator(gateway).deploy(artifact_file(700), program_id).succeeded


class TestFailures:
    def test_missing_artifact(self, make_orchestrator, gateway, tmp_dir, program_id):
        outcome = make_orchestrator(gateway).deploy(tmp_dir / "missing.so", program_id)
        assert outcome.phase == DeployPhase.FAILED
        assert outcome.error_kind == "artifact_error"
        assert outcome.exit_code == 10
        assert outcome.buffers_created == 0
        assert gateway.created == []

    def test_build_failure(self, make_orchestrator, gateway, artifact_file, program_id):
        orchestrator = make_orchestrator(
            gateway, build_command=[sys.executable, "-c", "raise SystemExit(2)"]
        )
        outcome = orchestrator.deploy(artifact_file(100), program_id, build=True)
        assert outcome.error_kind == "build_error"
        assert outcome.exit_code == 10
        assert gateway.created == []

    def test_build_requested_without_command(
        self, make_orchestrator, gateway, artifact_file, program_id
    ):
        outcome = make_orchestrator(gateway).deploy(artifact_file(100), program_id, build=True)
        assert outcome.error_kind == "build_error"
        assert "no build_command configured" in outcome.error_message
        assert gateway.created == []

    def test_configured_build_runs_only_when_requested(
        self, make_orchestrator, gateway, artifact_file, program_id, tmp_dir
    ):
        marker = tmp_dir / "built.marker"
        orchestrator = make_orchestrator(
            gateway,
            build_command=[sys.executable, "-c", f"open({str(marker)!r}, 'w').close()"],
        )
        assert orchestrator.deploy(artifact_file(100), program_id).succeeded
        assert not marker.exists()
        assert orchestrator.deploy(
            artifact_file(100, name="again.so"), program_id, build=True
        ).succeeded
        assert marker.exists()

    def test_auto_extend_disabled(self, make_orchestrator, gateway, artifact_file, program_id):
        gateway.seed_program(program_id, 100)
        outcome = make_orchestrator(gateway, auto_extend=False).deploy(
            artifact_file(1000), program_id
        )
        assert outcome.error_kind == "extend_error"
        assert outcome.exit_code == 12
        assert "progdeploy extend" in outcome.error_message
        assert gateway.activations == []
        assert gateway.open_accounts() == []
        assert outcome.buffers_closed == outcome.buffers_created == 1

    def test_activation_rejected(self, make_orchestrator, artifact_file, program_id):
        gateway = _RejectingActivationGateway()
        outcome = make_orchestrator(gateway).deploy(artifact_file(500), program_id)
        assert outcome.error_kind == "activation_error"
        assert outcome.exit_code == 13
        assert gateway.open_accounts() == []

    def test_hash_mismatch(self, make_orchestrator, artifact_file, program_id):
        gateway = WrongHashGateway()
        outcome = make_orchestrator(gateway).deploy(artifact_file(900), program_id)
        assert outcome.phase == DeployPhase.FAILED
        assert outcome.error_kind == "verification_mismatch"
        assert outcome.exit_code == 14
        assert outcome.requires_investigation
        assert outcome.buffers_leaked == 0
        assert gateway.open_accounts() == []
        with pytest.raises(VerificationMismatch):
            outcome.raise_for_failure()


class TestRemediation:
    def test_too_small_on_activation_extends_and_retries(
        self, make_orchestrator, artifact_file, program_id, ledger
    ):
        gateway = StaleCapacityGateway(stale_reads=1, overstate_by=10000)
        gateway.seed_program(program_id, 10000)
        outcome = make_orchestrator(gateway).deploy(artifact_file(20000), program_id)

        assert outcome.succeeded
        assert outcome.size_remediations == 1
        assert outcome.extended_bytes == 10000
        assert outcome.buffers_created == 1
        assert "size_verified->staged" in _phases(ledger, outcome.attempt_id)

    def test_remediation_is_bounded(self, make_orchestrator, artifact_file, program_id):
        gateway = _AlwaysTooSmallGateway()
        gateway.seed_program(program_id, 5000)
        outcome = make_orchestrator(gateway, max_size_remediations=2).deploy(
            artifact_file(1000), program_id
        )
        assert outcome.error_kind == "extend_error"
        assert outcome.size_remediations == 2
        assert gateway.open_accounts() == []

    def test_too_small_with_auto_extend_disabled(
        self, make_orchestrator, artifact_file, program_id
    ):
        gateway = StaleCapacityGateway(stale_reads=1, overstate_by=10000)
        gateway.seed_program(program_id, 1000)
        outcome = make_orchestrator(gateway, auto_extend=False).deploy(
            artifact_file(5000), program_id
        )
        assert outcome.error_kind == "extend_error"
        assert gateway.extensions == []

    def test_lost_activation_response(self, make_orchestrator, artifact_file, program_id):
        gateway = _LostResponseGateway()
        outcome = make_orchestrator(gateway).deploy(artifact_file(1200), program_id)
        assert outcome.succeeded
        assert len(gateway.activations) == 1
        assert outcome.buffers_consumed == 1


class TestOperatorCommands:
    def test_extend(self, make_orchestrator, gateway, program_id):
        gateway.seed_program(program_id, 100)
        assert make_orchestrator(gateway).extend(program_id, 400) == 500

    def test_program_status(self, make_orchestrator, gateway, program_id):
        orchestrator = make_orchestrator(gateway)
        assert orchestrator.program_status(program_id) is None
        gateway.seed_program(program_id, 100, data=b"abc")
        assert orchestrator.program_status(program_id).content_hash == content_hash(b"abc")

    def test_close_leaked_buffers(self, make_orchestrator, gateway, ledger, program_id):
        ledger.record("crashed", program_id, LedgerEvent.BUFFER_CREATED, account_id="buf-x")
        orchestrator = make_orchestrator(gateway)
        assert [b.address for b in orchestrator.open_buffers()] == ["buf-x"]
        assert orchestrator.close_leaked_buffers() == {"buf-x": True}
        assert orchestrator.open_buffers() == []


class TestUnclassifiedFailure:
    def test_cleans_up_records_and_forgets(
        self, make_orchestrator, artifact_file, program_id, ledger
    ):
        gateway = _CrashingReadGateway()
        orchestrator = make_orchestrator(gateway)
        with pytest.raises(RuntimeError, match="gateway crashed"):
            orchestrator.deploy(artifact_file(600), program_id)

        assert gateway.open_accounts() == []
        [attempt_id] = ledger.get_attempt_ids(program_id)
        assert _phases(ledger, attempt_id)[-1].endswith("->failed")
        assert attempt_id not in orchestrator.phases._phases
