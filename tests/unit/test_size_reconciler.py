"""Tests for SizeReconciler — capacity checks, extension, and re-read."""

from __future__ import annotations

import pytest

from progdeploy.bridge.memory_gateway import InMemoryChainGateway
from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.core.errors import ExtendError, RpcError
from progdeploy.core.size_reconciler import SizeReconciler
from progdeploy.models.accounts import TxReceipt
from progdeploy.models.attempt import DeploymentAttempt
from progdeploy.models.config import DeployConfig
from progdeploy.models.ledger import LedgerEvent


class _NoOpExtendGateway(InMemoryChainGateway):
    """Reports extension success without growing the account."""

    def extend_program(self, program_id: str, extra_bytes: int) -> TxReceipt:
        with self._lock:
            self._require(program_id)
            return self._sign()


class _UnconfirmedExtendGateway(InMemoryChainGateway):
    """The first extension's signature never confirms.

    With ``applied=True`` the extension still lands (a lost confirmation);
    with ``applied=False`` the transaction was dropped before landing.
    """

    def __init__(self, applied: bool, **kwargs) -> None:
        super().__init__(**kwargs)
        self._applied = applied
        self.extend_submissions = 0

    def extend_program(self, program_id: str, extra_bytes: int) -> TxReceipt:
        with self._lock:
            self.extend_submissions += 1
            if self.extend_submissions > 1:
                return super().extend_program(program_id, extra_bytes)
            if self._applied:
                super().extend_program(program_id, extra_bytes)
            self._require(program_id)
            return TxReceipt(signature="never-confirms")


class _UnreadableGateway(InMemoryChainGateway):
    def get_account_info(self, account_id: str):
        raise RpcError("forbidden")


class TestEnsureCapacity:
    def test_extends_by_deficit(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        gateway.seed_program(program_id, 10000)
        report = SizeReconciler(gateway, fast_config).ensure_capacity(program_id, 20000)
        assert report.capacity_after >= 20000
        assert report.extended_bytes == 10000
        assert gateway.extensions == [(program_id, 10000)]

    def test_idempotent(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        gateway.seed_program(program_id, 100)
        reconciler = SizeReconciler(gateway, fast_config)
        first = reconciler.ensure_capacity(program_id, 250)
        second = reconciler.ensure_capacity(program_id, 250)
        assert first.extended
        assert not second.extended
        assert second.capacity_after == first.capacity_after
        assert len(gateway.extensions) == 1

    def test_large_enough_is_untouched(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        gateway.seed_program(program_id, 5000)
        report = SizeReconciler(gateway, fast_config).ensure_capacity(program_id, 4000)
        assert report.capacity_after == 5000
        assert gateway.extensions == []

    def test_missing_program_is_first_deploy(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        report = SizeReconciler(gateway, fast_config).ensure_capacity(program_id, 4000)
        assert report.first_deploy
        assert gateway.extensions == []

    def test_min_increment(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        gateway.seed_program(program_id, 100)
        config = fast_config.model_copy(update={"min_extend_increment": 4096})
        report = SizeReconciler(gateway, config).ensure_capacity(program_id, 150)
        assert report.extended_bytes == 4096
        assert report.capacity_after == 4196

    def test_force_extends_even_when_large_enough(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        gateway.seed_program(program_id, 500)
        report = SizeReconciler(gateway, fast_config).ensure_capacity(
            program_id, 400, force=True
        )
        assert report.extended
        assert report.capacity_after > 500

    def test_extension_not_allowed(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        gateway.seed_program(program_id, 100)
        with pytest.raises(ExtendError, match="progdeploy extend"):
            SizeReconciler(gateway, fast_config).ensure_capacity(
                program_id, 300, allow_extend=False
            )
        assert gateway.extensions == []

    def test_extension_that_did_not_take_effect(self, fast_config: DeployConfig, program_id: str):
        gateway = _NoOpExtendGateway()
        gateway.seed_program(program_id, 100)
        with pytest.raises(ExtendError, match="reported success"):
            SizeReconciler(gateway, fast_config).ensure_capacity(program_id, 300)

    def test_unreadable_capacity(self, fast_config: DeployConfig, program_id: str):
        with pytest.raises(ExtendError, match="Cannot read capacity"):
            SizeReconciler(_UnreadableGateway(), fast_config).ensure_capacity(program_id, 300)


class TestExtend:
    def test_extend_records_in_ledger(
        self,
        gateway: InMemoryChainGateway,
        fast_config: DeployConfig,
        ledger: DeployLedger,
        program_id: str,
    ):
        gateway.seed_program(program_id, 100)
        attempt = DeploymentAttempt(program_id=program_id)
        after = SizeReconciler(gateway, fast_config, ledger=ledger).extend(
            program_id, 50, attempt=attempt
        )
        assert after == 150
        assert attempt.extended_bytes == 50
        [entry] = ledger.get_attempt_entries(attempt.attempt_id)
        assert entry.event == LedgerEvent.EXTENDED
        assert entry.detail["capacity_after"] == 150

    def test_non_positive_extension_rejected(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        with pytest.raises(ExtendError):
            SizeReconciler(gateway, fast_config).extend(program_id, 0)

    def test_extend_missing_program(
        self, gateway: InMemoryChainGateway, fast_config: DeployConfig, program_id: str
    ):
        with pytest.raises(ExtendError):
            SizeReconciler(gateway, fast_config).extend(program_id, 10)


class TestUnconfirmedExtension:
    """An extension whose confirmation times out is never applied twice."""

    @pytest.fixture
    def short_confirm(self, fast_config: DeployConfig) -> DeployConfig:
        return fast_config.model_copy(update={"confirm_timeout_seconds": 0.05})

    def test_landed_extension_is_not_resubmitted(
        self, short_confirm: DeployConfig, ledger: DeployLedger, program_id: str
    ):
        gateway = _UnconfirmedExtendGateway(applied=True)
        gateway.seed_program(program_id, 10000)
        attempt = DeploymentAttempt(program_id=program_id)
        report = SizeReconciler(gateway, short_confirm, ledger=ledger).ensure_capacity(
            program_id, 20000, attempt=attempt
        )
        assert gateway.extend_submissions == 1
        assert gateway.extensions == [(program_id, 10000)]
        assert report.capacity_after == 20000
        assert attempt.extended_bytes == 10000
        extended = [
            e for e in ledger.get_attempt_entries(attempt.attempt_id)
            if e.event == LedgerEvent.EXTENDED
        ]
        assert len(extended) == 1

    def test_dropped_extension_is_resubmitted_once(
        self, short_confirm: DeployConfig, program_id: str
    ):
        gateway = _UnconfirmedExtendGateway(applied=False)
        gateway.seed_program(program_id, 10000)
        report = SizeReconciler(gateway, short_confirm).ensure_capacity(program_id, 20000)
        assert gateway.extend_submissions == 2
        assert gateway.extensions == [(program_id, 10000)]
        assert report.capacity_after == 20000

    def test_manual_extend_after_lost_confirmation(
        self, short_confirm: DeployConfig, program_id: str
    ):
        gateway = _UnconfirmedExtendGateway(applied=True)
        gateway.seed_program(program_id, 100)
        assert SizeReconciler(gateway, short_confirm).extend(program_id, 400) == 500
        assert gateway.extend_submissions == 1

    def test_never_landing_extension_fails(self, short_confirm: DeployConfig, program_id: str):
        class _BlackHoleGateway(InMemoryChainGateway):
            def extend_program(self, program_id: str, extra_bytes: int) -> TxReceipt:
                self.extensions.append((program_id, 0))
                return TxReceipt(signature="never-confirms")

        gateway = _BlackHoleGateway()
        gateway.seed_program(program_id, 100)
        config = short_confirm.model_copy(
            update={"retry": short_confirm.retry.model_copy(update={"max_retries": 1})}
        )
        with pytest.raises(ExtendError, match="not confirmed"):
            SizeReconciler(gateway, config).ensure_capacity(program_id, 300)
        assert len(gateway.extensions) == 2
