"""Shared test fixtures for progdeploy."""

from __future__ import annotations

import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from progdeploy.bridge.memory_gateway import InMemoryChainGateway
from progdeploy.core.artifact_source import ArtifactSource
from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.core.errors import RpcError
from progdeploy.core.hasher import content_hash
from progdeploy.core.orchestrator import DeployOrchestrator
from progdeploy.models.accounts import (
    AccountInfo,
    SignatureState,
    SignatureStatus,
    TxReceipt,
)
from progdeploy.models.artifacts import Artifact
from progdeploy.models.config import DeployConfig, RetryPolicy

PROGRAM_ID = "Prog1111111111111111111111111111111111111111"


# ---------------------------------------------------------------------------
# Fault-injecting gateways
# ---------------------------------------------------------------------------


class FlakyWriteGateway(InMemoryChainGateway):
    """The first ``failures`` chunk writes fail with a transient error."""

    def __init__(self, failures: int = 1, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._failures = failures
        self.write_attempts = 0

    def write_chunk(self, account_id: str, offset: int, data: bytes) -> TxReceipt:
        with self._lock:
            self.write_attempts += 1
            if self._failures > 0:
                self._failures -= 1
                raise RpcError("node is behind", transient=True, code=-32005)
        return super().write_chunk(account_id, offset, data)


class WrongHashGateway(InMemoryChainGateway):
    """Program accounts read back with a content hash that never matches."""

    def get_account_info(self, account_id: str) -> AccountInfo:
        info = super().get_account_info(account_id)
        if info.executable:
            return info.model_copy(update={"content_hash": "sha256:" + "0" * 64})
        return info


class StaleCapacityGateway(InMemoryChainGateway):
    """The first ``stale_reads`` program reads overstate capacity.

    Models a lagging node: size reconciliation sees enough room, the
    cluster then rejects activation as too small.
    """

    def __init__(self, stale_reads: int = 1, overstate_by: int = 0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._stale_reads = stale_reads
        self._overstate_by = overstate_by

    def get_account_info(self, account_id: str) -> AccountInfo:
        info = super().get_account_info(account_id)
        with self._lock:
            if info.executable and self._stale_reads > 0:
                self._stale_reads -= 1
                return info.model_copy(update={"capacity": info.capacity + self._overstate_by})
        return info


class GatedConfirmationGateway(InMemoryChainGateway):
    """The chunk write at ``gated_offset`` stays pending until released."""

    def __init__(self, gated_offset: int = 0, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.gated_offset = gated_offset
        self.gated_signature: str | None = None
        self.polled = threading.Event()
        self.release = threading.Event()

    def write_chunk(self, account_id: str, offset: int, data: bytes) -> TxReceipt:
        receipt = super().write_chunk(account_id, offset, data)
        if offset == self.gated_offset:
            self.gated_signature = receipt.signature
        return receipt

    def get_signature_status(self, signature: str) -> SignatureStatus:
        if signature == self.gated_signature and not self.release.is_set():
            self.polled.set()
            return SignatureStatus(signature=signature, state=SignatureState.PENDING)
        return super().get_signature_status(signature)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def ledger(tmp_dir: Path) -> DeployLedger:
    """Provide a fresh DeployLedger backed by a temp SQLite database."""
    return DeployLedger(tmp_dir / "test_ledger.db")


@pytest.fixture
def fast_config(tmp_dir: Path) -> DeployConfig:
    """A DeployConfig with no backoff delay and near-instant polling."""
    return DeployConfig(
        ledger_db_path=tmp_dir / "test_ledger.db",
        authority="TestAuthority",
        retry=RetryPolicy(max_retries=3, base_delay_seconds=0.0, max_delay_seconds=0.0),
        chunk_size=256,
        upload_concurrency=4,
        confirm_timeout_seconds=5.0,
        poll_interval_seconds=0.001,
    )


@pytest.fixture
def gateway() -> InMemoryChainGateway:
    """Provide an empty simulated cluster."""
    return InMemoryChainGateway()


@pytest.fixture
def program_id() -> str:
    return PROGRAM_ID


@pytest.fixture
def make_artifact() -> Callable[..., Artifact]:
    """Factory fixture: an Artifact of ``size`` deterministic bytes."""

    def _factory(size: int = 2000, seed: int = 7) -> Artifact:
        data = bytes((i * 31 + seed) % 251 for i in range(size))
        return Artifact(
            data=data,
            size_bytes=len(data),
            content_hash=content_hash(data),
        )

    return _factory


@pytest.fixture
def artifact_file(tmp_dir: Path) -> Callable[..., Path]:
    """Factory fixture: write deterministic bytes to a file, return its path."""

    def _factory(size: int = 2000, name: str = "program.so", seed: int = 7) -> Path:
        path = tmp_dir / name
        path.write_bytes(bytes((i * 31 + seed) % 251 for i in range(size)))
        return path

    return _factory


@pytest.fixture
def make_orchestrator(
    fast_config: DeployConfig, ledger: DeployLedger
) -> Callable[..., DeployOrchestrator]:
    """Factory fixture: an orchestrator over ``gateway`` with the fast config."""

    def _factory(gateway: Any, **config_overrides: Any) -> DeployOrchestrator:
        config = fast_config.model_copy(update=config_overrides)
        return DeployOrchestrator(
            gateway, config, ledger=ledger, artifact_source=ArtifactSource()
        )

    return _factory
