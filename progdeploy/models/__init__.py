"""progdeploy data models — Pydantic v2, frozen where they are values."""

from progdeploy.models.accounts import (
    AccountInfo,
    BufferHandle,
    CapacityReport,
    ChunkSpec,
    SignatureState,
    SignatureStatus,
    TxReceipt,
)
from progdeploy.models.artifacts import Artifact
from progdeploy.models.attempt import DeploymentAttempt, DeployOutcome
from progdeploy.models.config import DeployConfig, RetryPolicy
from progdeploy.models.ledger import LedgerEntry, LedgerEvent
from progdeploy.models.phases import (
    TERMINAL_PHASES,
    VALID_TRANSITIONS,
    DeployPhase,
    PhaseTransition,
)

__all__ = [
    # artifacts
    "Artifact",
    # accounts
    "AccountInfo",
    "BufferHandle",
    "CapacityReport",
    "ChunkSpec",
    "SignatureState",
    "SignatureStatus",
    "TxReceipt",
    # phases
    "DeployPhase",
    "PhaseTransition",
    "TERMINAL_PHASES",
    "VALID_TRANSITIONS",
    # config
    "DeployConfig",
    "RetryPolicy",
    # ledger
    "LedgerEntry",
    "LedgerEvent",
    # attempt
    "DeploymentAttempt",
    "DeployOutcome",
]
