"""Deployment phase models — deterministic transitions."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class DeployPhase(str, Enum):
    """Phase of a single deployment attempt."""

    BUILDING = "building"
    STAGED = "staged"
    SIZE_VERIFIED = "size_verified"
    ACTIVATED = "activated"
    VERIFIED = "verified"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES: frozenset[DeployPhase] = frozenset(
    {DeployPhase.VERIFIED, DeployPhase.FAILED, DeployPhase.CANCELLED}
)

# Valid phase transitions, enforced by PhaseMachine.
# SIZE_VERIFIED -> STAGED is the "account data too small" remediation edge.
VALID_TRANSITIONS: dict[DeployPhase, set[DeployPhase]] = {
    DeployPhase.BUILDING: {
        DeployPhase.STAGED, DeployPhase.FAILED, DeployPhase.CANCELLED,
    },
    DeployPhase.STAGED: {
        DeployPhase.SIZE_VERIFIED, DeployPhase.FAILED, DeployPhase.CANCELLED,
    },
    DeployPhase.SIZE_VERIFIED: {
        DeployPhase.ACTIVATED,
        DeployPhase.STAGED,
        DeployPhase.FAILED,
        DeployPhase.CANCELLED,
    },
    DeployPhase.ACTIVATED: {
        DeployPhase.VERIFIED, DeployPhase.FAILED, DeployPhase.CANCELLED,
    },
    DeployPhase.VERIFIED: set(),  # terminal
    DeployPhase.FAILED: set(),  # terminal
    DeployPhase.CANCELLED: set(),  # terminal
}


class PhaseTransition(BaseModel):
    """Records a single phase transition for the audit trail."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str
    from_phase: DeployPhase
    to_phase: DeployPhase
    reason: str | None = None
