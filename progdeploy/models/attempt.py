"""Deployment attempt aggregate and its terminal outcome."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from progdeploy.models.accounts import BufferHandle
from progdeploy.models.artifacts import Artifact
from progdeploy.models.phases import DeployPhase


def new_attempt_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"pd-{ts}-{uuid.uuid4().hex[:6]}"


class DeploymentAttempt(BaseModel):
    """Mutable state of one orchestration attempt.

    Owns every buffer it creates; none are shared with other attempts.
    """

    attempt_id: str = Field(default_factory=new_attempt_id)
    program_id: str
    artifact: Artifact | None = None
    buffers: list[BufferHandle] = Field(default_factory=list)
    phase: DeployPhase = DeployPhase.BUILDING
    retry_count: int = 0
    extended_bytes: int = 0
    size_remediations: int = 0
    cleanup_warnings: list[str] = Field(default_factory=list)
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def active_buffer(self) -> BufferHandle | None:
        """The single buffer currently open for writing, if any."""
        for handle in self.buffers:
            if handle.is_open:
                return handle
        return None


class DeployOutcome(BaseModel):
    """Terminal report of a deployment attempt."""

    model_config = ConfigDict(frozen=True)

    attempt_id: str
    program_id: str
    phase: DeployPhase
    artifact_hash: str = ""
    artifact_size: int = 0
    error_kind: str | None = None
    error_message: str | None = None
    exit_code: int = 0
    requires_investigation: bool = False
    retry_count: int = 0
    buffers_created: int = 0
    buffers_closed: int = 0
    buffers_consumed: int = 0
    extended_bytes: int = 0
    size_remediations: int = 0
    cleanup_warnings: list[str] = []
    finished_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def buffers_leaked(self) -> int:
        return self.buffers_created - self.buffers_closed - self.buffers_consumed

    @property
    def succeeded(self) -> bool:
        return self.phase == DeployPhase.VERIFIED

    def raise_for_failure(self) -> None:
        """Re-raise the classified error of a failed or cancelled attempt."""
        if self.succeeded:
            return
        from progdeploy.core.errors import error_from_kind

        raise error_from_kind(self.error_kind, self.error_message or "")
