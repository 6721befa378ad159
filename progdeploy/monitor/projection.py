"""StatusProjection — pure read-only view over the DeployLedger.

The status view is a PROJECTION of the deployment ledger. It does not
compute truth, it displays it. Every call re-reads from the ledger and
the class never maintains its own state.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field

from progdeploy.core.deploy_ledger import DeployLedger, LedgerIntegrityError, OpenBuffer
from progdeploy.models.accounts import AccountInfo
from progdeploy.models.ledger import LedgerEntry, LedgerEvent
from progdeploy.models.phases import TERMINAL_PHASES, DeployPhase


class PhaseStep(BaseModel):
    """One recorded phase transition of an attempt."""

    model_config = ConfigDict(frozen=True)

    phase: DeployPhase
    entered_at: datetime
    reason: str | None = None


class AttemptSnapshot(BaseModel):
    """A frozen, point-in-time snapshot of one deployment attempt.

    Every field is derived by re-reading the ledger.
    """

    model_config = ConfigDict(frozen=True)

    attempt_id: str
    program_id: str
    phase: DeployPhase = DeployPhase.BUILDING
    artifact_hash: str = ""
    steps: list[PhaseStep] = []
    buffers_created: list[str] = []
    buffers_closed: list[str] = []
    buffers_consumed: list[str] = []
    extended_bytes: int = 0
    retry_count: int = 0
    cleanup_warnings: list[str] = []
    chain_valid: bool = True
    last_updated: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def open_buffers(self) -> list[str]:
        """Buffers created and neither closed nor consumed."""
        done = set(self.buffers_closed) | set(self.buffers_consumed)
        return [b for b in self.buffers_created if b not in done]

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES


class ProgramStatus(BaseModel):
    """Ledger history of a program plus, optionally, its on-chain view."""

    model_config = ConfigDict(frozen=True)

    program_id: str
    attempts: list[AttemptSnapshot] = []
    on_chain: AccountInfo | None = None

    @property
    def latest(self) -> AttemptSnapshot | None:
        return self.attempts[-1] if self.attempts else None

    @property
    def last_verified(self) -> AttemptSnapshot | None:
        for snap in reversed(self.attempts):
            if snap.phase == DeployPhase.VERIFIED:
                return snap
        return None


class StatusProjection:
    """Pure read-only projection over the DeployLedger.

    Parameters
    ----------
    ledger:
        The DeployLedger to project from.
    """

    def __init__(self, ledger: DeployLedger) -> None:
        self._ledger = ledger

    def snapshot(self, attempt_id: str) -> AttemptSnapshot:
        """Produce a point-in-time snapshot of one attempt.

        Raises ``KeyError`` if the ledger has no entries for it.
        """
        entries = self._ledger.get_attempt_entries(attempt_id)
        if not entries:
            raise KeyError(f"Unknown attempt: {attempt_id}")
        return self._from_entries(attempt_id, entries)

    def program_status(
        self, program_id: str, *, on_chain: AccountInfo | None = None
    ) -> ProgramStatus:
        """Every attempt recorded for ``program_id``, oldest first."""
        attempts = [
            self.snapshot(attempt_id)
            for attempt_id in reversed(self._ledger.get_attempt_ids(program_id))
        ]
        return ProgramStatus(program_id=program_id, attempts=attempts, on_chain=on_chain)

    def open_buffers(self) -> list[OpenBuffer]:
        return self._ledger.open_buffers()

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def _from_entries(self, attempt_id: str, entries: list[LedgerEntry]) -> AttemptSnapshot:
        phase = DeployPhase.BUILDING
        artifact_hash = ""
        steps: list[PhaseStep] = []
        created: list[str] = []
        closed: list[str] = []
        consumed: list[str] = []
        warnings: list[str] = []
        extended = 0
        retries = 0

        for entry in entries:
            if entry.artifact_hash:
                artifact_hash = entry.artifact_hash
            if entry.event == LedgerEvent.PHASE and "->" in entry.transition:
                _, to_phase = entry.transition.split("->", 1)
                try:
                    phase = DeployPhase(to_phase)
                except ValueError:
                    continue
                steps.append(
                    PhaseStep(
                        phase=phase,
                        entered_at=entry.timestamp_utc,
                        reason=entry.detail.get("reason"),
                    )
                )
            elif entry.event == LedgerEvent.BUFFER_CREATED:
                created.append(entry.account_id)
            elif entry.event == LedgerEvent.BUFFER_CLOSED:
                closed.append(entry.account_id)
            elif entry.event == LedgerEvent.BUFFER_CONSUMED:
                consumed.append(entry.account_id)
            elif entry.event == LedgerEvent.EXTENDED:
                extended += int(entry.detail.get("extra_bytes", 0))
            elif entry.event == LedgerEvent.RETRY:
                retries += 1
            elif entry.event == LedgerEvent.CLEANUP_WARNING:
                warnings.append(f"{entry.account_id}: {entry.detail.get('error', '')}")

        return AttemptSnapshot(
            attempt_id=attempt_id,
            program_id=entries[0].program_id,
            phase=phase,
            artifact_hash=artifact_hash,
            steps=steps,
            buffers_created=created,
            buffers_closed=closed,
            buffers_consumed=consumed,
            extended_bytes=extended,
            retry_count=retries,
            cleanup_warnings=warnings,
            chain_valid=self._check_chain_valid(attempt_id),
            last_updated=entries[-1].timestamp_utc,
        )

    def _check_chain_valid(self, attempt_id: str) -> bool:
        try:
            return self._ledger.verify_chain(attempt_id)
        except LedgerIntegrityError:
            return False
