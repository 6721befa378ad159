"""Deterministic phase state machine for deployment attempts.

Enforces:
- Valid phase transitions only (VALID_TRANSITIONS table)
- Terminal phases have no way out
- Every transition recorded in the deployment ledger
"""

from __future__ import annotations

import logging
import threading

from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.models.ledger import LedgerEntry, LedgerEvent
from progdeploy.models.phases import (
    TERMINAL_PHASES,
    VALID_TRANSITIONS,
    DeployPhase,
)

logger = logging.getLogger(__name__)


class InvalidTransitionError(RuntimeError):
    """Raised when a requested phase transition is not valid."""


class PhaseMachine:
    """Tracks the phase of every attempt and records transitions.

    Parameters
    ----------
    ledger:
        The deployment ledger to record transitions into.
    """

    def __init__(self, ledger: DeployLedger) -> None:
        self._ledger = ledger
        self._lock = threading.Lock()
        # attempt_id -> (program_id, phase)
        self._phases: dict[str, tuple[str, DeployPhase]] = {}

    # ------------------------------------------------------------------
    # State management
    # ------------------------------------------------------------------

    def begin(self, attempt_id: str, program_id: str, artifact_hash: str = "") -> None:
        """Register a new attempt in BUILDING."""
        with self._lock:
            if attempt_id in self._phases:
                raise InvalidTransitionError(f"Attempt {attempt_id} already started")
            self._phases[attempt_id] = (program_id, DeployPhase.BUILDING)
        self._ledger.record(
            attempt_id,
            program_id,
            LedgerEvent.PHASE,
            transition=f"->{DeployPhase.BUILDING.value}",
            artifact_hash=artifact_hash,
        )

    def current(self, attempt_id: str) -> DeployPhase:
        """Return the current phase of an attempt."""
        with self._lock:
            if attempt_id not in self._phases:
                self._rebuild(attempt_id)
            return self._phases[attempt_id][1]

    def _rebuild(self, attempt_id: str) -> None:
        """Rebuild phase from the ledger (caller holds the lock)."""
        entries = self._ledger.get_attempt_entries(attempt_id)
        if not entries:
            raise KeyError(f"Unknown attempt: {attempt_id}")
        phase = DeployPhase.BUILDING
        for entry in entries:
            if entry.event == LedgerEvent.PHASE and "->" in entry.transition:
                _, to_phase = entry.transition.split("->", 1)
                try:
                    phase = DeployPhase(to_phase)
                except ValueError:
                    logger.warning(
                        "Ignoring unknown phase %r in ledger entry %s",
                        to_phase,
                        entry.entry_id,
                    )
        self._phases[attempt_id] = (entries[0].program_id, phase)

    # ------------------------------------------------------------------
    # Transition logic
    # ------------------------------------------------------------------

    def transition(
        self,
        attempt_id: str,
        target: DeployPhase,
        *,
        reason: str = "",
        artifact_hash: str = "",
        detail: dict | None = None,
    ) -> LedgerEntry:
        """Move an attempt to ``target``, recording it in the ledger.

        Raises ``InvalidTransitionError`` if the move is not allowed.
        """
        with self._lock:
            if attempt_id not in self._phases:
                self._rebuild(attempt_id)
            program_id, current = self._phases[attempt_id]
            allowed = VALID_TRANSITIONS.get(current, set())
            if target not in allowed:
                raise InvalidTransitionError(
                    f"Cannot transition {attempt_id} from {current.value} to "
                    f"{target.value}. Allowed: {sorted(p.value for p in allowed)}"
                )
            self._phases[attempt_id] = (program_id, target)

        payload = dict(detail or {})
        if reason:
            payload["reason"] = reason
        logger.info("Attempt %s: %s -> %s", attempt_id, current.value, target.value)
        return self._ledger.record(
            attempt_id,
            program_id,
            LedgerEvent.PHASE,
            transition=f"{current.value}->{target.value}",
            artifact_hash=artifact_hash,
            detail=payload,
        )

    # ------------------------------------------------------------------
    # Convenience methods
    # ------------------------------------------------------------------

    def is_terminal(self, attempt_id: str) -> bool:
        return self.current(attempt_id) in TERMINAL_PHASES

    def available_transitions(self, attempt_id: str) -> set[DeployPhase]:
        """Return the set of valid target phases for an attempt."""
        return set(VALID_TRANSITIONS.get(self.current(attempt_id), set()))

    def forget(self, attempt_id: str) -> None:
        """Drop a terminated attempt from the in-memory cache."""
        with self._lock:
            self._phases.pop(attempt_id, None)
