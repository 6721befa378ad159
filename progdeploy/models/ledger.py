"""Deployment ledger entry model — append-only, hash-chained.

One entry per phase transition or resource event, scoped to an attempt.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class LedgerEvent(str, Enum):
    PHASE = "phase"
    BUFFER_CREATED = "buffer_created"
    BUFFER_CLOSED = "buffer_closed"
    BUFFER_CONSUMED = "buffer_consumed"
    EXTENDED = "extended"
    RETRY = "retry"
    CLEANUP_WARNING = "cleanup_warning"


class LedgerEntry(BaseModel):
    """A single entry in the deployment ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    attempt_id: str
    program_id: str
    event: LedgerEvent = LedgerEvent.PHASE
    transition: str = ""  # "from_phase->to_phase" for PHASE events
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    artifact_hash: str = ""
    account_id: str = ""  # buffer or program the event concerns
    detail: dict[str, Any] = {}
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
