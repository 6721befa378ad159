"""On-chain account and transaction models seen through the ChainGateway."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AccountInfo(BaseModel):
    """Point-in-time view of an on-chain account.

    ``content_hash`` is ``None`` when the gateway cannot report the hash of
    the executable content; read-back verification then falls back to the
    capacity check alone.
    """

    model_config = ConfigDict(frozen=True)

    address: str
    exists: bool = True
    capacity: int = 0
    authority: str | None = None
    content_hash: str | None = None
    executable: bool = False


class ChunkSpec(BaseModel):
    """One contiguous byte range of an artifact upload."""

    model_config = ConfigDict(frozen=True)

    index: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


class TxReceipt(BaseModel):
    """A submitted transaction. Success is provisional until confirmed."""

    model_config = ConfigDict(frozen=True)

    signature: str
    account_id: str | None = None  # set by create_account


class SignatureState(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SignatureStatus(BaseModel):
    """Confirmation status of a submitted transaction."""

    model_config = ConfigDict(frozen=True)

    signature: str
    state: SignatureState = SignatureState.PENDING
    error: Any = None  # cluster transaction error, e.g. {"InstructionError": [0, "..."]}


class BufferHandle(BaseModel):
    """A transient staging account owned by exactly one deployment attempt.

    ``confirmed_chunks`` maps chunk offset to length for every write whose
    signature has been confirmed. ``consumed`` is set once activation has
    taken ownership of the buffer; a consumed buffer is never closed again.
    """

    address: str
    authority: str
    capacity: int
    attempt_id: str = ""
    confirmed_chunks: dict[int, int] = Field(default_factory=dict)
    consumed: bool = False
    closed: bool = False

    @property
    def fill_cursor(self) -> int:
        """Bytes confirmed written, contiguous from offset 0."""
        cursor = 0
        while cursor in self.confirmed_chunks:
            length = self.confirmed_chunks[cursor]
            if length <= 0:
                break
            cursor += length
        return cursor

    @property
    def is_full(self) -> bool:
        return self.fill_cursor >= self.capacity

    @property
    def is_open(self) -> bool:
        return not (self.closed or self.consumed)


class CapacityReport(BaseModel):
    """Result of a SizeReconciler pass."""

    model_config = ConfigDict(frozen=True)

    program_id: str
    required_bytes: int
    capacity_before: int
    capacity_after: int
    extended_bytes: int = 0
    first_deploy: bool = False

    @property
    def extended(self) -> bool:
        return self.extended_bytes > 0
