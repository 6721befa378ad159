"""In-memory ChainGateway — a simulated cluster.

Used by ``progdeploy deploy --dry-run`` to rehearse a deployment against
a copy of the target program's current sizing (see ``rehearsal_of``), and
by the test suite. Behaves like the real loader where it matters:

- buffers are sized at creation and reject out-of-range writes,
- activation fails with ``AccountDataTooSmallError`` when the program is
  smaller than the buffer, and consumes the buffer on success,
- a program is created on its first activation,
- signatures can stay pending for a configurable number of polls.

Thread-safe: chunk uploads call it from several worker threads.
"""

from __future__ import annotations

import itertools
import logging
import threading
import uuid

from pydantic import BaseModel

from progdeploy.bridge.gateway import ChainGateway
from progdeploy.core.errors import (
    AccountDataTooSmallError,
    AccountNotFoundError,
    RpcError,
)
from progdeploy.core.hasher import content_hash
from progdeploy.models.accounts import (
    AccountInfo,
    SignatureState,
    SignatureStatus,
    TxReceipt,
)

logger = logging.getLogger(__name__)


class SimAccount(BaseModel):
    address: str
    capacity: int
    authority: str
    is_program: bool = False
    data: bytes = b""
    seeded_hash: str | None = None  # hash reported for seeded programs

    @property
    def content_hash(self) -> str | None:
        if self.seeded_hash is not None:
            return self.seeded_hash
        return content_hash(self.data)


class InMemoryChainGateway:
    """A thread-safe simulated cluster implementing ``ChainGateway``.

    Parameters
    ----------
    pending_polls:
        Number of ``get_signature_status`` polls a new signature reports
        ``pending`` before it confirms.
    report_content_hash:
        When False, ``get_account_info`` reports ``content_hash=None``
        like a gateway that cannot hash executable content.
    """

    def __init__(
        self,
        *,
        pending_polls: int = 0,
        report_content_hash: bool = True,
    ) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[str, SimAccount] = {}
        self._signatures: dict[str, int] = {}  # signature -> remaining pending polls
        self._sig_counter = itertools.count(1)
        self._pending_polls = pending_polls
        self._report_content_hash = report_content_hash

        # Call log, for inspection
        self.created: list[str] = []
        self.closed: list[str] = []
        self.consumed: list[str] = []
        self.writes: list[tuple[str, int, int]] = []  # (account, offset, length)
        self.activations: list[tuple[str, str]] = []  # (program, buffer)
        self.extensions: list[tuple[str, int]] = []  # (program, extra bytes)

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed_program(
        self,
        program_id: str,
        capacity: int,
        *,
        authority: str = "",
        data: bytes = b"",
        reported_hash: str | None = None,
    ) -> None:
        """Create a pre-existing program account."""
        with self._lock:
            self._accounts[program_id] = SimAccount(
                address=program_id,
                capacity=capacity,
                authority=authority,
                is_program=True,
                data=data,
                seeded_hash=reported_hash,
            )

    @classmethod
    def rehearsal_of(cls, gateway: ChainGateway, program_id: str) -> InMemoryChainGateway:
        """Build a simulator mirroring ``program_id``'s sizing on ``gateway``."""
        sim = cls()
        try:
            info = gateway.get_account_info(program_id)
        except AccountNotFoundError:
            logger.info("Rehearsal: %s not found, simulating first deploy.", program_id)
            return sim
        sim.seed_program(
            program_id,
            info.capacity,
            authority=info.authority or "",
            reported_hash=info.content_hash,
        )
        return sim

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def open_accounts(self) -> list[str]:
        """Addresses of buffer accounts that still exist."""
        with self._lock:
            return [a for a, acct in self._accounts.items() if not acct.is_program]

    def account_bytes(self, account_id: str) -> bytes:
        with self._lock:
            return self._require(account_id).data

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _require(self, account_id: str) -> SimAccount:
        acct = self._accounts.get(account_id)
        if acct is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        return acct

    def _sign(self) -> TxReceipt:
        signature = f"sim-sig-{next(self._sig_counter)}"
        self._signatures[signature] = self._pending_polls
        return TxReceipt(signature=signature)

    # ------------------------------------------------------------------
    # ChainGateway
    # ------------------------------------------------------------------

    def create_account(self, size: int, authority: str) -> TxReceipt:
        if size <= 0:
            raise RpcError(f"Cannot create a {size}-byte account")
        with self._lock:
            address = f"buf-{uuid.uuid4().hex[:16]}"
            self._accounts[address] = SimAccount(
                address=address,
                capacity=size,
                authority=authority,
                data=bytes(size),
            )
            self.created.append(address)
            receipt = self._sign()
            return receipt.model_copy(update={"account_id": address})

    def write_chunk(self, account_id: str, offset: int, data: bytes) -> TxReceipt:
        with self._lock:
            acct = self._require(account_id)
            if acct.is_program:
                raise RpcError(f"{account_id} is not a buffer account")
            if offset < 0 or offset + len(data) > acct.capacity:
                raise RpcError(
                    f"Write [{offset}, {offset + len(data)}) outside "
                    f"buffer capacity {acct.capacity}"
                )
            end = offset + len(data)
            acct.data = acct.data[:offset] + data + acct.data[end:]
            self.writes.append((account_id, offset, len(data)))
            return self._sign()

    def activate_program(self, program_id: str, buffer_id: str) -> TxReceipt:
        with self._lock:
            buffer = self._require(buffer_id)
            program = self._accounts.get(program_id)
            if program is None:
                program = SimAccount(
                    address=program_id,
                    capacity=buffer.capacity,
                    authority=buffer.authority,
                    is_program=True,
                )
                self._accounts[program_id] = program
            if program.capacity < buffer.capacity:
                raise AccountDataTooSmallError(
                    f"Program {program_id} holds {program.capacity} bytes, "
                    f"buffer needs {buffer.capacity}",
                    data={"InstructionError": [0, "AccountDataTooSmall"]},
                )
            program.data = buffer.data
            program.seeded_hash = None
            del self._accounts[buffer_id]
            self.consumed.append(buffer_id)
            self.activations.append((program_id, buffer_id))
            return self._sign()

    def extend_program(self, program_id: str, extra_bytes: int) -> TxReceipt:
        if extra_bytes <= 0:
            raise RpcError(f"Cannot extend by {extra_bytes} bytes")
        with self._lock:
            program = self._require(program_id)
            program.capacity += extra_bytes
            self.extensions.append((program_id, extra_bytes))
            return self._sign()

    def get_account_info(self, account_id: str) -> AccountInfo:
        with self._lock:
            acct = self._require(account_id)
            return AccountInfo(
                address=account_id,
                exists=True,
                capacity=acct.capacity,
                authority=acct.authority or None,
                content_hash=acct.content_hash if self._report_content_hash else None,
                executable=acct.is_program,
            )

    def close_account(self, account_id: str) -> TxReceipt:
        with self._lock:
            self._require(account_id)
            del self._accounts[account_id]
            self.closed.append(account_id)
            return self._sign()

    def get_signature_status(self, signature: str) -> SignatureStatus:
        with self._lock:
            remaining = self._signatures.get(signature)
            if remaining is None:
                return SignatureStatus(signature=signature)
            if remaining > 0:
                self._signatures[signature] = remaining - 1
                return SignatureStatus(signature=signature)
            return SignatureStatus(signature=signature, state=SignatureState.CONFIRMED)
