"""ChainGateway — the boundary between the orchestrator and the cluster.

Everything the deployment core knows about the remote ledger goes through
this protocol. Implementations live beside it:

rpc_gateway
    ``JsonRpcChainGateway`` — JSON-RPC 2.0 over HTTP(S).
memory_gateway
    ``InMemoryChainGateway`` — a simulated cluster for rehearsals and tests.

Mutating calls return a ``TxReceipt`` whose success is provisional until
``get_signature_status`` reports it confirmed. Failures are ``RpcError``
instances with an explicit ``transient`` flag.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from progdeploy.core.errors import AccountDataTooSmallError, RpcError
from progdeploy.models.accounts import AccountInfo, SignatureStatus, TxReceipt

# Transaction-level errors the cluster reports that clear up on resubmission.
TRANSIENT_TRANSACTION_ERRORS: frozenset[str] = frozenset(
    {
        "BlockhashNotFound",
        "ClusterMaintenance",
        "WouldExceedMaxBlockCostLimit",
        "WouldExceedMaxAccountCostLimit",
        "WouldExceedAccountDataBlockLimit",
        "TooManyAccountLocks",
        "AccountInUse",
    }
)

ACCOUNT_DATA_TOO_SMALL = "AccountDataTooSmall"


@runtime_checkable
class ChainGateway(Protocol):
    """Operations the deployment core consumes from the cluster.

    All calls may block on the network and may fail transiently
    (timeout, simulation failure) or permanently (insufficient funds,
    invalid authority).
    """

    def create_account(self, size: int, authority: str) -> TxReceipt:
        """Allocate a buffer account of ``size`` bytes owned by ``authority``."""
        ...

    def write_chunk(self, account_id: str, offset: int, data: bytes) -> TxReceipt:
        """Write ``data`` at ``offset`` in a buffer. Idempotent per offset."""
        ...

    def activate_program(self, program_id: str, buffer_id: str) -> TxReceipt:
        """Swap the buffer's bytecode into the program; consumes the buffer."""
        ...

    def extend_program(self, program_id: str, extra_bytes: int) -> TxReceipt:
        """Grow the program account's capacity by ``extra_bytes``."""
        ...

    def get_account_info(self, account_id: str) -> AccountInfo:
        """Return account state; raise ``AccountNotFoundError`` if absent."""
        ...

    def close_account(self, account_id: str) -> TxReceipt:
        """Close an account and reclaim its balance."""
        ...

    def get_signature_status(self, signature: str) -> SignatureStatus:
        """Return the confirmation status of a submitted transaction."""
        ...


def _instruction_error_name(err: Any) -> str | None:
    """Pull the instruction error name out of ``{"InstructionError": [i, e]}``."""
    if not isinstance(err, dict):
        return None
    detail = err.get("InstructionError")
    if not isinstance(detail, (list, tuple)) or len(detail) != 2:
        return None
    inner = detail[1]
    if isinstance(inner, str):
        return inner
    if isinstance(inner, dict) and inner:
        return next(iter(inner))
    return None


def _transaction_error_name(err: Any) -> str | None:
    if isinstance(err, str):
        return err
    if isinstance(err, dict) and len(err) == 1:
        return next(iter(err))
    return None


def classify_transaction_error(err: Any, signature: str = "") -> RpcError:
    """Map a cluster transaction error to a classified ``RpcError``.

    Classification is structural: it reads the error variant names the
    cluster returns, never the human-readable log text.
    """
    where = f" ({signature})" if signature else ""
    if _instruction_error_name(err) == ACCOUNT_DATA_TOO_SMALL:
        return AccountDataTooSmallError(
            f"Account data too small for instruction{where}", data=err
        )
    name = _transaction_error_name(err)
    transient = name in TRANSIENT_TRANSACTION_ERRORS
    return RpcError(
        f"Transaction failed{where}: {err}", transient=transient, data=err
    )
