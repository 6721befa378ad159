"""JSON-RPC 2.0 ChainGateway over HTTP(S).

Read calls use the cluster's standard ``getAccountInfo`` and
``getSignatureStatuses`` methods. Mutating calls are sent to the deploy
relay methods named in ``RelayMethods``; the relay holds the signing
keypair, so this client never touches key material.

Error classification
--------------------
- HTTP 429 / 5xx, connection errors, and timeouts: transient.
- JSON-RPC node-health and slot-lag codes: transient.
- Preflight simulation failures (``-32002``): classified from the
  structured transaction error they carry.
- Everything else: permanent.
"""

from __future__ import annotations

import base64
import itertools
import logging
import threading
from typing import Any

import requests
from pydantic import BaseModel, ConfigDict

from progdeploy.bridge.gateway import classify_transaction_error
from progdeploy.core.errors import AccountNotFoundError, RpcError
from progdeploy.models.accounts import (
    AccountInfo,
    SignatureState,
    SignatureStatus,
    TxReceipt,
)

logger = logging.getLogger(__name__)

CLUSTER_URLS: dict[str, str] = {
    "localnet": "http://127.0.0.1:8899",
    "devnet": "https://api.devnet.solana.com",
    "testnet": "https://api.testnet.solana.com",
    "mainnet": "https://api.mainnet-beta.solana.com",
    "mainnet-beta": "https://api.mainnet-beta.solana.com",
}

TRANSIENT_HTTP_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

# -32004 block not available, -32005 node unhealthy, -32007 slot skipped,
# -32014 block status not yet available, -32016 min context slot not reached
TRANSIENT_RPC_CODES: frozenset[int] = frozenset({-32004, -32005, -32007, -32014, -32016})

PREFLIGHT_FAILURE_CODE = -32002


def resolve_cluster_url(cluster: str) -> str:
    """Resolve a cluster moniker (``devnet``) or pass a URL through."""
    return CLUSTER_URLS.get(cluster.strip().lower(), cluster)


class RelayMethods(BaseModel):
    """JSON-RPC method names for the mutating deploy operations."""

    model_config = ConfigDict(frozen=True)

    create_account: str = "createBuffer"
    write_chunk: str = "writeBuffer"
    activate_program: str = "deployFromBuffer"
    extend_program: str = "extendProgram"
    close_account: str = "closeAccount"


class JsonRpcChainGateway:
    """ChainGateway backed by a JSON-RPC endpoint.

    Parameters
    ----------
    url:
        Cluster URL or moniker (``localnet``, ``devnet``, ``mainnet``...).
    timeout_seconds:
        Per-call HTTP timeout. Timeouts apply to each request, never to
        a whole deployment.
    commitment:
        Commitment level a signature must reach to count as confirmed.
    methods:
        Relay method names for mutating calls.
    session:
        Optional pre-configured ``requests.Session`` (headers, auth, TLS).
    """

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 30.0,
        commitment: str = "confirmed",
        methods: RelayMethods | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.url = resolve_cluster_url(url)
        self._timeout = timeout_seconds
        self._commitment = commitment
        self._methods = methods or RelayMethods()
        self._session = session or requests.Session()
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def _request(self, method: str, params: list[Any]) -> Any:
        """POST one JSON-RPC request and return its ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": method,
            "params": params,
        }
        try:
            resp = self._session.post(self.url, json=payload, timeout=self._timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise RpcError(f"{method}: transport error: {exc}", transient=True) from exc
        except requests.RequestException as exc:
            raise RpcError(f"{method}: request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise RpcError(
                f"{method}: HTTP {resp.status_code} {resp.reason}",
                transient=resp.status_code in TRANSIENT_HTTP_STATUSES,
                code=resp.status_code,
            )

        try:
            body = resp.json()
        except ValueError as exc:
            raise RpcError(f"{method}: malformed JSON response") from exc

        if not isinstance(body, dict):
            raise RpcError(f"{method}: unexpected response body")
        error = body.get("error")
        if error is not None:
            raise self._classify_rpc_error(method, error)
        return body.get("result")

    @staticmethod
    def _classify_rpc_error(method: str, error: Any) -> RpcError:
        if not isinstance(error, dict):
            return RpcError(f"{method}: RPC error: {error}")
        code = error.get("code")
        message = error.get("message", "")
        data = error.get("data")
        if code == PREFLIGHT_FAILURE_CODE and isinstance(data, dict) and data.get("err"):
            classified = classify_transaction_error(data["err"])
            classified.code = code
            return classified
        return RpcError(
            f"{method}: RPC error {code}: {message}",
            transient=code in TRANSIENT_RPC_CODES,
            code=code,
            data=data,
        )

    def _submit(self, method: str, params: list[Any]) -> TxReceipt:
        result = self._request(method, params)
        if isinstance(result, str):
            return TxReceipt(signature=result)
        if isinstance(result, dict) and "signature" in result:
            return TxReceipt(
                signature=result["signature"],
                account_id=result.get("account"),
            )
        raise RpcError(f"{method}: unexpected result {result!r}")

    # ------------------------------------------------------------------
    # ChainGateway
    # ------------------------------------------------------------------

    def create_account(self, size: int, authority: str) -> TxReceipt:
        receipt = self._submit(
            self._methods.create_account, [size, {"authority": authority}]
        )
        if not receipt.account_id:
            raise RpcError(
                f"{self._methods.create_account}: response carried no account id"
            )
        logger.debug("create_account: %d bytes -> %s", size, receipt.account_id)
        return receipt

    def write_chunk(self, account_id: str, offset: int, data: bytes) -> TxReceipt:
        encoded = base64.b64encode(data).decode("ascii")
        return self._submit(
            self._methods.write_chunk,
            [account_id, offset, encoded, {"encoding": "base64"}],
        )

    def activate_program(self, program_id: str, buffer_id: str) -> TxReceipt:
        return self._submit(self._methods.activate_program, [program_id, buffer_id])

    def extend_program(self, program_id: str, extra_bytes: int) -> TxReceipt:
        return self._submit(self._methods.extend_program, [program_id, extra_bytes])

    def close_account(self, account_id: str) -> TxReceipt:
        return self._submit(self._methods.close_account, [account_id])

    def get_account_info(self, account_id: str) -> AccountInfo:
        result = self._request(
            "getAccountInfo",
            [account_id, {"encoding": "base64", "commitment": self._commitment}],
        )
        value = result.get("value") if isinstance(result, dict) else None
        if value is None:
            raise AccountNotFoundError(f"Account not found: {account_id}")
        return AccountInfo(
            address=account_id,
            exists=True,
            capacity=self._capacity_of(value),
            authority=value.get("authority"),
            content_hash=value.get("contentHash"),
            executable=bool(value.get("executable", False)),
        )

    @staticmethod
    def _capacity_of(value: dict[str, Any]) -> int:
        space = value.get("space")
        if isinstance(space, int):
            return space
        data = value.get("data")
        if isinstance(data, list) and data:
            data = data[0]
        if isinstance(data, str):
            return len(base64.b64decode(data))
        return 0

    def get_signature_status(self, signature: str) -> SignatureStatus:
        result = self._request(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        entries = result.get("value") if isinstance(result, dict) else None
        entry = entries[0] if isinstance(entries, list) and entries else None
        if not isinstance(entry, dict):
            return SignatureStatus(signature=signature)
        if entry.get("err") is not None:
            return SignatureStatus(
                signature=signature,
                state=SignatureState.FAILED,
                error=entry["err"],
            )
        if self._commitment_satisfied(entry.get("confirmationStatus")):
            return SignatureStatus(signature=signature, state=SignatureState.CONFIRMED)
        return SignatureStatus(signature=signature)

    def _commitment_satisfied(self, status: str | None) -> bool:
        if self._commitment == "processed":
            return status in {"processed", "confirmed", "finalized"}
        if self._commitment == "confirmed":
            return status in {"confirmed", "finalized"}
        return status == "finalized"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> JsonRpcChainGateway:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"JsonRpcChainGateway(url={self.url!r}, commitment={self._commitment!r})"
