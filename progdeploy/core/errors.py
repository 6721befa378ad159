"""Error taxonomy for deployment attempts.

Transient vs. fatal classification is explicit per error class (and per
``RpcError`` instance), never inferred from message text. Each error
also carries the CLI exit code it maps to.
"""

from __future__ import annotations

from typing import Any


class DeployError(RuntimeError):
    """Base class for every classified deployment failure."""

    kind: str = "deploy_error"
    transient: bool = False
    exit_code: int = 1
    requires_investigation: bool = False


# ---------------------------------------------------------------------------
# Remote boundary
# ---------------------------------------------------------------------------


class RpcError(DeployError):
    """A ChainGateway call failed.

    Parameters
    ----------
    message:
        Human-readable description.
    transient:
        ``True`` for timeouts, rate limits, node lag, or a simulation
        failure the cluster reports as retryable.
    code:
        JSON-RPC error code or HTTP status, when known.
    data:
        Structured error payload from the remote, when known.
    """

    kind = "rpc_error"

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.code = code
        self.data = data


class AccountNotFoundError(RpcError):
    """The queried account does not exist on the cluster."""

    kind = "account_not_found"


class AccountDataTooSmallError(RpcError):
    """The program account is too small for the staged bytecode.

    Never retried blindly — it routes the attempt back to size
    reconciliation.
    """

    kind = "account_data_too_small"


class ConfirmationTimeout(RpcError):
    """A submitted transaction did not confirm within the timeout."""

    kind = "confirmation_timeout"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("transient", True)
        super().__init__(message, **kwargs)


# ---------------------------------------------------------------------------
# Phase failures
# ---------------------------------------------------------------------------


class ArtifactError(DeployError):
    """The artifact file is missing, unreadable, or empty. Never retried."""

    kind = "artifact_error"
    exit_code = 10


class BuildError(ArtifactError):
    """The external build command failed."""

    kind = "build_error"


class StageError(DeployError):
    """Bytecode staging exhausted its retries."""

    kind = "stage_error"
    exit_code = 11


class ExtendError(DeployError):
    """Capacity extension failed or did not take effect."""

    kind = "extend_error"
    exit_code = 12


class ActivationError(DeployError):
    """Activation failed permanently or exhausted its retries."""

    kind = "activation_error"
    exit_code = 13


class VerificationMismatch(DeployError):
    """On-chain content does not match the artifact after activation.

    State has already changed on the cluster, so this needs an operator.
    """

    kind = "verification_mismatch"
    exit_code = 14
    requires_investigation = True


class DeployCancelled(DeployError):
    """The caller cancelled the attempt."""

    kind = "cancelled"
    exit_code = 130


ERROR_KINDS: dict[str, type[DeployError]] = {
    cls.kind: cls
    for cls in (
        DeployError,
        RpcError,
        AccountNotFoundError,
        AccountDataTooSmallError,
        ConfirmationTimeout,
        ArtifactError,
        BuildError,
        StageError,
        ExtendError,
        ActivationError,
        VerificationMismatch,
        DeployCancelled,
    )
}


def error_from_kind(kind: str | None, message: str) -> DeployError:
    """Rebuild a classified error from its recorded kind."""
    cls = ERROR_KINDS.get(kind or "", DeployError)
    return cls(message)


def is_transient(exc: BaseException) -> bool:
    """Whether ``exc`` is worth retrying with backoff."""
    if isinstance(exc, AccountDataTooSmallError):
        return False
    return isinstance(exc, DeployError) and exc.transient
