"""Retry, backoff, confirmation polling, and cooperative cancellation.

Every remote call the orchestrator makes goes through ``call_with_retry``.
Only errors classified transient are retried; everything else propagates
on the first failure. Sleeps wait on the attempt's ``CancelToken`` so a
cancellation interrupts backoff and confirmation polling immediately.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from progdeploy.bridge.gateway import ChainGateway, classify_transaction_error
from progdeploy.core.errors import (
    ConfirmationTimeout,
    DeployCancelled,
    DeployError,
    is_transient,
)
from progdeploy.models.accounts import SignatureState, SignatureStatus, TxReceipt
from progdeploy.models.config import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Caller-side cancellation flag shared with a running attempt."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._children: list[CancelToken] = []
        self._lock = threading.Lock()

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel()

    def child(self) -> CancelToken:
        """A token cancelled with this one, but cancellable on its own."""
        token = CancelToken()
        with self._lock:
            self._children.append(token)
            already = self._event.is_set()
        if already:
            token.cancel()
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise DeployCancelled("Deployment cancelled by caller")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if cancelled meanwhile."""
        return self._event.wait(max(seconds, 0.0))


def interruptible_sleep(seconds: float, cancel: CancelToken | None = None) -> None:
    """Sleep, raising ``DeployCancelled`` if the token fires first."""
    if seconds <= 0:
        if cancel is not None:
            cancel.raise_if_cancelled()
        return
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise DeployCancelled("Deployment cancelled by caller")


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    *,
    cancel: CancelToken | None = None,
    description: str = "remote call",
    on_retry: Callable[[int, DeployError], None] | None = None,
) -> T:
    """Call ``fn`` and retry transient failures with exponential backoff.

    Parameters
    ----------
    fn:
        Zero-argument callable performing one remote operation.
    policy:
        Retry bound and backoff curve.
    cancel:
        Checked before every try and during every backoff sleep.
    description:
        Used in log messages.
    on_retry:
        Called with ``(retry_number, error)`` before each backoff sleep.

    Raises
    ------
    DeployError
        The last error, when it is not transient or retries are exhausted.
    DeployCancelled
        When the token fires.
    """
    retries = 0
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return fn()
        except DeployError as exc:
            if not is_transient(exc) or retries >= policy.max_retries:
                raise
            retries += 1
            delay = policy.delay_for(retries)
            logger.warning(
                "%s failed (%s); retry %d/%d in %.2fs",
                description,
                exc,
                retries,
                policy.max_retries,
                delay,
            )
            if on_retry is not None:
                on_retry(retries, exc)
            interruptible_sleep(delay, cancel)


def await_confirmation(
    gateway: ChainGateway,
    receipt: TxReceipt,
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    cancel: CancelToken | None = None,
) -> SignatureStatus:
    """Poll a submitted transaction until it confirms.

    A gateway-reported submission is only provisional; this is the step
    that makes it real.

    Raises
    ------
    RpcError
        Classified from the transaction error when the cluster reports
        the transaction as failed.
    ConfirmationTimeout
        When the signature is still pending after ``timeout_seconds``.
    """
    deadline = time.monotonic() + timeout_seconds
    while True:
        try:
            status = gateway.get_signature_status(receipt.signature)
        except DeployError as exc:
            if not is_transient(exc):
                raise
            logger.debug(
                "Status poll for %s failed transiently: %s", receipt.signature, exc
            )
        else:
            if status.state == SignatureState.CONFIRMED:
                return status
            if status.state == SignatureState.FAILED:
                raise classify_transaction_error(status.error, receipt.signature)

        if time.monotonic() >= deadline:
            raise ConfirmationTimeout(
                f"Transaction {receipt.signature} not confirmed "
                f"within {timeout_seconds:.1f}s"
            )
        interruptible_sleep(poll_interval_seconds, cancel)
