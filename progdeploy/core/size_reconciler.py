"""SizeReconciler — keep the program account large enough for the artifact.

Activation into an undersized program account fails with "account data
too small". The reconciler checks capacity first and extends the account
by the deficit (or a configured minimum increment, to amortize future
growth). An extension only counts once a fresh read shows the new
capacity; a gateway-reported success that did not take effect is an
``ExtendError``.
"""

from __future__ import annotations

import logging

from progdeploy.bridge.gateway import ChainGateway
from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.core.errors import (
    AccountNotFoundError,
    ConfirmationTimeout,
    DeployCancelled,
    DeployError,
    ExtendError,
)
from progdeploy.core.retry import CancelToken, await_confirmation, call_with_retry
from progdeploy.models.accounts import CapacityReport
from progdeploy.models.attempt import DeploymentAttempt
from progdeploy.models.config import DeployConfig
from progdeploy.models.ledger import LedgerEvent

logger = logging.getLogger(__name__)


class SizeReconciler:
    """Ensures program capacity before activation.

    Parameters
    ----------
    gateway:
        The cluster boundary.
    config:
        Retry policy, timeouts, and ``min_extend_increment``.
    ledger:
        Optional deployment ledger; extensions are recorded in it.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        config: DeployConfig,
        *,
        ledger: DeployLedger | None = None,
    ) -> None:
        self._gateway = gateway
        self._config = config
        self._ledger = ledger

    def _capacity(self, program_id: str, cancel: CancelToken | None) -> int:
        info = call_with_retry(
            lambda: self._gateway.get_account_info(program_id),
            self._config.retry,
            cancel=cancel,
            description=f"read {program_id}",
        )
        return info.capacity

    def extension_for(self, capacity: int, required_bytes: int, *, force: bool = False) -> int:
        """Bytes to add so that ``capacity`` covers ``required_bytes``."""
        deficit = max(required_bytes - capacity, 0)
        if deficit == 0 and not force:
            return 0
        return max(deficit, self._config.min_extend_increment, 1 if force else 0)

    def ensure_capacity(
        self,
        program_id: str,
        required_bytes: int,
        *,
        force: bool = False,
        allow_extend: bool = True,
        attempt: DeploymentAttempt | None = None,
        cancel: CancelToken | None = None,
    ) -> CapacityReport:
        """Make ``program_id`` hold at least ``required_bytes``.

        Parameters
        ----------
        force:
            Extend even when the reported capacity already looks large
            enough. Used after the cluster rejected activation as too
            small, which means the reported capacity cannot be trusted.
        allow_extend:
            When False, a shortfall raises ``ExtendError`` naming the
            extension the operator has to run.

        Raises
        ------
        ExtendError
            Extension failed, or the re-read capacity is still short.
        """
        try:
            before = self._capacity(program_id, cancel)
        except AccountNotFoundError:
            logger.info(
                "Program %s does not exist yet; first activation sizes it.", program_id
            )
            return CapacityReport(
                program_id=program_id,
                required_bytes=required_bytes,
                capacity_before=0,
                capacity_after=0,
                first_deploy=True,
            )
        except DeployCancelled:
            raise
        except DeployError as exc:
            raise ExtendError(f"Cannot read capacity of {program_id}: {exc}") from exc

        extra = self.extension_for(before, required_bytes, force=force)
        if extra == 0:
            logger.debug(
                "Program %s holds %d bytes, %d required; no extension needed",
                program_id,
                before,
                required_bytes,
            )
            return CapacityReport(
                program_id=program_id,
                required_bytes=required_bytes,
                capacity_before=before,
                capacity_after=before,
            )

        if not allow_extend:
            raise ExtendError(
                f"Program {program_id} holds {before} bytes, {required_bytes} required; "
                f"run `progdeploy extend {program_id} {extra}`"
            )

        after = self._extend(program_id, extra, before, attempt=attempt, cancel=cancel)
        if after < required_bytes or after < before + extra:
            raise ExtendError(
                f"Extension of {program_id} by {extra} bytes reported success but "
                f"capacity is {after} (was {before}, need {required_bytes})"
            )
        return CapacityReport(
            program_id=program_id,
            required_bytes=required_bytes,
            capacity_before=before,
            capacity_after=after,
            extended_bytes=extra,
        )

    def extend(
        self,
        program_id: str,
        extra_bytes: int,
        *,
        attempt: DeploymentAttempt | None = None,
        cancel: CancelToken | None = None,
    ) -> int:
        """Extend by ``extra_bytes``, confirm, and return the re-read capacity."""
        if extra_bytes <= 0:
            raise ExtendError(f"Extension must be positive, got {extra_bytes}")
        try:
            before = self._capacity(program_id, cancel)
        except DeployCancelled:
            raise
        except DeployError as exc:
            raise ExtendError(f"Extension of {program_id} failed: {exc}") from exc
        return self._extend(program_id, extra_bytes, before, attempt=attempt, cancel=cancel)

    def _extend(
        self,
        program_id: str,
        extra_bytes: int,
        before: int,
        *,
        attempt: DeploymentAttempt | None,
        cancel: CancelToken | None,
    ) -> int:
        """Submit one extension of a program known to hold ``before`` bytes.

        Extensions are not idempotent, so only the submission is retried.
        When a confirmation times out the capacity is re-read; the
        extension is resubmitted only if it has not landed.
        """
        target = before + extra_bytes
        submissions = self._config.retry.max_retries + 1
        logger.info("Extending %s by %d bytes", program_id, extra_bytes)
        try:
            for submission in range(1, submissions + 1):
                receipt = call_with_retry(
                    lambda: self._gateway.extend_program(program_id, extra_bytes),
                    self._config.retry,
                    cancel=cancel,
                    description=f"extend {program_id}",
                )
                try:
                    await_confirmation(
                        self._gateway,
                        receipt,
                        timeout_seconds=self._config.confirm_timeout_seconds,
                        poll_interval_seconds=self._config.poll_interval_seconds,
                        cancel=cancel,
                    )
                    break
                except ConfirmationTimeout:
                    if self._capacity(program_id, cancel) >= target:
                        logger.warning(
                            "Extension %s of %s unconfirmed but capacity shows it landed",
                            receipt.signature,
                            program_id,
                        )
                        break
                    if submission == submissions:
                        raise
                    logger.warning(
                        "Extension %s of %s unconfirmed and not applied; resubmitting (%d/%d)",
                        receipt.signature,
                        program_id,
                        submission + 1,
                        submissions,
                    )
            after = self._capacity(program_id, cancel)
        except DeployCancelled:
            raise
        except DeployError as exc:
            raise ExtendError(f"Extension of {program_id} failed: {exc}") from exc

        if attempt is not None:
            attempt.extended_bytes += extra_bytes
        if self._ledger is not None:
            self._ledger.record(
                attempt.attempt_id if attempt else "manual-extend",
                program_id,
                LedgerEvent.EXTENDED,
                account_id=program_id,
                detail={"extra_bytes": extra_bytes, "capacity_after": after},
            )
        return after
