"""DeployOrchestrator — the state machine that sequences a deployment.

building -> staged -> size_verified -> activated -> verified

Any non-terminal phase can end in ``failed`` or ``cancelled``. When the
cluster rejects activation with "account data too small" the attempt
goes back to ``staged``, the program account is extended, and the attempt
resumes at staged -> size_verified with the same buffer.

Every buffer the attempt creates is closed before ``deploy`` returns, on
every exit path. Close failures become warnings on the outcome and never
replace the original error.
"""

from __future__ import annotations

import logging
from pathlib import Path

from progdeploy.bridge.gateway import ChainGateway
from progdeploy.core.artifact_source import ArtifactSource
from progdeploy.core.buffer_manager import BufferManager
from progdeploy.core.deploy_ledger import DeployLedger, OpenBuffer
from progdeploy.core.errors import (
    AccountDataTooSmallError,
    AccountNotFoundError,
    ActivationError,
    DeployCancelled,
    DeployError,
    ExtendError,
    VerificationMismatch,
)
from progdeploy.core.phase_machine import PhaseMachine
from progdeploy.core.retry import (
    CancelToken,
    await_confirmation,
    call_with_retry,
    interruptible_sleep,
)
from progdeploy.core.size_reconciler import SizeReconciler
from progdeploy.models.accounts import AccountInfo, BufferHandle, CapacityReport
from progdeploy.models.artifacts import Artifact
from progdeploy.models.attempt import DeploymentAttempt, DeployOutcome
from progdeploy.models.config import DeployConfig
from progdeploy.models.ledger import LedgerEvent
from progdeploy.models.phases import TERMINAL_PHASES, DeployPhase

logger = logging.getLogger(__name__)


class DeployOrchestrator:
    """Top-level deployment pipeline.

    One orchestrator can run several attempts concurrently (one per
    thread, for different programs); each attempt owns its buffers.

    Parameters
    ----------
    gateway:
        The cluster boundary.
    config:
        Immutable deployment configuration. Uses defaults if not provided.
    ledger:
        Deployment ledger. Opened at ``config.ledger_db_path`` if not provided.
    artifact_source:
        Loader for the bytecode file.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        config: DeployConfig | None = None,
        *,
        ledger: DeployLedger | None = None,
        artifact_source: ArtifactSource | None = None,
    ) -> None:
        self.config = config or DeployConfig()
        self.gateway = gateway

        # Core subsystems
        self.ledger = ledger or DeployLedger(self.config.ledger_db_path)
        self.artifacts = artifact_source or ArtifactSource()
        self.buffers = BufferManager(gateway, self.config, ledger=self.ledger)
        self.reconciler = SizeReconciler(gateway, self.config, ledger=self.ledger)
        self.phases = PhaseMachine(self.ledger)

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy(
        self,
        artifact_path: Path | str,
        program_id: str,
        *,
        cancel: CancelToken | None = None,
        build: bool = False,
    ) -> DeployOutcome:
        """Run one deployment attempt to a terminal phase.

        Classified failures and cancellation are reported on the returned
        outcome, not raised; use ``outcome.raise_for_failure()`` to raise.
        Unclassified exceptions (including ``KeyboardInterrupt``) still
        run cleanup and are recorded before they propagate.
        """
        attempt = DeploymentAttempt(program_id=program_id)
        self.phases.begin(attempt.attempt_id, program_id)
        logger.info(
            "Attempt %s: deploying %s to %s", attempt.attempt_id, artifact_path, program_id
        )

        error: DeployError | None = None
        try:
            self._run(attempt, Path(artifact_path), cancel, build)
        except DeployError as exc:
            error = exc
        except BaseException as exc:
            self._cleanup(attempt)
            phase = (
                DeployPhase.CANCELLED
                if isinstance(exc, KeyboardInterrupt)
                else DeployPhase.FAILED
            )
            self._terminate(attempt, phase, repr(exc))
            self.phases.forget(attempt.attempt_id)
            raise
        self._cleanup(attempt)
        return self._finish(attempt, error)

    def _run(
        self,
        attempt: DeploymentAttempt,
        artifact_path: Path,
        cancel: CancelToken | None,
        build: bool,
    ) -> None:
        # building -> staged
        if build:
            self.artifacts.build(self.config.build_command, self.config.build_cwd)
        artifact = self.artifacts.load(artifact_path)
        attempt.artifact = artifact
        self._checkpoint(cancel)

        with self.buffers.staged(artifact, attempt=attempt, cancel=cancel) as handle:
            self._advance(
                attempt,
                DeployPhase.STAGED,
                detail={"buffer": handle.address, "size": artifact.size_bytes},
            )
            self._checkpoint(cancel)

            # staged -> size_verified
            self._reconcile(attempt, artifact, cancel, force=False)

            # size_verified -> activated, with "too small" remediation
            while True:
                self._checkpoint(cancel)
                try:
                    self._activate(attempt, handle, cancel)
                    break
                except AccountDataTooSmallError as exc:
                    self._remediate(attempt, artifact, exc, cancel)

        # activated -> verified
        self._verify(attempt, artifact, cancel)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _reconcile(
        self,
        attempt: DeploymentAttempt,
        artifact: Artifact,
        cancel: CancelToken | None,
        *,
        force: bool,
    ) -> CapacityReport:
        report = self.reconciler.ensure_capacity(
            attempt.program_id,
            artifact.size_bytes,
            force=force,
            allow_extend=self.config.auto_extend,
            attempt=attempt,
            cancel=cancel,
        )
        self._advance(
            attempt,
            DeployPhase.SIZE_VERIFIED,
            detail={
                "capacity": report.capacity_after,
                "required": report.required_bytes,
                "extended": report.extended_bytes,
                "first_deploy": report.first_deploy,
            },
        )
        return report

    def _remediate(
        self,
        attempt: DeploymentAttempt,
        artifact: Artifact,
        exc: AccountDataTooSmallError,
        cancel: CancelToken | None,
    ) -> None:
        if not self.config.auto_extend:
            raise ExtendError(
                f"Activation rejected, program account too small ({exc}); "
                f"run `progdeploy extend {attempt.program_id} <bytes>`"
            ) from exc
        if attempt.size_remediations >= self.config.max_size_remediations:
            raise ExtendError(
                f"Activation still too small after "
                f"{attempt.size_remediations} extension(s): {exc}"
            ) from exc
        attempt.size_remediations += 1
        logger.warning(
            "Attempt %s: activation rejected as too small; extending (round %d)",
            attempt.attempt_id,
            attempt.size_remediations,
        )
        self._advance(attempt, DeployPhase.STAGED, reason="account data too small")
        self._reconcile(attempt, artifact, cancel, force=True)

    def _activate(
        self,
        attempt: DeploymentAttempt,
        handle: BufferHandle,
        cancel: CancelToken | None,
    ) -> None:
        if not handle.is_full:
            raise ActivationError(
                f"Buffer {handle.address} is not fully confirmed "
                f"({handle.fill_cursor}/{handle.capacity} bytes)"
            )

        def _submit_and_confirm() -> None:
            receipt = self.gateway.activate_program(attempt.program_id, handle.address)
            await_confirmation(
                self.gateway,
                receipt,
                timeout_seconds=self.config.confirm_timeout_seconds,
                poll_interval_seconds=self.config.poll_interval_seconds,
                cancel=cancel,
            )

        try:
            call_with_retry(
                _submit_and_confirm,
                self.config.retry,
                cancel=cancel,
                description=f"activate {attempt.program_id}",
                on_retry=self._retry_hook(attempt, "activate_program"),
            )
        except (AccountDataTooSmallError, DeployCancelled):
            raise
        except DeployError as exc:
            if not self._activation_landed(attempt, handle):
                raise ActivationError(
                    f"Activation of {attempt.program_id} failed: {exc}"
                ) from exc
            logger.warning(
                "Attempt %s: activation reported %s but the buffer was consumed; "
                "continuing to verification",
                attempt.attempt_id,
                exc,
            )

        # The gateway closes the buffer on activation; never close it again.
        self.buffers.mark_consumed(handle, attempt=attempt)
        self._advance(attempt, DeployPhase.ACTIVATED, detail={"buffer": handle.address})

    def _activation_landed(self, attempt: DeploymentAttempt, handle: BufferHandle) -> bool:
        """Whether an activation that errored out actually went through."""
        try:
            self.gateway.get_account_info(handle.address)
            return False
        except AccountNotFoundError:
            pass
        except DeployError:
            return False
        try:
            info = self.gateway.get_account_info(attempt.program_id)
        except DeployError:
            return False
        return attempt.artifact is not None and (
            info.content_hash == attempt.artifact.content_hash
        )

    def _verify(
        self,
        attempt: DeploymentAttempt,
        artifact: Artifact,
        cancel: CancelToken | None,
    ) -> None:
        problems: list[str] = []
        for poll in range(self.config.verify_attempts):
            if poll:
                interruptible_sleep(self.config.poll_interval_seconds, cancel)
            try:
                info: AccountInfo | None = call_with_retry(
                    lambda: self.gateway.get_account_info(attempt.program_id),
                    self.config.retry,
                    cancel=cancel,
                    description=f"read back {attempt.program_id}",
                )
            except AccountNotFoundError:
                info = None
            except DeployCancelled:
                raise
            except DeployError as exc:
                raise VerificationMismatch(
                    f"Could not read back {attempt.program_id} after activation: {exc}"
                ) from exc

            problems = self._readback_problems(info, artifact)
            if not problems:
                self._advance(
                    attempt,
                    DeployPhase.VERIFIED,
                    detail={"content_hash_checked": info.content_hash is not None},
                )
                return
            logger.debug("Read-back %d of %s: %s", poll + 1, attempt.program_id, problems)

        raise VerificationMismatch(
            f"On-chain program {attempt.program_id} does not match artifact "
            f"{artifact.content_hash}: {'; '.join(problems)}"
        )

    @staticmethod
    def _readback_problems(info: AccountInfo | None, artifact: Artifact) -> list[str]:
        if info is None or not info.exists:
            return ["program account not found"]
        problems: list[str] = []
        if info.capacity < artifact.size_bytes:
            problems.append(
                f"capacity {info.capacity} < artifact size {artifact.size_bytes}"
            )
        if info.content_hash is None:
            logger.warning(
                "Gateway does not report content hashes; %s verified by capacity only",
                info.address,
            )
        elif info.content_hash != artifact.content_hash:
            problems.append(f"content hash {info.content_hash}")
        return problems

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _checkpoint(cancel: CancelToken | None) -> None:
        if cancel is not None:
            cancel.raise_if_cancelled()

    def _advance(
        self,
        attempt: DeploymentAttempt,
        phase: DeployPhase,
        *,
        reason: str = "",
        detail: dict | None = None,
    ) -> None:
        self.phases.transition(
            attempt.attempt_id,
            phase,
            reason=reason,
            artifact_hash=attempt.artifact.content_hash if attempt.artifact else "",
            detail=detail,
        )
        attempt.phase = phase

    def _retry_hook(self, attempt: DeploymentAttempt, operation: str):
        def _on_retry(retry_number: int, exc: DeployError) -> None:
            attempt.retry_count += 1
            self.ledger.record(
                attempt.attempt_id,
                attempt.program_id,
                LedgerEvent.RETRY,
                account_id=attempt.program_id,
                detail={"operation": operation, "retry": retry_number, "error": str(exc)},
            )

        return _on_retry

    def _cleanup(self, attempt: DeploymentAttempt) -> None:
        """Close every buffer of the attempt that is still open."""
        for handle in attempt.buffers:
            if handle.is_open:
                self.buffers.close(handle, attempt=attempt)

    def _terminate(self, attempt: DeploymentAttempt, phase: DeployPhase, reason: str) -> None:
        if attempt.phase in TERMINAL_PHASES:
            return
        self._advance(attempt, phase, reason=reason)

    def _finish(self, attempt: DeploymentAttempt, error: DeployError | None) -> DeployOutcome:
        if error is not None:
            phase = (
                DeployPhase.CANCELLED
                if isinstance(error, DeployCancelled)
                else DeployPhase.FAILED
            )
            self._terminate(attempt, phase, f"{error.kind}: {error}")
            log = logger.error if phase == DeployPhase.FAILED else logger.warning
            log("Attempt %s %s: %s", attempt.attempt_id, phase.value, error)
        else:
            logger.info("Attempt %s verified", attempt.attempt_id)
        self.phases.forget(attempt.attempt_id)

        artifact = attempt.artifact
        return DeployOutcome(
            attempt_id=attempt.attempt_id,
            program_id=attempt.program_id,
            phase=attempt.phase,
            artifact_hash=artifact.content_hash if artifact else "",
            artifact_size=artifact.size_bytes if artifact else 0,
            error_kind=error.kind if error else None,
            error_message=str(error) if error else None,
            exit_code=error.exit_code if error else 0,
            requires_investigation=bool(error and error.requires_investigation),
            retry_count=attempt.retry_count,
            buffers_created=len(attempt.buffers),
            buffers_closed=sum(1 for h in attempt.buffers if h.closed),
            buffers_consumed=sum(1 for h in attempt.buffers if h.consumed),
            extended_bytes=attempt.extended_bytes,
            size_remediations=attempt.size_remediations,
            cleanup_warnings=list(attempt.cleanup_warnings),
        )

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    def extend(self, program_id: str, extra_bytes: int) -> int:
        """Manually extend a program account; returns the new capacity."""
        attempt = DeploymentAttempt(program_id=program_id)
        return self.reconciler.extend(program_id, extra_bytes, attempt=attempt)

    def program_status(self, program_id: str) -> AccountInfo | None:
        """Current on-chain view of a program, or None if it does not exist."""
        try:
            return call_with_retry(
                lambda: self.gateway.get_account_info(program_id),
                self.config.retry,
                description=f"read {program_id}",
            )
        except AccountNotFoundError:
            return None

    def open_buffers(self) -> list[OpenBuffer]:
        """Buffers the ledger records as created and never closed."""
        return self.ledger.open_buffers()

    def close_leaked_buffers(self) -> dict[str, bool]:
        """Close every buffer ``open_buffers`` reports."""
        return self.buffers.close_leaked(self.open_buffers())
