"""BufferManager — lifecycle of the transient staging accounts.

A buffer is allocated sized exactly to the artifact, filled in chunks no
larger than one transaction payload, and either consumed by activation or
closed. Closing is best-effort: a failed close is logged and recorded as
a cleanup warning, never raised, because a leaked buffer is recoverable
(``close_leaked``) while masking the original error is not.

Chunks cover disjoint byte ranges, so they are uploaded concurrently and
in any order; ``stage`` only returns once every chunk write is confirmed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager

from progdeploy.bridge.gateway import ChainGateway
from progdeploy.core.deploy_ledger import DeployLedger, OpenBuffer
from progdeploy.core.errors import (
    AccountNotFoundError,
    DeployCancelled,
    DeployError,
    StageError,
)
from progdeploy.core.retry import CancelToken, await_confirmation, call_with_retry
from progdeploy.models.accounts import BufferHandle, ChunkSpec
from progdeploy.models.artifacts import Artifact
from progdeploy.models.attempt import DeploymentAttempt
from progdeploy.models.config import DeployConfig
from progdeploy.models.ledger import LedgerEvent

logger = logging.getLogger(__name__)


def plan_chunks(size: int, chunk_size: int) -> list[ChunkSpec]:
    """Split ``size`` bytes into contiguous chunks of at most ``chunk_size``."""
    if size <= 0:
        raise ValueError("Cannot plan chunks for an empty artifact")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return [
        ChunkSpec(index=i, offset=offset, length=min(chunk_size, size - offset))
        for i, offset in enumerate(range(0, size, chunk_size))
    ]


def validate_plan(chunks: list[ChunkSpec], size: int) -> None:
    """Check that chunks tile ``[0, size)`` exactly, with no overlap or gap.

    Submission order is free; the check is on the offset-sorted plan.
    """
    cursor = 0
    for chunk in sorted(chunks, key=lambda c: c.offset):
        if chunk.length <= 0:
            raise StageError(f"Chunk {chunk.index} has non-positive length")
        if chunk.offset < cursor:
            raise StageError(f"Chunk {chunk.index} at {chunk.offset} overlaps previous chunk")
        if chunk.offset > cursor:
            raise StageError(f"Gap in chunk plan at [{cursor}, {chunk.offset})")
        cursor = chunk.end
    if cursor != size:
        raise StageError(f"Chunk plan covers {cursor} bytes, buffer holds {size}")


class BufferManager:
    """Stages artifacts into buffer accounts through a ``ChainGateway``.

    Parameters
    ----------
    gateway:
        The cluster boundary.
    config:
        Chunk size, upload concurrency, retry policy, and timeouts.
    ledger:
        Optional deployment ledger; buffer creation, closure, and retries
        are recorded in it.
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
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Ledger / attempt bookkeeping
    # ------------------------------------------------------------------

    def _record(
        self,
        attempt: DeploymentAttempt | None,
        event: LedgerEvent,
        account_id: str,
        detail: dict | None = None,
    ) -> None:
        if self._ledger is None or attempt is None:
            return
        self._ledger.record(
            attempt.attempt_id,
            attempt.program_id,
            event,
            account_id=account_id,
            artifact_hash=attempt.artifact.content_hash if attempt.artifact else "",
            detail=detail,
        )

    def _retry_hook(self, attempt: DeploymentAttempt | None, operation: str, account_id: str):
        def _on_retry(retry_number: int, exc: DeployError) -> None:
            if attempt is not None:
                with self._lock:
                    attempt.retry_count += 1
            self._record(
                attempt,
                LedgerEvent.RETRY,
                account_id,
                {"operation": operation, "retry": retry_number, "error": str(exc)},
            )

        return _on_retry

    def _confirm(self, receipt, cancel: CancelToken | None) -> None:
        await_confirmation(
            self._gateway,
            receipt,
            timeout_seconds=self._config.confirm_timeout_seconds,
            poll_interval_seconds=self._config.poll_interval_seconds,
            cancel=cancel,
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan_chunks(self, size: int) -> list[ChunkSpec]:
        return plan_chunks(size, self._config.chunk_size)

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    def allocate(
        self,
        artifact: Artifact,
        *,
        attempt: DeploymentAttempt | None = None,
        cancel: CancelToken | None = None,
    ) -> BufferHandle:
        """Create one buffer sized exactly to the artifact.

        The submission is retried on transient errors; confirmation is not
        resubmitted, so a slow confirmation never allocates a second buffer.
        """
        if attempt is not None and attempt.active_buffer is not None:
            raise StageError(
                f"Attempt {attempt.attempt_id} already has an active buffer "
                f"{attempt.active_buffer.address}"
            )
        authority = self._config.effective_authority
        try:
            receipt = call_with_retry(
                lambda: self._gateway.create_account(artifact.size_bytes, authority),
                self._config.retry,
                cancel=cancel,
                description="create buffer",
                on_retry=self._retry_hook(attempt, "create_account", ""),
            )
        except DeployCancelled:
            raise
        except DeployError as exc:
            raise StageError(f"Could not allocate buffer: {exc}") from exc

        handle = BufferHandle(
            address=receipt.account_id or "",
            authority=authority,
            capacity=artifact.size_bytes,
            attempt_id=attempt.attempt_id if attempt else "",
        )
        if attempt is not None:
            attempt.buffers.append(handle)
        self._record(
            attempt,
            LedgerEvent.BUFFER_CREATED,
            handle.address,
            {"capacity": handle.capacity, "signature": receipt.signature},
        )
        logger.info("Allocated buffer %s (%d bytes)", handle.address, handle.capacity)

        try:
            self._confirm(receipt, cancel)
        except BaseException as exc:
            self.close(handle, attempt=attempt)
            if isinstance(exc, DeployError) and not isinstance(exc, DeployCancelled):
                raise StageError(f"Buffer {handle.address} never confirmed: {exc}") from exc
            raise
        return handle

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def _write_chunk(
        self,
        handle: BufferHandle,
        artifact: Artifact,
        chunk: ChunkSpec,
        attempt: DeploymentAttempt | None,
        token: CancelToken,
    ) -> ChunkSpec:
        data = artifact.slice(chunk.offset, chunk.length)

        def _submit_and_confirm() -> None:
            receipt = self._gateway.write_chunk(handle.address, chunk.offset, data)
            self._confirm(receipt, token)

        call_with_retry(
            _submit_and_confirm,
            self._config.retry,
            cancel=token,
            description=f"write chunk {chunk.index} @ {chunk.offset}",
            on_retry=self._retry_hook(attempt, "write_chunk", handle.address),
        )
        with self._lock:
            handle.confirmed_chunks[chunk.offset] = chunk.length
        return chunk

    def upload(
        self,
        handle: BufferHandle,
        artifact: Artifact,
        chunks: list[ChunkSpec],
        *,
        attempt: DeploymentAttempt | None = None,
        cancel: CancelToken | None = None,
    ) -> None:
        """Write every chunk and wait until all are confirmed.

        Chunks run on up to ``upload_concurrency`` worker threads in the
        order given. The first failure stops the remaining workers; this
        method still waits for all of them before raising.

        Raises
        ------
        StageError
            A chunk exhausted its retries or failed permanently.
        DeployCancelled
            The caller cancelled.
        """
        validate_plan(chunks, handle.capacity)
        abort = cancel.child() if cancel is not None else CancelToken()
        failure: BaseException | None = None

        workers = min(self._config.upload_concurrency, len(chunks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="chunk") as pool:
            futures = [
                pool.submit(self._write_chunk, handle, artifact, chunk, attempt, abort)
                for chunk in chunks
            ]
            for future in as_completed(futures):
                exc = future.exception()
                if exc is None:
                    continue
                if failure is None or isinstance(failure, DeployCancelled):
                    failure = exc
                abort.cancel()

        if cancel is not None and cancel.cancelled:
            raise DeployCancelled("Deployment cancelled during staging")
        if failure is not None:
            if isinstance(failure, DeployError):
                raise StageError(
                    f"Staging into {handle.address} failed: {failure}"
                ) from failure
            raise failure
        if not handle.is_full:
            raise StageError(
                f"Buffer {handle.address} filled to {handle.fill_cursor} "
                f"of {handle.capacity} bytes"
            )
        logger.info(
            "Staged %d bytes into %s in %d chunks",
            handle.capacity,
            handle.address,
            len(chunks),
        )

    # ------------------------------------------------------------------
    # Stage (allocate + upload)
    # ------------------------------------------------------------------

    def stage(
        self,
        artifact: Artifact,
        *,
        attempt: DeploymentAttempt | None = None,
        cancel: CancelToken | None = None,
    ) -> BufferHandle:
        """Allocate a buffer and fill it with the artifact.

        On any failure or cancellation the buffer is closed before the
        error propagates.
        """
        handle = self.allocate(artifact, attempt=attempt, cancel=cancel)
        try:
            self.upload(
                handle,
                artifact,
                self.plan_chunks(artifact.size_bytes),
                attempt=attempt,
                cancel=cancel,
            )
        except BaseException:
            self.close(handle, attempt=attempt)
            raise
        return handle

    @contextmanager
    def staged(
        self,
        artifact: Artifact,
        *,
        attempt: DeploymentAttempt | None = None,
        cancel: CancelToken | None = None,
    ) -> Iterator[BufferHandle]:
        """Scoped buffer: closed on every exit unless activation consumed it."""
        handle = self.stage(artifact, attempt=attempt, cancel=cancel)
        try:
            yield handle
        finally:
            if handle.is_open:
                self.close(handle, attempt=attempt)

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def mark_consumed(
        self, handle: BufferHandle, *, attempt: DeploymentAttempt | None = None
    ) -> None:
        """Record that activation took ownership of the buffer."""
        handle.consumed = True
        self._record(attempt, LedgerEvent.BUFFER_CONSUMED, handle.address)

    def close(
        self, handle: BufferHandle, *, attempt: DeploymentAttempt | None = None
    ) -> bool:
        """Close a buffer, best-effort. Returns True if it is gone.

        Idempotent; consumed buffers are skipped. Failures are logged and
        recorded as cleanup warnings on the attempt, never raised.
        """
        if not handle.is_open:
            return True

        def _close() -> None:
            receipt = self._gateway.close_account(handle.address)
            self._confirm(receipt, None)

        try:
            call_with_retry(
                _close,
                self._config.retry,
                description=f"close buffer {handle.address}",
            )
        except AccountNotFoundError:
            logger.info("Buffer %s already gone", handle.address)
        except DeployError as exc:
            message = f"Could not close buffer {handle.address}: {exc}"
            logger.warning(message)
            if attempt is not None:
                attempt.cleanup_warnings.append(message)
            self._record(
                attempt,
                LedgerEvent.CLEANUP_WARNING,
                handle.address,
                {"error": str(exc)},
            )
            return False

        handle.closed = True
        self._record(attempt, LedgerEvent.BUFFER_CLOSED, handle.address)
        logger.info("Closed buffer %s", handle.address)
        return True

    def close_leaked(self, buffers: list[OpenBuffer]) -> dict[str, bool]:
        """Close buffers the ledger records as never closed.

        Returns a map of address to whether the buffer is now gone.
        """
        results: dict[str, bool] = {}
        for leaked in buffers:
            attempt = DeploymentAttempt(
                attempt_id=leaked.attempt_id, program_id=leaked.program_id
            )
            handle = BufferHandle(
                address=leaked.address,
                authority=self._config.effective_authority,
                capacity=leaked.capacity,
                attempt_id=leaked.attempt_id,
            )
            results[leaked.address] = self.close(handle, attempt=attempt)
        return results
