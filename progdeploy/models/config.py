"""Deployment configuration value objects — immutable, passed explicitly."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class RetryPolicy(BaseModel):
    """Bounded exponential backoff for transient remote failures.

    Delay before retry ``n`` (1-based) is
    ``min(base_delay_seconds * factor ** (n - 1), max_delay_seconds)``.
    """

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    base_delay_seconds: float = Field(default=0.5, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_delay_seconds: float = Field(default=8.0, ge=0)

    def delay_for(self, retry_number: int) -> float:
        """Backoff delay before the given retry (1-based)."""
        if retry_number < 1:
            return 0.0
        delay = self.base_delay_seconds * (self.factor ** (retry_number - 1))
        return min(delay, self.max_delay_seconds)


class DeployConfig(BaseModel):
    """Everything the orchestrator needs, fixed at construction.

    Built from ``DeploySettings`` by the CLI; core logic never reads the
    environment itself.
    """

    model_config = ConfigDict(frozen=True)

    cluster_url: str = "http://127.0.0.1:8899"
    keypair_path: Path = Path("~/.config/solana/id.json")
    authority: str = ""  # defaults to the keypair path when empty
    ledger_db_path: Path = Path(".progdeploy/ledger.db")

    retry: RetryPolicy = RetryPolicy()

    # Staging
    chunk_size: int = Field(default=1012, gt=0)  # max bytes per write tx
    upload_concurrency: int = Field(default=4, ge=1)

    # Per-call and confirmation timing
    rpc_timeout_seconds: float = Field(default=30.0, gt=0)
    confirm_timeout_seconds: float = Field(default=60.0, gt=0)
    poll_interval_seconds: float = Field(default=0.5, gt=0)

    # Sizing
    auto_extend: bool = True
    min_extend_increment: int = Field(default=0, ge=0)
    max_size_remediations: int = Field(default=2, ge=0)

    # Post-activation read-back
    verify_attempts: int = Field(default=3, ge=1)

    # Optional external build step (e.g. ["cargo", "build-sbf"])
    build_command: list[str] = []
    build_cwd: Path | None = None

    @property
    def effective_authority(self) -> str:
        """Identity sent with every mutating gateway call."""
        return self.authority or str(self.keypair_path)
