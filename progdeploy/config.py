"""Operator configuration — env-driven.

Centralized settings using pydantic-settings. Reads from a .env file and
PROGDEPLOY_* environment variables, then converts into the immutable
``DeployConfig`` the deployment core is constructed with. Nothing under
``progdeploy.core`` reads the environment.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from progdeploy.bridge.rpc_gateway import resolve_cluster_url
from progdeploy.models.config import DeployConfig, RetryPolicy


class DeploySettings(BaseSettings):
    """Deployment settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export PROGDEPLOY_CLUSTER=devnet
        export PROGDEPLOY_LOG_LEVEL=DEBUG
        export PROGDEPLOY_LEDGER_PATH=/data/ledger.db

    Or via .env file::

        PROGDEPLOY_CLUSTER=mainnet-beta
        PROGDEPLOY_AUTHORITY=~/.config/solana/deployer.json
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PROGDEPLOY_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime
    log_level: str = "INFO"
    debug: bool = False

    # Cluster: a moniker (localnet, devnet, testnet, mainnet-beta) or a URL
    cluster: str = "localnet"
    commitment: str = "confirmed"
    keypair_path: Path = Path("~/.config/solana/id.json")
    authority: str = ""

    # Storage
    ledger_path: Path = Path(".progdeploy/ledger.db")

    # Retry
    max_retries: int = 3
    retry_base_delay: float = 0.5
    retry_factor: float = 2.0
    retry_max_delay: float = 8.0

    # Staging
    chunk_size: int = 1012
    upload_concurrency: int = 4

    # Timeouts
    rpc_timeout_seconds: float = 30.0
    confirm_timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.5

    # Sizing
    auto_extend: bool = True
    min_extend_increment: int = 0
    max_size_remediations: int = 2
    verify_attempts: int = 3

    # External build, e.g. '["cargo", "build-sbf"]'
    build_command: list[str] = []
    build_cwd: Path | None = None

    @property
    def cluster_url(self) -> str:
        return resolve_cluster_url(self.cluster)

    @property
    def is_mainnet(self) -> bool:
        """Whether the configured cluster is mainnet."""
        return "mainnet" in self.cluster_url

    def to_deploy_config(self) -> DeployConfig:
        """Freeze these settings into the value the core runs with."""
        return DeployConfig(
            cluster_url=self.cluster_url,
            keypair_path=self.keypair_path,
            authority=self.authority,
            ledger_db_path=self.ledger_path,
            retry=RetryPolicy(
                max_retries=self.max_retries,
                base_delay_seconds=self.retry_base_delay,
                factor=self.retry_factor,
                max_delay_seconds=self.retry_max_delay,
            ),
            chunk_size=self.chunk_size,
            upload_concurrency=self.upload_concurrency,
            rpc_timeout_seconds=self.rpc_timeout_seconds,
            confirm_timeout_seconds=self.confirm_timeout_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            auto_extend=self.auto_extend,
            min_extend_increment=self.min_extend_increment,
            max_size_remediations=self.max_size_remediations,
            verify_attempts=self.verify_attempts,
            build_command=list(self.build_command),
            build_cwd=self.build_cwd,
        )
