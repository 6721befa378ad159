"""Shared wiring for CLI commands: settings, logging, gateway, orchestrator.

Commands call these through the module (``runtime.build_gateway``) so the
gateway can be swapped in tests.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from progdeploy.bridge.gateway import ChainGateway
from progdeploy.bridge.rpc_gateway import JsonRpcChainGateway
from progdeploy.config import DeploySettings
from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.core.orchestrator import DeployOrchestrator

console = Console()
err_console = Console(stderr=True)


def load_settings(
    *,
    cluster: str | None = None,
    ledger: Path | None = None,
    log_level: str | None = None,
) -> DeploySettings:
    """Environment settings with command-line overrides applied."""
    settings = DeploySettings()
    overrides: dict = {}
    if cluster:
        overrides["cluster"] = cluster
    if ledger is not None:
        overrides["ledger_path"] = ledger
    if log_level:
        overrides["log_level"] = log_level
    return settings.model_copy(update=overrides) if overrides else settings


def configure_logging(level: str) -> None:
    """Route library logging through Rich on stderr."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def build_gateway(settings: DeploySettings) -> ChainGateway:
    """The gateway for the configured cluster."""
    return JsonRpcChainGateway(
        settings.cluster_url,
        timeout_seconds=settings.rpc_timeout_seconds,
        commitment=settings.commitment,
    )


def build_orchestrator(
    settings: DeploySettings,
    gateway: ChainGateway,
    *,
    ledger: DeployLedger | None = None,
) -> DeployOrchestrator:
    config = settings.to_deploy_config()
    return DeployOrchestrator(
        gateway,
        config,
        ledger=ledger or DeployLedger(config.ledger_db_path),
    )


def close_gateway(gateway: ChainGateway) -> None:
    close = getattr(gateway, "close", None)
    if callable(close):
        close()
