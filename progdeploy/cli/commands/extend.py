"""``progdeploy extend PROGRAM_ID BYTES`` — grow a program account by hand.

The operator-gated path for when automatic extension is disabled
(``PROGDEPLOY_AUTO_EXTEND=false``).
"""

from __future__ import annotations

from pathlib import Path

import typer

from progdeploy.cli import runtime
from progdeploy.core.cluster_guard import ClusterConfigError, enforce_cluster_constraints
from progdeploy.core.errors import DeployError


def extend_cmd(
    program_id: str = typer.Argument(..., help="Address of the program account."),
    extra_bytes: int = typer.Argument(..., min=1, help="Bytes to add."),
    cluster: str = typer.Option(
        None, "--cluster", "-c", help="Cluster moniker or RPC URL (overrides settings)."
    ),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Path to the deployment ledger database."
    ),
) -> None:
    """Extend a program account's capacity."""
    settings = runtime.load_settings(cluster=cluster, ledger=ledger_db)
    runtime.configure_logging(settings.log_level)
    try:
        enforce_cluster_constraints(settings)
    except ClusterConfigError as exc:
        runtime.err_console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=2)

    gateway = runtime.build_gateway(settings)
    try:
        orchestrator = runtime.build_orchestrator(settings, gateway)
        capacity = orchestrator.extend(program_id, extra_bytes)
    except DeployError as exc:
        runtime.err_console.print(f"[bold red]{exc.kind}:[/bold red] {exc}")
        raise typer.Exit(code=exc.exit_code)
    finally:
        runtime.close_gateway(gateway)

    runtime.console.print(
        f"[green]Extended[/green] [bold]{program_id}[/bold] by {extra_bytes} bytes; "
        f"capacity is now [bold]{capacity}[/bold] bytes."
    )
