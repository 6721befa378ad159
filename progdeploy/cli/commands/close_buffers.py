"""``progdeploy close-buffers`` — reclaim buffers a crashed attempt left open."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.table import Table

from progdeploy.cli import runtime


def close_buffers_cmd(
    cluster: str = typer.Option(
        None, "--cluster", "-c", help="Cluster moniker or RPC URL (overrides settings)."
    ),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Path to the deployment ledger database."
    ),
) -> None:
    """Close every buffer the ledger records as created and never closed."""
    settings = runtime.load_settings(cluster=cluster, ledger=ledger_db)
    runtime.configure_logging(settings.log_level)
    console = runtime.console

    if not settings.ledger_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {settings.ledger_path}")
        raise typer.Exit(code=1)

    gateway = runtime.build_gateway(settings)
    try:
        results = runtime.build_orchestrator(settings, gateway).close_leaked_buffers()
    finally:
        runtime.close_gateway(gateway)

    if not results:
        console.print("[green]No open buffers.[/green]")
        return

    table = Table(title="Buffer Cleanup", header_style="bold cyan")
    table.add_column("Address", style="cyan")
    table.add_column("Result", justify="center")
    for address, closed in results.items():
        table.add_row(address, "[green]closed[/green]" if closed else "[red]still open[/red]")
    console.print(table)

    if not all(results.values()):
        raise typer.Exit(code=1)
