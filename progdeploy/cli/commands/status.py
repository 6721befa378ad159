"""``progdeploy status`` — show what the ledger recorded.

``status PROGRAM_ID`` lists every attempt for the program plus its current
on-chain view; ``status --attempt ID`` shows one attempt's phase timeline;
``status --buffers`` lists buffers recorded as created and never closed.
The view is a read-only projection over the deployment ledger.
"""

from __future__ import annotations

from pathlib import Path

import typer

from progdeploy.cli import runtime
from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.core.errors import DeployError
from progdeploy.monitor.projection import StatusProjection
from progdeploy.monitor.renderer import StatusRenderer


def status_cmd(
    program_id: str = typer.Argument(None, help="Program address to report on."),
    attempt_id: str = typer.Option(
        None, "--attempt", "-a", help="Show the phase timeline of one attempt."
    ),
    buffers: bool = typer.Option(
        False, "--buffers", help="List buffers recorded as never closed."
    ),
    offline: bool = typer.Option(
        False, "--offline", help="Do not query the cluster; ledger only."
    ),
    cluster: str = typer.Option(
        None, "--cluster", "-c", help="Cluster moniker or RPC URL (overrides settings)."
    ),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Path to the deployment ledger database."
    ),
) -> None:
    """Show deployment status for a program, an attempt, or open buffers."""
    settings = runtime.load_settings(cluster=cluster, ledger=ledger_db)
    runtime.configure_logging(settings.log_level)
    console = runtime.console

    if not (program_id or attempt_id or buffers):
        console.print("[bold red]Give a PROGRAM_ID, --attempt, or --buffers.[/bold red]")
        raise typer.Exit(code=2)

    if not settings.ledger_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {settings.ledger_path}")
        console.print("[dim]Deploy something first with: progdeploy deploy[/dim]")
        raise typer.Exit(code=1)

    projection = StatusProjection(DeployLedger(settings.ledger_path))
    renderer = StatusRenderer(console=console)

    if buffers:
        open_buffers = projection.open_buffers()
        if not open_buffers:
            console.print("[green]No open buffers.[/green]")
        else:
            console.print(renderer.render_open_buffers(open_buffers))
            console.print("[dim]Reclaim them with: progdeploy close-buffers[/dim]")

    if attempt_id:
        try:
            renderer.print_attempt(projection.snapshot(attempt_id))
        except KeyError:
            console.print(f"[bold red]Attempt not found:[/bold red] {attempt_id}")
            raise typer.Exit(code=1)

    if program_id:
        on_chain = None
        if not offline:
            gateway = runtime.build_gateway(settings)
            try:
                on_chain = runtime.build_orchestrator(settings, gateway).program_status(
                    program_id
                )
            except DeployError as exc:
                console.print(f"[yellow]Cluster query failed:[/yellow] {exc}")
            finally:
                runtime.close_gateway(gateway)
        status = projection.program_status(program_id, on_chain=on_chain)
        if not status.attempts and on_chain is None:
            console.print(f"[bold red]No record of program:[/bold red] {program_id}")
            raise typer.Exit(code=1)
        renderer.print_program(status)
