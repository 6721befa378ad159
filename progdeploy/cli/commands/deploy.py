"""``progdeploy deploy ARTIFACT PROGRAM_ID`` — run one deployment attempt.

Stages the artifact into a fresh buffer, makes sure the program account
is large enough, activates, and verifies the on-chain result. Exits 0 on
``verified`` and with the classified exit code otherwise.
"""

from __future__ import annotations

import tempfile
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import typer

from progdeploy.bridge.memory_gateway import InMemoryChainGateway
from progdeploy.cli import runtime
from progdeploy.core.cluster_guard import ClusterConfigError, enforce_cluster_constraints
from progdeploy.core.deploy_ledger import DeployLedger
from progdeploy.core.errors import DeployError
from progdeploy.core.retry import CancelToken
from progdeploy.models.attempt import DeployOutcome
from progdeploy.monitor.renderer import StatusRenderer


def _run_cancellable(orchestrator, artifact: Path, program_id: str, build: bool) -> DeployOutcome:
    """Run the attempt on a worker thread so Ctrl+C cancels it cleanly."""
    cancel = CancelToken()
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="deploy") as pool:
        future = pool.submit(
            orchestrator.deploy, artifact, program_id, cancel=cancel, build=build
        )
        try:
            return future.result()
        except KeyboardInterrupt:
            runtime.err_console.print("[yellow]Cancelling; closing buffers...[/yellow]")
            cancel.cancel()
            return future.result()


def deploy_cmd(
    artifact: Path = typer.Argument(..., help="Path to the compiled program artifact."),
    program_id: str = typer.Argument(..., help="Address of the program to deploy or upgrade."),
    build: bool = typer.Option(
        False, "--build", "-b", help="Run the configured build command first."
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Rehearse against a simulated copy of the program's current sizing.",
    ),
    cluster: str = typer.Option(
        None, "--cluster", "-c", help="Cluster moniker or RPC URL (overrides settings)."
    ),
    ledger_db: Path = typer.Option(
        None, "--ledger", "-l", help="Path to the deployment ledger database."
    ),
    log_level: str = typer.Option(None, "--log-level", help="Logging level."),
) -> None:
    """Deploy or upgrade a program from a compiled artifact."""
    settings = runtime.load_settings(cluster=cluster, ledger=ledger_db, log_level=log_level)
    runtime.configure_logging(settings.log_level)
    renderer = StatusRenderer(console=runtime.console)

    try:
        enforce_cluster_constraints(settings)
    except ClusterConfigError as exc:
        runtime.err_console.print(f"[bold red]{exc}[/bold red]")
        raise typer.Exit(code=2)

    gateway = runtime.build_gateway(settings)
    try:
        if dry_run:
            try:
                rehearsal = InMemoryChainGateway.rehearsal_of(gateway, program_id)
            except DeployError as exc:
                runtime.err_console.print(
                    f"[bold red]Cannot read {program_id} for rehearsal:[/bold red] {exc}"
                )
                raise typer.Exit(code=exc.exit_code)
            with tempfile.TemporaryDirectory(prefix="progdeploy-dry-run-") as tmp:
                orchestrator = runtime.build_orchestrator(
                    settings, rehearsal, ledger=DeployLedger(Path(tmp) / "ledger.db")
                )
                outcome = _run_cancellable(orchestrator, artifact, program_id, build)
            renderer.print_outcome(outcome, title="progdeploy (dry run)")
        else:
            orchestrator = runtime.build_orchestrator(settings, gateway)
            outcome = _run_cancellable(orchestrator, artifact, program_id, build)
            renderer.print_outcome(outcome)
    finally:
        runtime.close_gateway(gateway)

    if not outcome.succeeded:
        raise typer.Exit(code=outcome.exit_code)
