"""Rich terminal renderer for deployment status.

Turns ``AttemptSnapshot``, ``ProgramStatus``, ``DeployOutcome`` and open
buffer listings into Rich renderables, with color-coded phases.

Color scheme
------------
- green     : VERIFIED
- red       : FAILED
- yellow    : in-flight phases
- magenta   : CANCELLED
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from progdeploy.core.deploy_ledger import OpenBuffer
from progdeploy.models.attempt import DeployOutcome
from progdeploy.models.phases import DeployPhase
from progdeploy.monitor.projection import AttemptSnapshot, ProgramStatus

# ---------------------------------------------------------------------------
# Phase -> Rich markup
# ---------------------------------------------------------------------------

_PHASE_LABELS: dict[DeployPhase, str] = {
    DeployPhase.BUILDING: "[yellow]BUILDING[/yellow]",
    DeployPhase.STAGED: "[yellow]STAGED[/yellow]",
    DeployPhase.SIZE_VERIFIED: "[yellow]SIZE VERIFIED[/yellow]",
    DeployPhase.ACTIVATED: "[yellow]ACTIVATED[/yellow]",
    DeployPhase.VERIFIED: "[green]VERIFIED[/green]",
    DeployPhase.FAILED: "[bold red]FAILED[/bold red]",
    DeployPhase.CANCELLED: "[magenta]CANCELLED[/magenta]",
}


def phase_label(phase: DeployPhase) -> str:
    return _PHASE_LABELS.get(phase, phase.value)


def _short(value: str, width: int = 18) -> str:
    return value if len(value) <= width else value[: width - 3] + "..."


class StatusRenderer:
    """Renders deployment status as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance. A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Attempt
    # ------------------------------------------------------------------

    def render_attempt(self, snapshot: AttemptSnapshot) -> Panel:
        """Phase timeline of one attempt, with buffer accounting."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=4, justify="right")
        table.add_column("Phase", min_width=16)
        table.add_column("Entered", min_width=10)
        table.add_column("Reason")

        for i, step in enumerate(snapshot.steps):
            table.add_row(
                str(i),
                phase_label(step.phase),
                f"[dim]{step.entered_at.strftime('%H:%M:%S')}[/dim]",
                step.reason or "[dim]-[/dim]",
            )

        chain = "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        summary_parts = [
            f"[bold]Program:[/bold] {snapshot.program_id}",
            f"[bold]Artifact:[/bold] {_short(snapshot.artifact_hash, 24) or '-'}",
            f"[bold]Buffers:[/bold] {len(snapshot.buffers_created)} created / "
            f"{len(snapshot.buffers_closed)} closed / "
            f"{len(snapshot.buffers_consumed)} consumed",
            f"[bold]Retries:[/bold] {snapshot.retry_count}",
            f"[bold]Chain:[/bold] {chain}",
        ]
        if snapshot.extended_bytes:
            summary_parts.append(f"[bold]Extended:[/bold] {snapshot.extended_bytes} B")
        if snapshot.open_buffers:
            summary_parts.append(
                f"[bold red]Open buffers:[/bold red] {', '.join(snapshot.open_buffers)}"
            )

        parts: list = [table, Text(""), Text.from_markup("  |  ".join(summary_parts))]
        for warning in snapshot.cleanup_warnings:
            parts.append(Text.from_markup(f"[yellow]warning:[/yellow] {warning}"))

        return Panel(
            Group(*parts),
            title=f"[bold]Attempt {snapshot.attempt_id}[/bold] {phase_label(snapshot.phase)}",
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Program
    # ------------------------------------------------------------------

    def render_program(self, status: ProgramStatus) -> Panel:
        """All recorded attempts for a program plus its on-chain view."""
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Attempt", min_width=26)
        table.add_column("Phase", min_width=14, justify="center")
        table.add_column("Artifact")
        table.add_column("Buffers", justify="right")
        table.add_column("Extended", justify="right")
        table.add_column("Retries", justify="right")

        for snap in status.attempts:
            leaked = len(snap.open_buffers)
            buffers = f"{len(snap.buffers_created)}"
            if leaked:
                buffers += f" [bold red]({leaked} open)[/bold red]"
            table.add_row(
                snap.attempt_id,
                phase_label(snap.phase) if snap.steps else "[dim]extend[/dim]",
                _short(snap.artifact_hash) or "[dim]-[/dim]",
                buffers,
                str(snap.extended_bytes) if snap.extended_bytes else "[dim]0[/dim]",
                str(snap.retry_count),
            )

        if status.on_chain is None:
            chain_view = "[dim]not found on cluster[/dim]"
        else:
            info = status.on_chain
            chain_view = (
                f"[bold]Capacity:[/bold] {info.capacity} B  |  "
                f"[bold]Hash:[/bold] {info.content_hash or '[dim]not reported[/dim]'}  |  "
                f"[bold]Authority:[/bold] {info.authority or '-'}"
            )
        verified = status.last_verified
        footer = (
            f"[bold]Last verified:[/bold] {verified.attempt_id}"
            if verified
            else "[bold]Last verified:[/bold] [dim]none[/dim]"
        )

        return Panel(
            Group(table, Text(""), Text.from_markup(chain_view), Text.from_markup(footer)),
            title=f"[bold]Program {status.program_id}[/bold]",
            border_style="blue",
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Buffers
    # ------------------------------------------------------------------

    def render_open_buffers(self, buffers: list[OpenBuffer]) -> Table:
        table = Table(title="Open Buffers", header_style="bold cyan")
        table.add_column("Address", style="cyan")
        table.add_column("Program")
        table.add_column("Attempt")
        table.add_column("Capacity", justify="right")
        table.add_column("Created")
        for buf in buffers:
            table.add_row(
                buf.address,
                buf.program_id,
                buf.attempt_id,
                str(buf.capacity),
                buf.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            )
        return table

    # ------------------------------------------------------------------
    # Outcome
    # ------------------------------------------------------------------

    def render_outcome(self, outcome: DeployOutcome, *, title: str = "progdeploy") -> Panel:
        lines = [
            f"[bold]Attempt:[/bold]   {outcome.attempt_id}",
            f"[bold]Program:[/bold]   {outcome.program_id}",
            f"[bold]Phase:[/bold]     {phase_label(outcome.phase)}",
            f"[bold]Artifact:[/bold]  {outcome.artifact_hash or '-'} "
            f"({outcome.artifact_size} bytes)",
            f"[bold]Buffers:[/bold]   {outcome.buffers_created} created, "
            f"{outcome.buffers_closed} closed, {outcome.buffers_consumed} consumed",
            f"[bold]Retries:[/bold]   {outcome.retry_count}",
        ]
        if outcome.extended_bytes:
            lines.append(
                f"[bold]Extended:[/bold]  {outcome.extended_bytes} bytes "
                f"({outcome.size_remediations} remediation(s))"
            )
        if outcome.error_kind:
            lines.append("")
            lines.append(f"[bold red]{outcome.error_kind}:[/bold red] {outcome.error_message}")
        if outcome.requires_investigation:
            lines.append(
                "[bold red]On-chain state changed; investigate before redeploying.[/bold red]"
            )
        for warning in outcome.cleanup_warnings:
            lines.append(f"[yellow]warning:[/yellow] {warning}")

        border = "green" if outcome.succeeded else "red"
        return Panel(
            "\n".join(lines),
            title=f"[bold]{title}[/bold]",
            border_style=border,
            padding=(1, 2),
        )

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_attempt(self, snapshot: AttemptSnapshot) -> None:
        self.console.print(self.render_attempt(snapshot))

    def print_program(self, status: ProgramStatus) -> None:
        self.console.print(self.render_program(status))

    def print_outcome(self, outcome: DeployOutcome, *, title: str = "progdeploy") -> None:
        self.console.print(self.render_outcome(outcome, title=title))
