"""Main Typer application — imports and registers all CLI commands.

Entry point: ``progdeploy`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import typer

from progdeploy.cli.commands.close_buffers import close_buffers_cmd
from progdeploy.cli.commands.deploy import deploy_cmd
from progdeploy.cli.commands.extend import extend_cmd
from progdeploy.cli.commands.status import status_cmd

app = typer.Typer(
    name="progdeploy",
    help="progdeploy: staged, size-reconciled program deployment.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="deploy", help="Deploy or upgrade a program from an artifact.")(deploy_cmd)
app.command(name="extend", help="Extend a program account's capacity.")(extend_cmd)
app.command(name="status", help="Show deployment status from the ledger.")(status_cmd)
app.command(name="close-buffers", help="Close buffers left open by failed attempts.")(
    close_buffers_cmd
)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
