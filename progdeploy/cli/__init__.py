"""progdeploy CLI — Typer-based command-line interface.

Provides the ``progdeploy`` command with subcommands for deploying an
artifact, extending a program account, inspecting ledger status, and
closing leaked buffers.

All output uses Rich for formatted terminal display.
"""
