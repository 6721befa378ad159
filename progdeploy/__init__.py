"""progdeploy: staged, size-reconciled program deployment.

Uploads a compiled program artifact into a fresh buffer account in
parallel confirmed chunks, extends the program account when the new
bytecode outgrows it, activates from the buffer, and verifies the
on-chain result. Every phase transition and every buffer created or
closed goes into an append-only, hash-chained SQLite ledger.
"""

__version__ = "0.1.0"
__author__ = "progdeploy contributors"
__description__ = "Staged, size-reconciled program deployment with an auditable ledger"

from progdeploy.core.orchestrator import DeployOrchestrator
from progdeploy.monitor.projection import StatusProjection
from progdeploy.cli.app import app as cli

__all__ = ["DeployOrchestrator", "StatusProjection", "cli", "__version__"]
