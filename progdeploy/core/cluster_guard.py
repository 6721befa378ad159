"""Cluster configuration guard — hard constraints before touching mainnet.

The guard validates deployment settings once, before the CLI builds a
gateway, and fails hard (raises ``ClusterConfigError``) if a constraint
is violated. It is the single enforcement point for mainnet rules; other
code should not scatter ``if is_mainnet`` checks.
"""

from __future__ import annotations

import logging

from progdeploy.config import DeploySettings

logger = logging.getLogger(__name__)


class ClusterConfigError(RuntimeError):
    """Raised when settings are unsafe for the target cluster.

    The process should exit; this error must not be caught and ignored.
    """


def enforce_cluster_constraints(settings: DeploySettings) -> None:
    """Validate mainnet-critical settings.

    Constraints enforced on mainnet
    -------------------------------
    1. Debug mode must be disabled.
    2. An upgrade authority must be configured explicitly, not inherited
       from the default keypair path.
    3. Automatic extension needs a bounded remediation count.

    Raises
    ------
    ClusterConfigError
        Listing every violated constraint.
    """
    if not settings.is_mainnet:
        return

    violations: list[str] = []

    if settings.debug:
        violations.append(
            "debug=True is not allowed on mainnet. Set PROGDEPLOY_DEBUG=false."
        )

    if not settings.authority:
        violations.append(
            "An explicit upgrade authority is required on mainnet. "
            "Set PROGDEPLOY_AUTHORITY."
        )

    if settings.auto_extend and settings.max_size_remediations > 5:
        violations.append(
            f"max_size_remediations={settings.max_size_remediations} is too high "
            "for mainnet (limit 5); each round pays rent for more bytes."
        )

    if violations:
        msg = "Cluster configuration guard failed.\n" + "\n".join(
            f"  - {v}" for v in violations
        )
        logger.critical(msg)
        raise ClusterConfigError(msg)

    logger.info("Cluster configuration guard passed for %s.", settings.cluster_url)
