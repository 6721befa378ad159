"""ArtifactSource — locate, optionally build, and load the bytecode blob.

The compiler is external. ``build`` only shells out to the configured
command (for example ``cargo build-sbf``) and reports its exit status.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from progdeploy.core.errors import ArtifactError, BuildError
from progdeploy.core.hasher import content_hash
from progdeploy.models.artifacts import Artifact

logger = logging.getLogger(__name__)


class ArtifactSource:
    """Loads compiled program artifacts from local storage."""

    def load(self, path: Path | str) -> Artifact:
        """Read the artifact at ``path``.

        Raises
        ------
        ArtifactError
            If the path is missing, not a regular file, unreadable, or empty.
        """
        path = Path(path).expanduser()
        if not path.exists():
            raise ArtifactError(f"Artifact not found: {path}")
        if not path.is_file():
            raise ArtifactError(f"Artifact is not a regular file: {path}")
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ArtifactError(f"Cannot read artifact {path}: {exc}") from exc
        if not data:
            raise ArtifactError(f"Artifact is empty: {path}")

        artifact = Artifact(
            data=data,
            size_bytes=len(data),
            content_hash=content_hash(data),
            source_path=path,
        )
        logger.info(
            "Loaded artifact %s (%d bytes, %s)",
            path,
            artifact.size_bytes,
            artifact.content_hash,
        )
        return artifact

    def build(self, command: list[str], cwd: Path | None = None) -> None:
        """Run the external build command; raise ``BuildError`` on failure."""
        if not command:
            raise BuildError("no build_command configured; set PROGDEPLOY_BUILD_COMMAND")
        logger.info("Building: %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise BuildError(f"Cannot run build command {command[0]!r}: {exc}") from exc
        if result.returncode != 0:
            tail = (result.stderr or result.stdout).strip().splitlines()[-5:]
            raise BuildError(
                f"Build command exited with {result.returncode}: " + " | ".join(tail)
            )
        logger.debug("Build output:\n%s", result.stdout)
