"""Bytecode artifact model — immutable, content-addressed."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class Artifact(BaseModel):
    """A compiled program blob loaded from local storage.

    The bytes are opaque. Only ``size_bytes`` (for sizing decisions) and
    ``content_hash`` (for identity and read-back verification) matter.
    """

    model_config = ConfigDict(frozen=True)

    data: bytes = Field(repr=False)
    size_bytes: int
    content_hash: str  # "sha256:<hex>"
    source_path: Path | None = None
    loaded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def slice(self, offset: int, length: int) -> bytes:
        """Return ``length`` bytes starting at ``offset``."""
        return self.data[offset:offset + length]
