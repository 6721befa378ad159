"""Hashing for artifact identity and ledger sealing.

Artifacts and on-chain program data are compared by ``sha256:<hex>``
content hashes. Ledger entries are sealed over their canonical JSON form
so the stored chain can be re-verified byte for byte.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

HASH_PREFIX = "sha256:"


def canonical_json_bytes(obj: Any) -> bytes:
    """Sorted keys, compact separators, ASCII-only, UTF-8 encoded."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def content_hash(data: bytes) -> str:
    """Identity of an artifact or of deployed program bytes."""
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """Seal for a ledger entry, computed over every field but ``entry_hash``."""
    sealed = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return hashlib.sha256(canonical_json_bytes(sealed)).hexdigest()
