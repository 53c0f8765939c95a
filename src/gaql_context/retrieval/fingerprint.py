"""
Content fingerprinting for cache validation.

A fingerprint changes if and only if something relevant to correctness
changed: a document's embedded text or stored attributes, the set of
documents, the persisted layout (schema version) or the embedding model.
There is no time-based expiry at this layer.

Entries are hashed in key order, never insertion order, so reordering a
corpus does not invalidate the cache. SHA-256 is used instead of the
built-in hash(), which is salted per process.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Mapping

# Bump whenever the persisted snapshot layout changes.
SCHEMA_VERSION = 2


def _canonical(value: Any) -> bytes:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode(
        "utf-8"
    )


def compute_content_hash(
    entries: Mapping[str, Any],
    model_id: str,
    schema_version: int = SCHEMA_VERSION,
    salt: str = "",
) -> int:
    """
    Hash a corpus plus the identifiers that make its vectors valid.

    Args:
        entries: Mapping of document key -> embedding-relevant payload
        model_id: Embedding model identifier
        schema_version: Persisted layout version
        salt: Extra version tag, e.g. for description generation logic

    Returns:
        Unsigned 64-bit integer
    """
    hasher = hashlib.sha256()
    hasher.update(_canonical({"schema_version": schema_version, "model_id": model_id, "salt": salt}))
    hasher.update(_canonical(len(entries)))
    for key in sorted(entries):
        # Length-prefixing keeps ("ab", "c") and ("a", "bc") distinct.
        key_bytes = key.encode("utf-8")
        payload = _canonical(entries[key])
        hasher.update(len(key_bytes).to_bytes(8, "big"))
        hasher.update(key_bytes)
        hasher.update(len(payload).to_bytes(8, "big"))
        hasher.update(payload)
    return int.from_bytes(hasher.digest()[:8], "big")


@dataclass(frozen=True)
class ContentFingerprint:
    """Schema version plus content hash, serialized as "v{version}\\n{hash}"."""

    schema_version: int
    content_hash: int

    @classmethod
    def compute(
        cls,
        entries: Mapping[str, Any],
        model_id: str,
        schema_version: int = SCHEMA_VERSION,
        salt: str = "",
    ) -> "ContentFingerprint":
        return cls(
            schema_version=schema_version,
            content_hash=compute_content_hash(entries, model_id, schema_version, salt),
        )

    def serialize(self) -> str:
        return f"v{self.schema_version}\n{self.content_hash}"

    @classmethod
    def parse(cls, text: str, expected_version: int | None = None) -> "ContentFingerprint | None":
        """
        Parse a serialized fingerprint.

        Returns None for malformed input, or when expected_version is given
        and does not match. None always means "no usable fingerprint".
        """
        lines = text.strip().splitlines()
        if len(lines) < 2 or not lines[0].startswith("v"):
            return None
        try:
            version = int(lines[0][1:])
            content_hash = int(lines[1])
        except ValueError:
            return None
        if expected_version is not None and version != expected_version:
            return None
        return cls(schema_version=version, content_hash=content_hash)

    def __str__(self) -> str:
        return f"v{self.schema_version}:{self.content_hash:016x}"
