"""
Cache metadata - the sole authority on snapshot validity.

One small JSON record per collection, stored apart from the (potentially
large) vector table so validity can be checked without loading vectors.
Writing this record is the commit point of a rebuild: it is only written
after the snapshot body is durable, and it is replaced atomically.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from gaql_context.core.errors import Corrupt
from gaql_context.retrieval.distance import DistanceMetric
from gaql_context.retrieval.fingerprint import ContentFingerprint

logger = logging.getLogger(__name__)

METADATA_FILENAME = "metadata.json"


class CacheMetadata(BaseModel):
    """Persisted description of a collection's current snapshot."""

    collection: str
    schema_version: int = Field(description="Persisted layout version")
    model_id: str = Field(description="Embedding provider + model + parameters")
    content_hash: int = Field(ge=0, description="Fingerprint hash of the corpus at build time")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    distance_metric: DistanceMetric = DistanceMetric.COSINE
    snapshot_id: str
    dimension: int = Field(ge=0)
    document_count: int = Field(ge=0)

    @property
    def fingerprint(self) -> ContentFingerprint:
        return ContentFingerprint(schema_version=self.schema_version, content_hash=self.content_hash)


def _fsync_directory(path: Path) -> None:
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write data to path via a fsynced temp file and os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    _fsync_directory(path.parent)


def read_metadata(collection_dir: Path) -> CacheMetadata | None:
    """
    Read a collection's metadata record.

    Returns None if the record does not exist. Raises Corrupt if it exists
    but cannot be parsed.
    """
    path = collection_dir / METADATA_FILENAME
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise Corrupt(f"Cannot read {path}: {e}") from e

    try:
        return CacheMetadata.model_validate_json(raw)
    except (ValidationError, ValueError) as e:
        raise Corrupt(f"Unparseable cache metadata at {path}: {e}") from e


def write_metadata(collection_dir: Path, metadata: CacheMetadata) -> None:
    payload = json.loads(metadata.model_dump_json())
    atomic_write_bytes(
        collection_dir / METADATA_FILENAME,
        json.dumps(payload, indent=2, sort_keys=True).encode("utf-8"),
    )
    logger.debug(f"Wrote cache metadata for {metadata.collection} (snapshot {metadata.snapshot_id})")
