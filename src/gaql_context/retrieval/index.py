"""
Persisted vector index - durable snapshots with similarity search.

Layout per collection:

    <root>/<collection>/metadata.json               # current snapshot pointer
    <root>/<collection>/snapshots/<id>/documents.json
    <root>/<collection>/snapshots/<id>/vectors.npy
    <root>/<collection>/snapshots/<id>/graph.npy    # only above min_ann_size

A build writes a complete snapshot into a fresh directory, fsyncs it, and
only then swaps metadata.json. Readers follow metadata.json, so a build in
progress (or one killed halfway) is never visible. After a successful build
only the new snapshot and the one it replaced are kept; everything else is
swept.

Collections smaller than min_ann_size are searched with an exact scan: the
neighbour graph needs enough nodes to be navigable, and a scan over a few
hundred rows is already fast.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

import numpy as np

from gaql_context.core.errors import Corrupt, DimensionMismatch, InvalidCorpus, NotFound, PersistenceFailure
from gaql_context.retrieval.ann import NeighborGraph
from gaql_context.retrieval.distance import DistanceMetric, prepare_matrix, prepare_query, scores
from gaql_context.retrieval.document import Document
from gaql_context.retrieval.fingerprint import SCHEMA_VERSION
from gaql_context.retrieval.metadata import (
    METADATA_FILENAME,
    CacheMetadata,
    atomic_write_bytes,
    read_metadata,
    write_metadata,
)

logger = logging.getLogger(__name__)

# Approximate indexing needs a minimum number of rows; below this we scan.
DEFAULT_MIN_ANN_SIZE = 256

DOCUMENTS_FILENAME = "documents.json"
VECTORS_FILENAME = "vectors.npy"
GRAPH_FILENAME = "graph.npy"
SNAPSHOTS_DIRNAME = "snapshots"


# ---------------------------------------------------------------------------
# HANDLES AND RESULTS
# ---------------------------------------------------------------------------


@dataclass
class SearchHit:
    """One search result; score is always "higher = more relevant"."""

    document: Document
    score: float


@dataclass
class SnapshotHandle:
    """An opened, immutable snapshot of one collection."""

    metadata: CacheMetadata
    documents: tuple[Document, ...]
    vectors: np.ndarray
    graph: NeighborGraph | None = None
    _prepared: np.ndarray = field(init=False, repr=False)
    _id_rank: np.ndarray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.vectors.setflags(write=False)
        self._prepared = prepare_matrix(self.vectors, self.metric)
        order = sorted(range(len(self.documents)), key=lambda i: self.documents[i].id)
        rank = np.empty(len(self.documents), dtype=np.int64)
        rank[order] = np.arange(len(self.documents))
        self._id_rank = rank

    @property
    def collection(self) -> str:
        return self.metadata.collection

    @property
    def metric(self) -> DistanceMetric:
        return self.metadata.distance_metric

    @property
    def dimension(self) -> int:
        return self.metadata.dimension

    @property
    def created_at(self) -> datetime:
        return self.metadata.created_at

    def __len__(self) -> int:
        return len(self.documents)


# ---------------------------------------------------------------------------
# VECTOR INDEX
# ---------------------------------------------------------------------------


class VectorIndex:
    """
    File-backed vector index for all collections under one root directory.

    Args:
        root_dir: Cache root; one subdirectory per collection
        min_ann_size: Row count at which the neighbour graph is built and used
        ann_neighbors: Graph out-degree (m)
        ef_search: Beam width for graph search
    """

    def __init__(
        self,
        root_dir: Path | str,
        min_ann_size: int = DEFAULT_MIN_ANN_SIZE,
        ann_neighbors: int = 16,
        ef_search: int = 64,
    ):
        if min_ann_size < 1:
            raise ValueError("min_ann_size must be at least 1")
        self.root_dir = Path(root_dir).expanduser()
        self.min_ann_size = min_ann_size
        self.ann_neighbors = ann_neighbors
        self.ef_search = ef_search

    # -- paths -------------------------------------------------------------

    def collection_dir(self, collection: str) -> Path:
        if not collection or "/" in collection or "\\" in collection or collection.startswith("."):
            raise ValueError(f"Invalid collection name: {collection!r}")
        return self.root_dir / collection

    def _snapshots_dir(self, collection: str) -> Path:
        return self.collection_dir(collection) / SNAPSHOTS_DIRNAME

    def collections(self) -> list[str]:
        if not self.root_dir.exists():
            return []
        return sorted(
            p.name for p in self.root_dir.iterdir() if p.is_dir() and (p / METADATA_FILENAME).exists()
        )

    # -- metadata ----------------------------------------------------------

    def read_metadata(self, collection: str) -> CacheMetadata | None:
        """Current metadata without loading vectors. Raises Corrupt."""
        return read_metadata(self.collection_dir(collection))

    # -- build -------------------------------------------------------------

    def build(
        self,
        collection: str,
        documents: Sequence[Document],
        embeddings: Sequence[np.ndarray],
        distance_metric: DistanceMetric | str = DistanceMetric.COSINE,
        *,
        model_id: str,
        content_hash: int,
        schema_version: int = SCHEMA_VERSION,
        dimension: int | None = None,
    ) -> SnapshotHandle:
        """
        Write a complete new snapshot and make it current.

        Raises:
            DimensionMismatch: counts differ or vectors disagree on dimension
            PersistenceFailure: any write failed; the previous snapshot is intact
        """
        metric = DistanceMetric.parse(distance_metric)
        matrix = self._stack(documents, embeddings, dimension)
        ids = [doc.id for doc in documents]
        if len(set(ids)) != len(ids):
            raise InvalidCorpus(f"Duplicate document ids in collection {collection}")

        collection_dir = self.collection_dir(collection)
        snapshot_id = f"{datetime.now(timezone.utc):%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"
        snapshot_dir = self._snapshots_dir(collection) / snapshot_id

        metadata = CacheMetadata(
            collection=collection,
            schema_version=schema_version,
            model_id=model_id,
            content_hash=content_hash,
            distance_metric=metric,
            snapshot_id=snapshot_id,
            dimension=matrix.shape[1],
            document_count=matrix.shape[0],
        )

        graph = None
        if len(documents) >= self.min_ann_size:
            graph = NeighborGraph.build(
                prepare_matrix(matrix, metric),
                metric,
                m=self.ann_neighbors,
                ef_search=self.ef_search,
            )

        previous_id = self._current_snapshot_id(collection)
        try:
            snapshot_dir.mkdir(parents=True, exist_ok=False)
            self._write_snapshot(snapshot_dir, documents, matrix, graph)
            write_metadata(collection_dir, metadata)
        except OSError as e:
            shutil.rmtree(snapshot_dir, ignore_errors=True)
            raise PersistenceFailure(f"Failed to persist snapshot for {collection}: {e}") from e

        self._sweep(collection, keep={snapshot_id, previous_id})
        logger.info(
            f"Built snapshot {snapshot_id} for {collection}: "
            f"{metadata.document_count} documents, dim={metadata.dimension}, "
            f"{'graph' if graph is not None else 'exact'} search"
        )
        return SnapshotHandle(
            metadata=metadata,
            documents=tuple(documents),
            vectors=matrix,
            graph=graph,
        )

    @staticmethod
    def _stack(
        documents: Sequence[Document],
        embeddings: Sequence[np.ndarray],
        dimension: int | None,
    ) -> np.ndarray:
        if len(documents) != len(embeddings):
            raise DimensionMismatch(
                f"{len(documents)} documents but {len(embeddings)} embeddings",
                expected=len(documents),
                actual=len(embeddings),
            )
        if not embeddings:
            return np.zeros((0, dimension or 0), dtype=np.float32)

        expected = np.asarray(embeddings[0]).reshape(-1).shape[0]
        if dimension is not None and expected != dimension:
            raise DimensionMismatch(
                f"Embedding dimension {expected} does not match expected {dimension}",
                expected=dimension,
                actual=expected,
            )
        for position, vector in enumerate(embeddings):
            actual = np.asarray(vector).reshape(-1).shape[0]
            if actual != expected:
                raise DimensionMismatch(
                    f"Embedding {position} ({documents[position].id}) has dimension "
                    f"{actual}, expected {expected}",
                    expected=expected,
                    actual=actual,
                )
        return np.vstack([np.asarray(v, dtype=np.float32).reshape(-1) for v in embeddings])

    @staticmethod
    def _write_snapshot(
        snapshot_dir: Path,
        documents: Sequence[Document],
        matrix: np.ndarray,
        graph: NeighborGraph | None,
    ) -> None:
        payload = json.dumps([doc.to_dict() for doc in documents], ensure_ascii=False)
        atomic_write_bytes(snapshot_dir / DOCUMENTS_FILENAME, payload.encode("utf-8"))
        _save_array(snapshot_dir / VECTORS_FILENAME, matrix)
        if graph is not None:
            _save_array(snapshot_dir / GRAPH_FILENAME, graph.neighbors)

    def _current_snapshot_id(self, collection: str) -> str | None:
        try:
            metadata = self.read_metadata(collection)
        except Corrupt:
            return None
        return metadata.snapshot_id if metadata else None

    def _sweep(self, collection: str, keep: set[str | None]) -> None:
        """
        Remove every snapshot except the current one and its predecessor.

        The predecessor survives one generation so readers that loaded the
        old metadata just before the swap can still open its files.
        """
        snapshots_dir = self._snapshots_dir(collection)
        for entry in snapshots_dir.iterdir():
            if entry.name in keep:
                continue
            try:
                shutil.rmtree(entry)
                logger.debug(f"Removed stale snapshot {entry.name} of {collection}")
            except OSError as e:
                logger.warning(f"Could not remove stale snapshot {entry}: {e}")

    # -- open --------------------------------------------------------------

    def open(self, collection: str) -> SnapshotHandle:
        """
        Load the current snapshot.

        Raises:
            NotFound: collection never built or cleared
            Corrupt: metadata or snapshot files unreadable or inconsistent
        """
        metadata = self.read_metadata(collection)
        if metadata is None:
            raise NotFound(f"No snapshot for collection {collection}")

        snapshot_dir = self._snapshots_dir(collection) / metadata.snapshot_id
        if not snapshot_dir.is_dir():
            raise Corrupt(f"Snapshot {metadata.snapshot_id} of {collection} is missing")

        try:
            raw_docs = json.loads((snapshot_dir / DOCUMENTS_FILENAME).read_text(encoding="utf-8"))
            documents = tuple(Document.from_dict(item) for item in raw_docs)
            vectors = np.load(snapshot_dir / VECTORS_FILENAME, allow_pickle=False)
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise Corrupt(f"Unreadable snapshot {metadata.snapshot_id} of {collection}: {e}") from e

        expected_shape = (metadata.document_count, metadata.dimension)
        if vectors.ndim != 2 or vectors.shape != expected_shape or len(documents) != metadata.document_count:
            raise Corrupt(
                f"Snapshot {metadata.snapshot_id} of {collection} has shape {vectors.shape} "
                f"and {len(documents)} documents, metadata says {expected_shape}"
            )
        if not np.all(np.isfinite(vectors)):
            raise Corrupt(f"Snapshot {metadata.snapshot_id} of {collection} contains non-finite values")

        graph = None
        graph_path = snapshot_dir / GRAPH_FILENAME
        if len(documents) >= self.min_ann_size and graph_path.exists():
            try:
                neighbors = np.load(graph_path, allow_pickle=False)
                graph = NeighborGraph(
                    prepare_matrix(vectors, metadata.distance_metric),
                    neighbors,
                    metadata.distance_metric,
                    ef_search=self.ef_search,
                )
            except (OSError, ValueError) as e:
                raise Corrupt(f"Unreadable neighbour graph in {metadata.snapshot_id}: {e}") from e
            if neighbors.size and (neighbors.min() < -1 or neighbors.max() >= len(documents)):
                raise Corrupt(f"Neighbour graph of {metadata.snapshot_id} references unknown rows")

        return SnapshotHandle(
            metadata=metadata,
            documents=documents,
            vectors=vectors.astype(np.float32, copy=False),
            graph=graph,
        )

    # -- search ------------------------------------------------------------

    def search(self, handle: SnapshotHandle | None, query_vector: np.ndarray, k: int) -> list[SearchHit]:
        """
        Return at most k hits, most relevant first.

        Scores are valid for the snapshot's metric and non-increasing by
        position; ties are broken by document id. A missing handle yields an
        empty result with a warning.
        """
        if handle is None:
            logger.warning("Search against a missing or never-built index; returning no results")
            return []
        if k <= 0 or len(handle) == 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32).reshape(-1)
        if query.shape[0] != handle.dimension:
            raise DimensionMismatch(
                f"Query dimension {query.shape[0]} does not match index dimension {handle.dimension}",
                expected=handle.dimension,
                actual=query.shape[0],
            )
        prepared = prepare_query(query, handle.metric)

        if handle.graph is not None and len(handle) >= self.min_ann_size:
            rows = np.asarray(handle.graph.search(prepared, k), dtype=np.int64)
        else:
            rows = np.arange(len(handle), dtype=np.int64)

        row_scores = scores(handle._prepared[rows], prepared, handle.metric)
        order = np.lexsort((handle._id_rank[rows], -row_scores))[:k]
        return [
            SearchHit(document=handle.documents[rows[i]], score=float(row_scores[i]))
            for i in order
        ]

    # -- maintenance -------------------------------------------------------

    def clear(self, collection: str) -> bool:
        """Delete a collection's snapshots. Returns False if nothing existed."""
        collection_dir = self.collection_dir(collection)
        if not collection_dir.exists():
            return False
        try:
            # Invalidate first so a partial delete never looks valid.
            (collection_dir / METADATA_FILENAME).unlink(missing_ok=True)
            shutil.rmtree(collection_dir)
        except OSError as e:
            raise PersistenceFailure(f"Failed to clear collection {collection}: {e}") from e
        logger.info(f"Cleared cached snapshot for {collection}")
        return True


def _save_array(path: Path, array: np.ndarray) -> None:
    with open(path, "wb") as f:
        np.save(f, array, allow_pickle=False)
        f.flush()
        os.fsync(f.fileno())
