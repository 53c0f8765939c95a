"""
CacheManager - load-or-rebuild state machine for one collection.

    UNKNOWN -> VALIDATING -> {VALID, STALE, MISSING, CORRUPT} -> READY

VALIDATING computes the live fingerprint and reads the persisted metadata.
VALID opens the existing snapshot. STALE, MISSING and CORRUPT rebuild:
every document is embedded in bounded batches, VectorIndex.build writes a
fresh snapshot, and the metadata swap makes it current. A failed rebuild
leaves the previous snapshot current.

Staleness is never an error; only provider and persistence failures
propagate out of ensure_ready(). A rebuild that cannot be persisted raises;
the out-of-date snapshot is left on disk but never served.
"""

from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterator, Sequence

import numpy as np

from gaql_context.core.errors import (
    Corrupt,
    InvalidCorpus,
    NotFound,
    ProviderFailure,
    RetrievalError,
)
from gaql_context.core.protocols import EmbeddingProvider
from gaql_context.observability import attributes as attrs
from gaql_context.observability.tracer import get_tracer
from gaql_context.retrieval.distance import DistanceMetric
from gaql_context.retrieval.document import Document
from gaql_context.retrieval.fingerprint import SCHEMA_VERSION, ContentFingerprint
from gaql_context.retrieval.index import SnapshotHandle, VectorIndex
from gaql_context.retrieval.metadata import CacheMetadata

logger = logging.getLogger(__name__)

CorpusSupplier = Callable[[], Sequence[Document]]


@contextmanager
def embedding_executor(workers: int, name: str) -> Iterator[ThreadPoolExecutor]:
    """
    Worker threads for blocking provider calls.

    Shutdown does not wait: a call that timed out keeps its thread until the
    provider returns, but the caller is released at once.
    """
    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"embed-{name}")
    try:
        yield executor
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


async def call_with_timeout(
    executor: ThreadPoolExecutor, timeout: float | None, fn: Callable[..., Any], *args: Any
) -> Any:
    """Run fn on executor; raises asyncio.TimeoutError after timeout seconds."""
    loop = asyncio.get_running_loop()
    return await asyncio.wait_for(loop.run_in_executor(executor, fn, *args), timeout=timeout)


class CacheState(str, Enum):
    UNKNOWN = "unknown"
    VALIDATING = "validating"
    VALID = "valid"
    STALE = "stale"
    MISSING = "missing"
    CORRUPT = "corrupt"
    READY = "ready"


class RebuildReason(str, Enum):
    MISSING = "missing"
    HASH_MISMATCH = "hash_mismatch"
    SCHEMA_VERSION = "schema_version"
    MODEL_CHANGED = "model_changed"
    METRIC_CHANGED = "metric_changed"
    DIMENSION_MISMATCH = "dimension_mismatch"
    CORRUPT = "corrupt"
    FORCED = "forced"


@dataclass
class CacheStatus:
    """Report on a collection's cache, produced without rebuilding."""

    collection: str
    state: CacheState
    live_document_count: int
    document_count: int | None = None
    created_at: datetime | None = None
    model_id: str | None = None
    content_hash: int | None = None
    reason: RebuildReason | None = None
    detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "state": self.state.value,
            "live_document_count": self.live_document_count,
            "document_count": self.document_count,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "model_id": self.model_id,
            "content_hash": self.content_hash,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }


@dataclass
class _Validation:
    state: CacheState
    documents: Sequence[Document]
    fingerprint: ContentFingerprint
    metadata: CacheMetadata | None = None
    reason: RebuildReason | None = None
    detail: str | None = None


class CacheManager:
    """
    Owns the snapshot lifecycle of one collection.

    Dependencies are INJECTED: the corpus supplier, the embedding provider
    and the index are shared with nothing else in this object's lifetime.
    """

    def __init__(
        self,
        collection: str,
        corpus: CorpusSupplier,
        provider: EmbeddingProvider,
        index: VectorIndex,
        *,
        schema_version: int = SCHEMA_VERSION,
        distance_metric: DistanceMetric | str = DistanceMetric.COSINE,
        batch_size: int = 64,
        max_concurrency: int = 4,
        embed_timeout: float | None = 60.0,
        salt: str = "",
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be positive")
        self.collection = collection
        self._corpus = corpus
        self.provider = provider
        self.index = index
        self.schema_version = schema_version
        self.distance_metric = DistanceMetric.parse(distance_metric)
        self.batch_size = batch_size
        self.max_concurrency = max_concurrency
        self.embed_timeout = embed_timeout
        self.salt = salt
        self.state = CacheState.UNKNOWN
        self.last_rebuild_reason: RebuildReason | None = None
        self._handle: SnapshotHandle | None = None

    # -- validation --------------------------------------------------------

    def _load_corpus(self) -> list[Document]:
        try:
            return list(self._corpus())
        except RetrievalError:
            raise
        except Exception as e:
            raise NotFound(f"Corpus for {self.collection} is unavailable: {e}") from e

    def fingerprint(self, documents: Sequence[Document]) -> ContentFingerprint:
        entries = {doc.id: doc.fingerprint_payload() for doc in documents}
        if len(entries) != len(documents):
            raise InvalidCorpus(f"Duplicate document ids in corpus for {self.collection}")
        return ContentFingerprint.compute(
            entries,
            model_id=self.provider.model_id,
            schema_version=self.schema_version,
            salt=f"{self.salt}|{self.distance_metric.value}",
        )

    def _validate(self) -> _Validation:
        self.state = CacheState.VALIDATING
        documents = self._load_corpus()
        fingerprint = self.fingerprint(documents)

        try:
            metadata = self.index.read_metadata(self.collection)
        except Corrupt as e:
            return _Validation(CacheState.CORRUPT, documents, fingerprint, None, RebuildReason.CORRUPT, str(e))

        if metadata is None:
            return _Validation(CacheState.MISSING, documents, fingerprint, None, RebuildReason.MISSING)

        def stale(reason: RebuildReason, detail: str) -> _Validation:
            return _Validation(CacheState.STALE, documents, fingerprint, metadata, reason, detail)

        if metadata.schema_version != self.schema_version:
            return stale(
                RebuildReason.SCHEMA_VERSION,
                f"schema v{metadata.schema_version} on disk, v{self.schema_version} expected",
            )
        if metadata.model_id != self.provider.model_id:
            return stale(
                RebuildReason.MODEL_CHANGED,
                f"built with {metadata.model_id}, now using {self.provider.model_id}",
            )
        if metadata.distance_metric != self.distance_metric:
            return stale(
                RebuildReason.METRIC_CHANGED,
                f"built for {metadata.distance_metric.value}, now using {self.distance_metric.value}",
            )
        if metadata.content_hash != fingerprint.content_hash:
            return stale(
                RebuildReason.HASH_MISMATCH,
                f"hash {metadata.content_hash} on disk, {fingerprint.content_hash} live",
            )
        live_dimension = self.provider.dimension
        if live_dimension is not None and metadata.document_count and metadata.dimension != live_dimension:
            return stale(
                RebuildReason.DIMENSION_MISMATCH,
                f"stored dimension {metadata.dimension}, model dimension {live_dimension}",
            )
        return _Validation(CacheState.VALID, documents, fingerprint, metadata)

    def validate(self) -> CacheState:
        """Decide validity without rebuilding or loading vectors."""
        result = self._validate()
        self.state = result.state
        return result.state

    def status(self) -> CacheStatus:
        """Report state, counts and build time without rebuilding."""
        result = self._validate()
        self.state = result.state
        metadata = result.metadata
        return CacheStatus(
            collection=self.collection,
            state=result.state,
            live_document_count=len(result.documents),
            document_count=metadata.document_count if metadata else None,
            created_at=metadata.created_at if metadata else None,
            model_id=metadata.model_id if metadata else None,
            content_hash=metadata.content_hash if metadata else None,
            reason=result.reason,
            detail=result.detail,
        )

    # -- load or rebuild ---------------------------------------------------

    @property
    def handle(self) -> SnapshotHandle | None:
        return self._handle

    async def ensure_ready_async(self) -> SnapshotHandle:
        """
        Return a ready snapshot, rebuilding if needed.

        Raises:
            ProviderFailure: embedding failed or timed out during a rebuild
            PersistenceFailure: the new snapshot could not be written
            DimensionMismatch: the provider returned inconsistent vectors
            NotFound: the corpus supplier failed
            InvalidCorpus: the corpus repeats a document id
        """
        if self.state is CacheState.READY and self._handle is not None:
            return self._handle

        result = self._validate()
        self.state = result.state

        if result.state is CacheState.VALID:
            try:
                handle = self.index.open(self.collection)
            except (NotFound, Corrupt) as e:
                logger.warning(f"{self.collection}: cache metadata valid but snapshot unusable ({e}); rebuilding")
                self.state = CacheState.CORRUPT
                return await self._rebuild(result.documents, result.fingerprint, RebuildReason.CORRUPT, str(e))
            logger.info(
                f"{self.collection}: cache valid (fingerprint {result.fingerprint}), "
                f"loaded {len(handle)} documents built {handle.created_at:%Y-%m-%d %H:%M:%S}"
            )
            self._handle = handle
            self.state = CacheState.READY
            return handle

        if result.state is CacheState.CORRUPT:
            logger.warning(f"{self.collection}: cache corrupt ({result.detail}); rebuilding")
        return await self._rebuild(result.documents, result.fingerprint, result.reason, result.detail)

    def ensure_ready(self) -> SnapshotHandle:
        """Synchronous ensure_ready_async(); not callable from a running event loop."""
        return asyncio.run(self.ensure_ready_async())

    async def rebuild_async(self, reason: RebuildReason = RebuildReason.FORCED) -> SnapshotHandle:
        documents = self._load_corpus()
        return await self._rebuild(documents, self.fingerprint(documents), reason, None)

    def rebuild(self, reason: RebuildReason = RebuildReason.FORCED) -> SnapshotHandle:
        return asyncio.run(self.rebuild_async(reason))

    async def _rebuild(
        self,
        documents: Sequence[Document],
        fingerprint: ContentFingerprint,
        reason: RebuildReason | None,
        detail: str | None,
    ) -> SnapshotHandle:
        reason = reason or RebuildReason.FORCED
        explanation = f" ({detail})" if detail else ""
        logger.info(
            f"{self.collection}: rebuilding cache, reason={reason.value}{explanation}; "
            f"embedding {len(documents)} documents with {self.provider.model_id}"
        )
        self.last_rebuild_reason = reason

        tracer = get_tracer()
        with tracer.start_span(
            "retrieval.rebuild",
            attributes=attrs.rebuild_attributes(self.collection, reason.value, len(documents)),
        ) as span:
            start = time.perf_counter()
            try:
                embeddings = await self._embed_all([doc.text for doc in documents])
                handle = self.index.build(
                    self.collection,
                    documents,
                    embeddings,
                    self.distance_metric,
                    model_id=self.provider.model_id,
                    content_hash=fingerprint.content_hash,
                    schema_version=self.schema_version,
                    dimension=self.provider.dimension,
                )
            except Exception as e:
                span.record_exception(e)
                span.set_status("error", str(e))
                raise
            elapsed = time.perf_counter() - start
            span.set_attribute(attrs.RETRIEVAL_REBUILD_SECONDS, elapsed)
            span.set_status("ok")

        logger.info(f"{self.collection}: cache rebuilt in {elapsed:.2f}s ({len(documents)} documents)")
        self._handle = handle
        self.state = CacheState.READY
        return handle

    async def _embed_all(self, texts: list[str]) -> list[np.ndarray]:
        if not texts:
            return []
        semaphore = asyncio.Semaphore(self.max_concurrency)
        batches = [texts[i : i + self.batch_size] for i in range(0, len(texts), self.batch_size)]

        with embedding_executor(self.max_concurrency, self.collection) as executor:

            async def run(batch_no: int, batch: list[str]) -> list[np.ndarray]:
                async with semaphore:
                    vectors = await self._embed_batch(executor, batch)
                logger.debug(f"{self.collection}: embedded batch {batch_no + 1}/{len(batches)}")
                return vectors

            tasks = [asyncio.ensure_future(run(i, batch)) for i, batch in enumerate(batches)]
            try:
                results = await asyncio.gather(*tasks)
            except Exception:
                # First failure wins; queued batches must not reach the provider.
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise
        return [vector for batch in results for vector in batch]

    async def _embed_batch(self, executor: ThreadPoolExecutor, batch: list[str]) -> list[np.ndarray]:
        try:
            vectors = await call_with_timeout(executor, self.embed_timeout, self.provider.embed_batch, batch)
        except asyncio.TimeoutError as e:
            raise ProviderFailure(
                f"Embedding provider timed out after {self.embed_timeout}s for {self.collection}"
            ) from e
        except ProviderFailure:
            raise
        except Exception as e:
            raise ProviderFailure(f"Embedding provider failed for {self.collection}: {e}") from e

        if len(vectors) != len(batch):
            raise ProviderFailure(f"Provider returned {len(vectors)} embeddings for {len(batch)} texts")
        vectors = [np.asarray(v, dtype=np.float32).reshape(-1) for v in vectors]
        if not all(np.all(np.isfinite(v)) for v in vectors):
            raise ProviderFailure(f"Provider returned non-finite embedding values for {self.collection}")
        return vectors

    # -- maintenance -------------------------------------------------------

    def clear(self) -> bool:
        """Force-invalidate the persisted snapshot."""
        self._handle = None
        self.state = CacheState.UNKNOWN
        return self.index.clear(self.collection)
