"""
RetrievalService - ranked context documents for GAQL generation.

Retrieval is advisory: a collection that cannot be served yields an empty
result and a warning so the generation step still runs. Pass strict=True to
get the underlying RetrievalError instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Mapping

import numpy as np

from gaql_context.core.errors import NotFound, ProviderFailure, RetrievalError
from gaql_context.core.protocols import EmbeddingProvider, RetrievedDocument
from gaql_context.observability import attributes as attrs
from gaql_context.observability.config import get_config as get_tracing_config
from gaql_context.observability.tracer import get_tracer
from gaql_context.retrieval.cache import CacheManager, CacheStatus, call_with_timeout, embedding_executor
from gaql_context.retrieval.corpus import (
    FIELD_METADATA,
    QUERY_COOKBOOK,
    FieldMetadataCache,
    cookbook_documents,
    field_corpus_salt,
    field_documents,
    load_query_cookbook,
)
from gaql_context.retrieval.enrichment import DescriptionEnricher
from gaql_context.retrieval.index import VectorIndex

if TYPE_CHECKING:
    from gaql_context.config import RetrievalConfig

logger = logging.getLogger(__name__)


class RetrievalService:
    """
    Routes retrieve() calls to per-collection CacheManagers.

    All managers must embed with the same model as the query provider,
    otherwise query vectors would not be comparable with stored ones.
    """

    def __init__(
        self,
        managers: Mapping[str, CacheManager] | Iterable[CacheManager],
        provider: EmbeddingProvider,
        *,
        min_score: float = 0.0,
        default_max_results: int = 10,
        query_cache_size: int = 256,
        embed_timeout: float | None = 60.0,
    ):
        if not isinstance(managers, Mapping):
            managers = {manager.collection: manager for manager in managers}
        for name, manager in managers.items():
            if manager.provider.model_id != provider.model_id:
                raise ValueError(
                    f"Collection {name} embeds with {manager.provider.model_id}, "
                    f"queries would use {provider.model_id}"
                )
        self._managers = dict(managers)
        self.provider = provider
        self.min_score = min_score
        self.default_max_results = default_max_results
        self._query_cache: OrderedDict[str, np.ndarray] = OrderedDict()
        self._query_cache_size = query_cache_size
        self.embed_timeout = embed_timeout

    @property
    def collections(self) -> list[str]:
        return sorted(self._managers)

    def manager(self, collection: str) -> CacheManager:
        try:
            return self._managers[collection]
        except KeyError:
            raise NotFound(f"Unknown collection {collection!r}") from None

    # -- retrieval ---------------------------------------------------------

    async def _embed_query(self, query_text: str) -> np.ndarray:
        cached = self._query_cache.get(query_text)
        if cached is not None:
            self._query_cache.move_to_end(query_text)
            return cached
        try:
            with embedding_executor(1, "query") as executor:
                vector = await call_with_timeout(executor, self.embed_timeout, self.provider.embed, query_text)
        except asyncio.TimeoutError as e:
            raise ProviderFailure(f"Query embedding timed out after {self.embed_timeout}s") from e
        except ProviderFailure:
            raise
        except Exception as e:
            raise ProviderFailure(f"Failed to embed query: {e}") from e
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if self._query_cache_size > 0:
            self._query_cache[query_text] = vector
            if len(self._query_cache) > self._query_cache_size:
                self._query_cache.popitem(last=False)
        return vector

    async def retrieve_async(
        self,
        collection: str,
        query_text: str,
        max_results: int | None = None,
        *,
        strict: bool = False,
    ) -> list[RetrievedDocument]:
        """
        Top documents for query_text, most relevant first.

        Results have score >= min_score and there are at most max_results
        of them. Failures yield [] with a warning unless strict is set.
        """
        k = self.default_max_results if max_results is None else max_results
        if k <= 0 or not query_text.strip():
            return []

        try:
            manager = self.manager(collection)
        except NotFound:
            if strict:
                raise
            logger.warning(f"Retrieval from unknown collection {collection!r}; returning no results")
            return []

        capture = get_tracing_config().capture_query_text
        tracer = get_tracer()
        with tracer.start_span(
            "retrieval.retrieve",
            attributes=attrs.retrieve_attributes(
                collection, k, self.provider.model_id, query_text if capture else None
            ),
        ) as span:
            start = time.perf_counter()
            try:
                handle = await manager.ensure_ready_async()
                query_vector = await self._embed_query(query_text)
                hits = manager.index.search(handle, query_vector, k)
            except Exception as e:
                span.record_exception(e)
                span.set_status("error", str(e))
                if strict:
                    raise
                detail = e if isinstance(e, RetrievalError) else repr(e)
                logger.warning(f"Retrieval from {collection} failed, returning no results: {detail}")
                return []

            results = [
                RetrievedDocument(
                    id=hit.document.id,
                    text=hit.document.text,
                    attributes=dict(hit.document.attributes),
                    score=hit.score,
                )
                for hit in hits
                if hit.score >= self.min_score
            ][:k]

            latency_ms = (time.perf_counter() - start) * 1000
            span.set_attribute(attrs.RETRIEVAL_RESULT_COUNT, len(results))
            span.set_attribute(attrs.RETRIEVAL_LATENCY_MS, latency_ms)
            if results:
                span.set_attribute(attrs.RETRIEVAL_TOP_SCORE, results[0].score)
            span.set_status("ok")

        logger.debug(f"{collection}: {len(results)} results in {latency_ms:.1f}ms")
        return results

    def retrieve(
        self,
        collection: str,
        query_text: str,
        max_results: int | None = None,
        *,
        strict: bool = False,
    ) -> list[RetrievedDocument]:
        """Synchronous retrieve_async(); not callable from a running event loop."""
        return asyncio.run(self.retrieve_async(collection, query_text, max_results, strict=strict))

    # -- lifecycle ---------------------------------------------------------

    async def warm_up_async(self) -> dict[str, CacheStatus]:
        """Load or rebuild every collection concurrently."""
        names = self.collections
        await asyncio.gather(*(self._managers[name].ensure_ready_async() for name in names))
        return {name: self._managers[name].status() for name in names}

    def warm_up(self) -> dict[str, CacheStatus]:
        return asyncio.run(self.warm_up_async())

    def clear(self, collection: str) -> bool:
        self._query_cache.clear()
        return self.manager(collection).clear()

    def status(self, collection: str | None = None) -> dict[str, CacheStatus]:
        names = [collection] if collection is not None else self.collections
        return {name: self.manager(name).status() for name in names}

    # -- wiring ------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        config: "RetrievalConfig",
        provider: EmbeddingProvider | None = None,
        field_fetcher=None,
    ) -> "RetrievalService":
        """
        Wire the cookbook and field metadata collections from configuration.

        A collection whose source is not configured is left out; retrieving
        from it returns [] with a warning.
        """
        if provider is None:
            from gaql_context.embeddings import get_embedding_provider

            provider = get_embedding_provider(
                config.embedding_provider,
                model=config.embedding_model,
                base_url=config.embedding_base_url,
                dimensions=config.embedding_dimensions,
                timeout=config.embed_timeout,
            )

        index = VectorIndex(config.cache_dir, min_ann_size=config.min_ann_size)
        common = dict(
            distance_metric=config.distance_metric,
            batch_size=config.batch_size,
            max_concurrency=config.max_concurrency,
            embed_timeout=config.embed_timeout,
        )
        managers: dict[str, CacheManager] = {}

        if config.cookbook_path is not None:
            cookbook_path = Path(config.cookbook_path)
            managers[QUERY_COOKBOOK] = CacheManager(
                QUERY_COOKBOOK,
                lambda: cookbook_documents(load_query_cookbook(cookbook_path)),
                provider,
                index,
                **common,
            )
        else:
            logger.warning("No query cookbook configured; query_cookbook collection disabled")

        if config.field_cache_path is not None:
            try:
                field_cache = FieldMetadataCache.load_or_fetch(
                    config.field_cache_path,
                    max_age_days=config.field_cache_max_age_days,
                    fetcher=field_fetcher,
                )
            except NotFound as e:
                logger.warning(f"Field metadata unavailable; field_metadata collection disabled: {e}")
            else:
                enricher = DescriptionEnricher()
                managers[FIELD_METADATA] = CacheManager(
                    FIELD_METADATA,
                    lambda: field_documents(field_cache, enricher),
                    provider,
                    index,
                    salt=field_corpus_salt(field_cache, enricher),
                    **common,
                )
        else:
            logger.warning("No field metadata cache configured; field_metadata collection disabled")

        return cls(
            managers,
            provider,
            min_score=config.min_score,
            default_max_results=config.default_max_results,
            embed_timeout=config.embed_timeout,
        )
