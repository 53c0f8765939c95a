"""
Retrieval module - hash-validated embedding cache and vector search.

ARCHITECTURE:
-------------
1. Document: immutable record (id, embedded text, attributes)
2. ContentFingerprint: detects corpus / model / schema changes
3. DescriptionEnricher: synthesizes embeddable text for field metadata
4. VectorIndex: durable snapshots + exact or graph search
5. CacheManager: load-or-rebuild state machine per collection
6. RetrievalService: the retrieve() entry point

USAGE:
------
from gaql_context.retrieval import CacheManager, RetrievalService, VectorIndex
from gaql_context.embeddings import MockEmbeddings

provider = MockEmbeddings()
index = VectorIndex("/tmp/gaql-cache")
manager = CacheManager("query_cookbook", load_documents, provider, index)
service = RetrievalService([manager], provider)
service.retrieve("query_cookbook", "campaigns with spend last month", max_results=3)
"""

from gaql_context.retrieval.cache import (
    CacheManager,
    CacheState,
    CacheStatus,
    RebuildReason,
)
from gaql_context.retrieval.corpus import (
    FIELD_METADATA,
    QUERY_COOKBOOK,
    FieldMetadataCache,
    QueryEntry,
    cookbook_documents,
    field_documents,
    load_query_cookbook,
)
from gaql_context.retrieval.distance import DistanceMetric
from gaql_context.retrieval.document import Document
from gaql_context.retrieval.enrichment import (
    DESCRIPTION_VERSION,
    DescriptionEnricher,
    FieldMetadata,
)
from gaql_context.retrieval.fingerprint import (
    SCHEMA_VERSION,
    ContentFingerprint,
    compute_content_hash,
)
from gaql_context.retrieval.index import SearchHit, SnapshotHandle, VectorIndex
from gaql_context.retrieval.metadata import CacheMetadata
from gaql_context.retrieval.service import RetrievalService

__all__ = [
    # Data
    "Document",
    "FieldMetadata",
    "QueryEntry",
    "CacheMetadata",
    "SearchHit",
    "SnapshotHandle",
    # Fingerprint
    "SCHEMA_VERSION",
    "ContentFingerprint",
    "compute_content_hash",
    # Enrichment
    "DESCRIPTION_VERSION",
    "DescriptionEnricher",
    # Index
    "DistanceMetric",
    "VectorIndex",
    # Cache
    "CacheManager",
    "CacheState",
    "CacheStatus",
    "RebuildReason",
    # Corpus
    "QUERY_COOKBOOK",
    "FIELD_METADATA",
    "FieldMetadataCache",
    "load_query_cookbook",
    "cookbook_documents",
    "field_documents",
    # Service
    "RetrievalService",
]
