"""
gaql-context - hash-validated embedding cache and retrieval for GAQL generation.

Supplies ranked context documents (example queries and Google Ads field
metadata) to a natural-language-to-GAQL generator. Embeddings are persisted
per collection and rebuilt only when the corpus, the schema version or the
embedding model changes.

USAGE:
------
from gaql_context import RetrievalService, RetrievalConfig

service = RetrievalService.from_config(RetrievalConfig.from_env())
hits = service.retrieve("field_metadata", "cost per click last week", max_results=10)
"""

from gaql_context.config import RetrievalConfig
from gaql_context.core import (
    Corrupt,
    DimensionMismatch,
    EmbeddingProvider,
    InvalidCorpus,
    NotFound,
    PersistenceFailure,
    ProviderFailure,
    RetrievalError,
    RetrievedDocument,
)
from gaql_context.retrieval import (
    CacheManager,
    CacheState,
    ContentFingerprint,
    DescriptionEnricher,
    Document,
    RetrievalService,
    VectorIndex,
)

__version__ = "0.1.0"

__all__ = [
    "RetrievalConfig",
    "EmbeddingProvider",
    "RetrievedDocument",
    "RetrievalError",
    "DimensionMismatch",
    "NotFound",
    "InvalidCorpus",
    "Corrupt",
    "ProviderFailure",
    "PersistenceFailure",
    "CacheManager",
    "CacheState",
    "ContentFingerprint",
    "DescriptionEnricher",
    "Document",
    "RetrievalService",
    "VectorIndex",
]
