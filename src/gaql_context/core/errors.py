"""
Error taxonomy for the embedding cache.

Staleness and validation are decided internally and never raised to callers.
Only true failures (provider unreachable, disk write failure) propagate out
of a rebuild. NotFound and Corrupt are raised by the index layer and turned
into rebuilds by the CacheManager.
"""

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for all retrieval engine errors."""


class DimensionMismatch(RetrievalError):
    """Embeddings of one build disagree, or stored and live dimensions differ."""

    def __init__(self, message: str, expected: int | None = None, actual: int | None = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class NotFound(RetrievalError):
    """The collection has never been built (or was cleared)."""


class Corrupt(RetrievalError):
    """Persisted snapshot or metadata cannot be parsed."""


class ProviderFailure(RetrievalError):
    """The embedding provider failed or timed out. Callers may retry."""


class PersistenceFailure(RetrievalError):
    """Writing or swapping a snapshot failed. The previous snapshot is intact."""


class InvalidCorpus(RetrievalError, ValueError):
    """The corpus cannot be indexed as supplied, e.g. duplicate document ids."""
