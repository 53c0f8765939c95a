"""
Core module - shared protocols, result types and errors.

USAGE:
------
from gaql_context.core import EmbeddingProvider, ProviderFailure

class MyEmbeddings:
    '''Implements EmbeddingProvider protocol.'''
    ...
"""

from gaql_context.core.errors import (
    Corrupt,
    DimensionMismatch,
    InvalidCorpus,
    NotFound,
    PersistenceFailure,
    ProviderFailure,
    RetrievalError,
)
from gaql_context.core.protocols import (
    EmbeddingProvider,
    RetrievedDocument,
)

__all__ = [
    # Protocols
    "EmbeddingProvider",
    # Data classes
    "RetrievedDocument",
    # Errors
    "RetrievalError",
    "DimensionMismatch",
    "NotFound",
    "InvalidCorpus",
    "Corrupt",
    "ProviderFailure",
    "PersistenceFailure",
]
