"""
Core protocols defining contracts for the retrieval engine.

PATTERN:
- Protocol defines the contract
- Multiple implementations possible
- Factory functions for instantiation
- Test doubles for fast unit tests

Embedding providers are selected by configuration through
get_embedding_provider(); call sites only ever see EmbeddingProvider.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import numpy as np


# ---------------------------------------------------------------------------
# EMBEDDING PROVIDER PROTOCOL
# ---------------------------------------------------------------------------


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Contract for embedding generation.

    Implementations:
    - OpenAIEmbeddings (production, any OpenAI-compatible endpoint)
    - MockEmbeddings (testing)

    model_id must change whenever the vectors the provider produces would
    change (provider, model name, output dimensions). It is part of the
    cache fingerprint.
    """

    @property
    def model_id(self) -> str:
        """Stable identifier of provider + model + output-affecting parameters."""
        ...

    @property
    def dimension(self) -> int | None:
        """Declared output dimension, or None if only known after a call."""
        ...

    def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        ...

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts."""
        ...


# ---------------------------------------------------------------------------
# RETRIEVAL RESULT
# ---------------------------------------------------------------------------


@dataclass
class RetrievedDocument:
    """A retrieved document with its similarity score (higher = more relevant)."""

    id: str
    text: str
    attributes: dict[str, Any] = field(default_factory=dict)
    score: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "text": self.text,
            "attributes": dict(self.attributes),
            "score": self.score,
        }
