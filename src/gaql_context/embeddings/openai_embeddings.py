"""
Embeddings Module - Single Responsibility: Generate text embeddings.

It has ONE job: convert text to vector embeddings.
- No persistence logic, no document handling
- Easy to swap for different embedding providers
- Every provider exposes a model_id that feeds the cache fingerprint
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import threading

import numpy as np
import openai
from openai import OpenAI

from gaql_context.core.errors import ProviderFailure
from gaql_context.core.protocols import EmbeddingProvider

logger = logging.getLogger(__name__)

_KNOWN_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

_TOKEN_RE = re.compile(r"[a-z0-9]+")


class OpenAIEmbeddings:
    """
    OpenAI-based embedding provider.

    Uses text-embedding-3-small by default (1536 dimensions). base_url points
    the client at any OpenAI-compatible server (Ollama, vLLM, LM Studio).
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        base_url: str | None = None,
        dimensions: int | None = None,
        timeout: float = 60.0,
        max_retries: int = 2,
    ):
        self.model = model
        self.base_url = base_url
        self._dimensions = dimensions
        self._client = OpenAI(
            api_key=api_key or os.environ.get("OPENAI_API_KEY"),
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
        )

    @property
    def model_id(self) -> str:
        host = self.base_url or "api.openai.com"
        dims = self._dimensions if self._dimensions is not None else "default"
        return f"openai:{host}:{self.model}:{dims}"

    @property
    def dimension(self) -> int | None:
        """Return embedding dimensions for the model, if known up front."""
        if self._dimensions is not None:
            return self._dimensions
        return _KNOWN_DIMENSIONS.get(self.model)

    def _create(self, texts: str | list[str]):
        kwargs = {"input": texts, "model": self.model}
        if self._dimensions is not None:
            kwargs["dimensions"] = self._dimensions
        try:
            return self._client.embeddings.create(**kwargs)
        except openai.OpenAIError as e:
            raise ProviderFailure(f"Embedding request to {self.model} failed: {e}") from e

    def embed(self, text: str) -> np.ndarray:
        """Generate embedding for a single text."""
        response = self._create(text)
        return np.array(response.data[0].embedding, dtype=np.float32)

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts efficiently."""
        if not texts:
            return []

        response = self._create(texts)
        # The API may return items out of order; index restores input order.
        items = sorted(response.data, key=lambda item: item.index)
        if len(items) != len(texts):
            raise ProviderFailure(
                f"Provider returned {len(items)} embeddings for {len(texts)} texts"
            )
        return [np.array(item.embedding, dtype=np.float32) for item in items]


class MockEmbeddings:
    """
    Mock embedding provider for testing without API calls.

    Generates deterministic hashed bag-of-words vectors, L2 normalized, so
    texts sharing words get genuinely higher cosine similarity. Counts calls
    so tests can assert cache hits.
    NOT for production use - only for testing/offline development.
    """

    def __init__(self, dimensions: int = 384, model_name: str = "hashing-bow"):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self._dimensions = dimensions
        self.model_name = model_name
        self.batch_calls = 0
        self.texts_embedded = 0
        self._lock = threading.Lock()

    @property
    def model_id(self) -> str:
        return f"mock:{self.model_name}:{self._dimensions}"

    @property
    def dimension(self) -> int:
        return self._dimensions

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.sha256(token.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "big") % self._dimensions
        sign = 1.0 if digest[4] & 1 else -1.0
        return index, sign

    def embed(self, text: str) -> np.ndarray:
        """Generate deterministic pseudo-embedding from hashed tokens."""
        with self._lock:
            self.texts_embedded += 1
        vector = np.zeros(self._dimensions, dtype=np.float32)
        tokens = _TOKEN_RE.findall(text.lower()) or [""]
        for token in tokens:
            index, sign = self._bucket(token)
            vector[index] += sign
        norm = np.linalg.norm(vector)
        if norm == 0:
            # Colliding tokens cancelled out; fall back to the first token.
            index, sign = self._bucket(tokens[0])
            vector[index] = sign
            norm = 1.0
        return vector / norm

    def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        """Generate embeddings for multiple texts."""
        with self._lock:
            self.batch_calls += 1
        return [self.embed(text) for text in texts]

    @property
    def calls(self) -> int:
        """Total provider round trips (batch calls)."""
        return self.batch_calls


def get_embedding_provider(
    name: str = "openai",
    *,
    model: str | None = None,
    base_url: str | None = None,
    dimensions: int | None = None,
    timeout: float = 60.0,
) -> EmbeddingProvider:
    """
    Factory function to get the appropriate embedding provider.

    Args:
        name: "openai" or "mock"
        model: Model name (provider default if omitted)
        base_url: OpenAI-compatible endpoint (openai only)
        dimensions: Requested output dimensions
        timeout: Request timeout in seconds (openai only)
    """
    name = name.lower()
    if name == "mock":
        return MockEmbeddings(
            dimensions=dimensions or 384,
            model_name=model or "hashing-bow",
        )
    if name == "openai":
        return OpenAIEmbeddings(
            model=model or "text-embedding-3-small",
            base_url=base_url,
            dimensions=dimensions,
            timeout=timeout,
        )
    raise ValueError(f"Unknown embedding provider: {name!r} (expected 'openai' or 'mock')")
