"""
Unit Tests for Embedding Providers

OpenAIEmbeddings is tested against a patched client; no network.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import numpy as np
import openai
import pytest

from gaql_context.core.errors import ProviderFailure
from gaql_context.core.protocols import EmbeddingProvider
from gaql_context.embeddings import MockEmbeddings, OpenAIEmbeddings, get_embedding_provider


def embedding_response(vectors, order=None):
    order = order or range(len(vectors))
    return SimpleNamespace(data=[SimpleNamespace(index=i, embedding=vectors[i]) for i in order])


@pytest.fixture
def client():
    with patch("gaql_context.embeddings.openai_embeddings.OpenAI") as cls:
        instance = MagicMock()
        cls.return_value = instance
        yield instance


# ---------------------------------------------------------------------------
# OPENAI PROVIDER
# ---------------------------------------------------------------------------


class TestOpenAIEmbeddings:
    def test_implements_protocol(self, client):
        assert isinstance(OpenAIEmbeddings(api_key="k"), EmbeddingProvider)

    def test_model_id_covers_host_model_and_dimensions(self, client):
        default = OpenAIEmbeddings(api_key="k")
        local = OpenAIEmbeddings(api_key="k", base_url="http://localhost:11434/v1", model="nomic-embed-text")
        reduced = OpenAIEmbeddings(api_key="k", dimensions=256)

        assert default.model_id == "openai:api.openai.com:text-embedding-3-small:default"
        assert local.model_id == "openai:http://localhost:11434/v1:nomic-embed-text:default"
        assert reduced.model_id.endswith(":256")
        assert len({default.model_id, local.model_id, reduced.model_id}) == 3

    def test_known_dimensions(self, client):
        assert OpenAIEmbeddings(api_key="k").dimension == 1536
        assert OpenAIEmbeddings(api_key="k", model="text-embedding-3-large").dimension == 3072
        assert OpenAIEmbeddings(api_key="k", dimensions=512).dimension == 512
        assert OpenAIEmbeddings(api_key="k", model="nomic-embed-text").dimension is None

    def test_embed_batch_restores_input_order(self, client):
        client.embeddings.create.return_value = embedding_response([[1.0, 0.0], [0.0, 1.0]], order=[1, 0])

        vectors = OpenAIEmbeddings(api_key="k").embed_batch(["first", "second"])

        np.testing.assert_array_equal(vectors[0], [1.0, 0.0])
        np.testing.assert_array_equal(vectors[1], [0.0, 1.0])
        assert vectors[0].dtype == np.float32

    def test_dimensions_passed_only_when_set(self, client):
        client.embeddings.create.return_value = embedding_response([[0.5]])

        OpenAIEmbeddings(api_key="k").embed("x")
        assert "dimensions" not in client.embeddings.create.call_args.kwargs

        OpenAIEmbeddings(api_key="k", dimensions=1).embed("x")
        assert client.embeddings.create.call_args.kwargs["dimensions"] == 1

    def test_empty_batch_makes_no_request(self, client):
        assert OpenAIEmbeddings(api_key="k").embed_batch([]) == []
        client.embeddings.create.assert_not_called()

    def test_api_error_becomes_provider_failure(self, client):
        client.embeddings.create.side_effect = openai.OpenAIError("quota exceeded")
        with pytest.raises(ProviderFailure, match="quota exceeded"):
            OpenAIEmbeddings(api_key="k").embed_batch(["x"])

    def test_short_response_is_provider_failure(self, client):
        client.embeddings.create.return_value = embedding_response([[1.0]])
        with pytest.raises(ProviderFailure):
            OpenAIEmbeddings(api_key="k").embed_batch(["a", "b"])


# ---------------------------------------------------------------------------
# MOCK PROVIDER
# ---------------------------------------------------------------------------


class TestMockEmbeddings:
    def test_deterministic(self):
        a = MockEmbeddings(dimensions=64).embed("cost per click")
        b = MockEmbeddings(dimensions=64).embed("cost per click")
        np.testing.assert_array_equal(a, b)

    def test_unit_norm(self):
        vector = MockEmbeddings(dimensions=64).embed("impressions by device")
        assert np.linalg.norm(vector) == pytest.approx(1.0)

    def test_shared_words_score_higher(self):
        provider = MockEmbeddings(dimensions=256)
        query = provider.embed("cost per click metrics")
        related = provider.embed("cost per click")
        unrelated = provider.embed("video views")
        assert float(query @ related) > float(query @ unrelated)

    def test_counts_calls(self):
        provider = MockEmbeddings(dimensions=8)
        provider.embed_batch(["a", "b", "c"])
        provider.embed("d")
        assert provider.batch_calls == 1
        assert provider.calls == 1
        assert provider.texts_embedded == 4

    def test_model_id_includes_dimension(self):
        assert MockEmbeddings(dimensions=8).model_id != MockEmbeddings(dimensions=16).model_id

    def test_invalid_dimensions(self):
        with pytest.raises(ValueError):
            MockEmbeddings(dimensions=0)


# ---------------------------------------------------------------------------
# FACTORY
# ---------------------------------------------------------------------------


class TestFactory:
    def test_mock(self):
        provider = get_embedding_provider("mock", dimensions=32)
        assert isinstance(provider, MockEmbeddings)
        assert provider.dimension == 32

    def test_openai(self, client):
        provider = get_embedding_provider("OpenAI", model="text-embedding-3-large")
        assert isinstance(provider, OpenAIEmbeddings)
        assert provider.model == "text-embedding-3-large"

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            get_embedding_provider("cohere")
