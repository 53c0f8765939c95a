"""
Unit Tests for CacheManager

Rebuild triggering is the core property: an unchanged corpus must cost zero
embedding calls, and every change that alters vectors must rebuild.
Each "process" is modelled by a fresh CacheManager over the same directory.
"""

import logging
import threading
import time
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from gaql_context.core.errors import (
    DimensionMismatch,
    InvalidCorpus,
    NotFound,
    PersistenceFailure,
    ProviderFailure,
)
from gaql_context.embeddings import MockEmbeddings
from gaql_context.retrieval.cache import CacheManager, CacheState, RebuildReason
from gaql_context.retrieval.distance import DistanceMetric
from gaql_context.retrieval.document import Document
from gaql_context.retrieval.index import VectorIndex
from gaql_context.retrieval.metadata import METADATA_FILENAME


# ---------------------------------------------------------------------------
# FIXTURES
# ---------------------------------------------------------------------------


@pytest.fixture
def corpus():
    """Mutable corpus; tests edit it between 'processes'."""
    return [
        Document(id="metrics.clicks", text="clicks on ads", attributes={"category": "METRIC"}),
        Document(id="metrics.impressions", text="ad impressions", attributes={"category": "METRIC"}),
        Document(id="metrics.cost_micros", text="cost in micros", attributes={"category": "METRIC"}),
        Document(id="segments.device", text="device type", attributes={"category": "SEGMENT"}),
        Document(id="campaign.name", text="campaign name", attributes={"category": "ATTRIBUTE"}),
    ]


@pytest.fixture
def index(tmp_path):
    return VectorIndex(tmp_path / "cache")


@pytest.fixture
def provider():
    return MockEmbeddings(dimensions=64)


@pytest.fixture
def make_manager(corpus, index):
    def factory(provider, **kwargs):
        return CacheManager("fields", lambda: list(corpus), provider, index, batch_size=2, **kwargs)

    return factory


# ---------------------------------------------------------------------------
# REBUILD TRIGGERING
# ---------------------------------------------------------------------------


class TestRebuildTriggering:
    def test_first_run_builds(self, make_manager, provider, corpus):
        manager = make_manager(provider)
        assert manager.validate() is CacheState.MISSING

        handle = manager.ensure_ready()

        assert manager.state is CacheState.READY
        assert manager.last_rebuild_reason is RebuildReason.MISSING
        assert len(handle) == len(corpus)
        assert provider.texts_embedded == len(corpus)
        assert provider.batch_calls == 3  # 5 docs, batch_size=2

    def test_unchanged_corpus_costs_zero_embedding_calls(self, make_manager, provider):
        make_manager(provider).ensure_ready()
        fresh_provider = MockEmbeddings(dimensions=64)

        manager = make_manager(fresh_provider)
        assert manager.validate() is CacheState.VALID
        handle = manager.ensure_ready()

        assert fresh_provider.batch_calls == 0
        assert fresh_provider.texts_embedded == 0
        assert manager.last_rebuild_reason is None
        assert len(handle) == 5

    def test_ready_manager_does_not_revalidate(self, make_manager, provider):
        manager = make_manager(provider)
        first = manager.ensure_ready()
        assert manager.ensure_ready() is first

    def test_text_change_rebuilds(self, make_manager, provider, corpus):
        first = make_manager(provider).ensure_ready()
        corpus[0] = Document(id="metrics.clicks", text="clicks on ads, all networks", attributes={"category": "METRIC"})

        manager = make_manager(provider)
        assert manager.validate() is CacheState.STALE
        second = manager.ensure_ready()

        assert manager.last_rebuild_reason is RebuildReason.HASH_MISMATCH
        assert second.metadata.snapshot_id != first.metadata.snapshot_id
        assert second.created_at >= first.created_at
        assert "clicks on ads, all networks" in [d.text for d in second.documents]

    def test_attribute_change_rebuilds(self, make_manager, provider, corpus):
        make_manager(provider).ensure_ready()
        corpus[3] = Document(id="segments.device", text="device type", attributes={"category": "METRIC"})
        assert make_manager(provider).validate() is CacheState.STALE

    def test_added_document_rebuilds(self, make_manager, provider, corpus):
        make_manager(provider).ensure_ready()
        corpus.append(Document(id="segments.date", text="date"))

        manager = make_manager(provider)
        handle = manager.ensure_ready()
        assert manager.last_rebuild_reason is RebuildReason.HASH_MISMATCH
        assert len(handle) == 6

    def test_removed_document_rebuilds(self, make_manager, provider, corpus):
        make_manager(provider).ensure_ready()
        corpus.pop()

        manager = make_manager(provider)
        assert len(manager.ensure_ready()) == 4
        assert manager.last_rebuild_reason is RebuildReason.HASH_MISMATCH

    def test_model_change_reembeds_everything(self, make_manager, provider, corpus):
        make_manager(provider).ensure_ready()
        other = MockEmbeddings(dimensions=64, model_name="other-model")

        manager = make_manager(other)
        manager.ensure_ready()

        assert manager.last_rebuild_reason is RebuildReason.MODEL_CHANGED
        assert other.texts_embedded == len(corpus)

    def test_dimension_change_is_a_model_change(self, make_manager, provider):
        make_manager(provider).ensure_ready()
        wider = MockEmbeddings(dimensions=128)

        manager = make_manager(wider)
        handle = manager.ensure_ready()
        assert manager.last_rebuild_reason is RebuildReason.MODEL_CHANGED
        assert handle.dimension == 128

    def test_schema_version_change_rebuilds(self, make_manager, provider):
        make_manager(provider, schema_version=1).ensure_ready()

        manager = make_manager(provider, schema_version=2)
        manager.ensure_ready()
        assert manager.last_rebuild_reason is RebuildReason.SCHEMA_VERSION

    def test_metric_change_rebuilds(self, make_manager, provider):
        make_manager(provider).ensure_ready()

        manager = make_manager(provider, distance_metric=DistanceMetric.L2)
        handle = manager.ensure_ready()
        assert manager.last_rebuild_reason is RebuildReason.METRIC_CHANGED
        assert handle.metric is DistanceMetric.L2

    def test_salt_change_rebuilds(self, make_manager, provider):
        make_manager(provider, salt="DESCRIPTION_VERSION_2").ensure_ready()
        manager = make_manager(provider, salt="DESCRIPTION_VERSION_3")
        manager.ensure_ready()
        assert manager.last_rebuild_reason is RebuildReason.HASH_MISMATCH

    def test_forced_rebuild(self, make_manager, provider, caplog):
        caplog.set_level(logging.INFO, logger="gaql_context")
        manager = make_manager(provider)
        manager.ensure_ready()
        before = provider.texts_embedded

        manager.rebuild()

        assert manager.last_rebuild_reason is RebuildReason.FORCED
        assert provider.texts_embedded == before + 5
        assert "reason=forced" in caplog.text


class TestRebuildLogging:
    def test_log_states_reason(self, make_manager, provider, corpus, caplog):
        make_manager(provider).ensure_ready()
        corpus.pop()
        caplog.set_level(logging.INFO, logger="gaql_context")

        make_manager(provider).ensure_ready()

        assert "reason=hash_mismatch" in caplog.text

    def test_cache_hit_logged(self, make_manager, provider, caplog):
        make_manager(provider).ensure_ready()
        caplog.set_level(logging.INFO, logger="gaql_context")

        make_manager(provider).ensure_ready()

        assert "cache valid" in caplog.text
        assert "rebuilding" not in caplog.text


# ---------------------------------------------------------------------------
# CORRUPTION
# ---------------------------------------------------------------------------


class TestCorruptionRecovery:
    def test_unparseable_metadata_rebuilds(self, make_manager, provider, index):
        make_manager(provider).ensure_ready()
        (index.collection_dir("fields") / METADATA_FILENAME).write_text("garbage")

        manager = make_manager(provider)
        assert manager.validate() is CacheState.CORRUPT
        handle = manager.ensure_ready()

        assert manager.last_rebuild_reason is RebuildReason.CORRUPT
        assert len(handle) == 5

    def test_damaged_vectors_rebuild(self, make_manager, provider, index):
        first = make_manager(provider).ensure_ready()
        snapshot = index.collection_dir("fields") / "snapshots" / first.metadata.snapshot_id
        (snapshot / "vectors.npy").unlink()

        manager = make_manager(provider)
        handle = manager.ensure_ready()

        assert manager.last_rebuild_reason is RebuildReason.CORRUPT
        assert handle.metadata.snapshot_id != first.metadata.snapshot_id


# ---------------------------------------------------------------------------
# FAILURES
# ---------------------------------------------------------------------------


def failing_provider(exc):
    provider = MagicMock()
    provider.model_id = "mock:failing:64"
    provider.dimension = 64
    provider.embed_batch.side_effect = exc
    return provider


class TestProviderFailures:
    def test_provider_exception_becomes_provider_failure(self, make_manager):
        manager = make_manager(failing_provider(ConnectionError("refused")))
        with pytest.raises(ProviderFailure, match="refused"):
            manager.ensure_ready()

    def test_failed_rebuild_keeps_previous_snapshot(self, make_manager, provider, corpus, index):
        first = make_manager(provider).ensure_ready()
        corpus.pop()

        manager = make_manager(failing_provider(ProviderFailure("down")))
        with pytest.raises(ProviderFailure):
            manager.ensure_ready()

        assert index.open("fields").metadata.snapshot_id == first.metadata.snapshot_id

    def test_timeout_releases_caller_promptly(self, make_manager):
        release = threading.Event()
        provider = MagicMock()
        provider.model_id = "mock:hung:4"
        provider.dimension = 4

        def hung(texts):
            release.wait(5)
            return [np.ones(4) for _ in texts]

        provider.embed_batch.side_effect = hung
        manager = make_manager(provider, embed_timeout=0.1)

        try:
            start = time.perf_counter()
            with pytest.raises(ProviderFailure, match="timed out"):
                manager.ensure_ready()
            assert time.perf_counter() - start < 1.0
        finally:
            release.set()

    def test_failure_cancels_queued_batches(self, make_manager):
        provider = failing_provider(ConnectionError("refused"))
        manager = make_manager(provider, max_concurrency=1)

        with pytest.raises(ProviderFailure):
            manager.ensure_ready()

        # 5 documents in batches of 2; the last batch never starts.
        assert provider.embed_batch.call_count < 3

    def test_non_finite_embeddings_rejected(self, make_manager):
        provider = MagicMock()
        provider.model_id = "mock:nan:4"
        provider.dimension = 4
        provider.embed_batch.side_effect = lambda texts: [np.full(4, np.nan) for _ in texts]

        with pytest.raises(ProviderFailure, match="non-finite"):
            make_manager(provider).ensure_ready()

    def test_short_batch_rejected(self, make_manager):
        provider = MagicMock()
        provider.model_id = "mock:short:4"
        provider.dimension = 4
        provider.embed_batch.side_effect = lambda texts: [np.ones(4)]

        with pytest.raises(ProviderFailure):
            make_manager(provider).ensure_ready()

    def test_declared_dimension_enforced(self, make_manager):
        provider = MagicMock()
        provider.model_id = "mock:liar:64"
        provider.dimension = 64
        provider.embed_batch.side_effect = lambda texts: [np.ones(32) for _ in texts]

        with pytest.raises(DimensionMismatch):
            make_manager(provider).ensure_ready()


class TestPersistenceFailures:
    def test_failed_swap_propagates_and_keeps_old_snapshot(self, make_manager, provider, corpus, index):
        first = make_manager(provider).ensure_ready()
        corpus.pop()

        manager = make_manager(provider)
        with patch("gaql_context.retrieval.index.write_metadata", side_effect=OSError("read-only")):
            with pytest.raises(PersistenceFailure, match="read-only"):
                manager.ensure_ready()

        assert manager.handle is None
        assert manager.state is CacheState.STALE
        assert index.open("fields").metadata.snapshot_id == first.metadata.snapshot_id
        assert make_manager(provider).validate() is CacheState.STALE

    def test_no_previous_snapshot_raises(self, make_manager, provider):
        manager = make_manager(provider)
        with patch("gaql_context.retrieval.index.write_metadata", side_effect=OSError("read-only")):
            with pytest.raises(PersistenceFailure):
                manager.ensure_ready()


class TestCorpusErrors:
    def test_supplier_exception_becomes_not_found(self, index, provider):
        def broken():
            raise RuntimeError("metadata API returned 500")

        manager = CacheManager("fields", broken, provider, index)
        with pytest.raises(NotFound, match="returned 500"):
            manager.ensure_ready()

    def test_duplicate_ids_raise_invalid_corpus(self, index, provider):
        docs = [Document(id="a", text="first"), Document(id="a", text="second")]
        manager = CacheManager("fields", lambda: docs, provider, index)

        with pytest.raises(InvalidCorpus, match="Duplicate"):
            manager.ensure_ready()
        assert provider.batch_calls == 0


# ---------------------------------------------------------------------------
# BATCHING
# ---------------------------------------------------------------------------


class TestBatching:
    def test_concurrency_is_bounded(self, corpus, index):
        active = 0
        peak = 0
        calls = 0
        lock = threading.Lock()
        inner = MockEmbeddings(dimensions=16)

        def tracked(texts):
            nonlocal active, peak, calls
            with lock:
                calls += 1
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return inner.embed_batch(texts)

        provider = MagicMock()
        provider.model_id = inner.model_id
        provider.dimension = 16
        provider.embed_batch.side_effect = tracked

        docs = [Document(id=f"d{i}", text=f"text {i}") for i in range(20)]
        manager = CacheManager("many", lambda: docs, provider, index, batch_size=2, max_concurrency=3)
        handle = manager.ensure_ready()

        assert calls == 10
        assert 1 <= peak <= 3
        assert [d.id for d in handle.documents] == [d.id for d in docs]

    def test_vectors_stay_aligned_with_documents(self, index):
        provider = MockEmbeddings(dimensions=32)
        docs = [Document(id=f"d{i}", text=f"unique token{i}") for i in range(9)]
        handle = CacheManager("aligned", lambda: docs, provider, index, batch_size=4).ensure_ready()

        for position, doc in enumerate(handle.documents):
            np.testing.assert_allclose(handle.vectors[position], provider.embed(doc.text), rtol=1e-6)

    def test_empty_corpus_builds(self, index, provider):
        manager = CacheManager("empty", lambda: [], provider, index)
        handle = manager.ensure_ready()
        assert len(handle) == 0
        assert provider.batch_calls == 0
        assert CacheManager("empty", lambda: [], provider, index).validate() is CacheState.VALID

    def test_invalid_settings(self, index, provider):
        with pytest.raises(ValueError):
            CacheManager("x", lambda: [], provider, index, batch_size=0)
        with pytest.raises(ValueError):
            CacheManager("x", lambda: [], provider, index, max_concurrency=0)


# ---------------------------------------------------------------------------
# STATUS AND CLEAR
# ---------------------------------------------------------------------------


class TestStatusAndClear:
    def test_status_before_build(self, make_manager, provider):
        status = make_manager(provider).status()
        assert status.state is CacheState.MISSING
        assert status.live_document_count == 5
        assert status.document_count is None
        assert provider.texts_embedded == 0

    def test_status_after_build(self, make_manager, provider):
        handle = make_manager(provider).ensure_ready()
        status = make_manager(provider).status()

        assert status.state is CacheState.VALID
        assert status.document_count == 5
        assert status.created_at == handle.created_at
        assert status.model_id == provider.model_id
        assert status.to_dict()["state"] == "valid"

    def test_status_reports_stale_reason(self, make_manager, provider, corpus):
        make_manager(provider).ensure_ready()
        corpus.pop()
        status = make_manager(provider).status()
        assert status.state is CacheState.STALE
        assert status.reason is RebuildReason.HASH_MISMATCH

    def test_clear_forces_rebuild(self, make_manager, provider):
        manager = make_manager(provider)
        manager.ensure_ready()

        assert manager.clear() is True
        assert manager.state is CacheState.UNKNOWN
        assert manager.validate() is CacheState.MISSING

        manager.ensure_ready()
        assert manager.last_rebuild_reason is RebuildReason.MISSING

    def test_unreadable_corpus_is_not_found(self, index, provider):
        from gaql_context.core.errors import NotFound

        def broken():
            raise FileNotFoundError("cookbook.toml")

        with pytest.raises(NotFound):
            CacheManager("broken", broken, provider, index).ensure_ready()
