"""Tests for LocalVectorStore and BatchingVectorStore."""

import json
import threading
import time
from unittest.mock import Mock

import numpy as np
import pytest

from devmemory.services.backends import VectorStore
from devmemory.utils.batching_vector_store import BatchingVectorStore
from devmemory.utils.local_vector_store import (LocalVectorStore, VectorStoreError, cosine_similarity,
                                                matches_filters)

VOCABULARY = ['react', 'hooks', 'python', 'asyncio', 'docker']


class KeywordEmbedder:
    """Bag-of-words over a fixed vocabulary."""

    def __init__(self):
        self.calls = 0

    def embed_document(self, text):
        self.calls += 1
        words = text.lower().split()
        return [float(words.count(term)) for term in VOCABULARY]

    embed_query = embed_document


@pytest.fixture
def embedder() -> KeywordEmbedder:
    return KeywordEmbedder()


@pytest.fixture
def store(tmp_path, embedder) -> LocalVectorStore:
    return LocalVectorStore(str(tmp_path / 'vectors' / 'store.json'), embedder)


class TestCosineSimilarity:
    """Tests for cosine_similarity."""

    def test_identical_and_orthogonal(self):
        assert cosine_similarity(np.array([1.0, 2.0]), np.array([2.0, 4.0])) == pytest.approx(1.0)
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 1.0])) == 0.0

    def test_zero_and_mismatched_vectors(self):
        assert cosine_similarity(np.zeros(3), np.ones(3)) == 0.0
        assert cosine_similarity(np.ones(2), np.ones(3)) == 0.0


class TestMatchesFilters:
    """Tests for metadata filtering."""

    def test_equality_and_list_membership(self):
        metadata = {'kind': 'note', 'tags': ['react', 'ui']}
        assert matches_filters(metadata, {'kind': 'note', 'tags': 'react'})
        assert matches_filters(metadata, {'tags': ['backend', 'ui']})
        assert not matches_filters(metadata, {'kind': 'decision'})
        assert not matches_filters(metadata, {'tags': ['backend']})
        assert matches_filters(metadata, None)

    def test_date_range_bounds_updated_at(self):
        metadata = {'updated_at': '2024-06-01T00:00:00+00:00'}
        assert matches_filters(metadata, {'date_from': '2024-01-01'})
        assert matches_filters(metadata, {'date_from': '2024-06-01T00:00:00Z', 'date_to': '2024-06-01T00:00:00Z'})
        assert not matches_filters(metadata, {'date_from': '2024-07-01'})
        assert not matches_filters(metadata, {'date_to': '2024-05-31'})
        assert not matches_filters({}, {'date_from': '2024-01-01'})

    def test_empty_filter_values_are_ignored(self):
        assert matches_filters({'kind': 'note'}, {'kind': 'note', 'project': None, 'tags': []})


class TestLocalVectorStore:
    """Tests for LocalVectorStore."""

    def test_query_orders_by_similarity(self, store: LocalVectorStore):
        store.upsert('r1', 'react hooks')
        store.upsert('r2', 'react react python')
        store.upsert('r3', 'docker')

        results = store.similarity_query('react hooks', k=5, threshold=0.1)

        assert [record_id for record_id, _ in results] == ['r1', 'r2']
        assert results[0][1] == pytest.approx(1.0)

    def test_threshold_k_and_filters(self, store: LocalVectorStore):
        store.upsert('r1', 'python asyncio', {'kind': 'note'})
        store.upsert('r2', 'python', {'kind': 'decision'})

        assert store.similarity_query('python', k=0, threshold=0.0) == []
        assert [r for r, _ in store.similarity_query('python', k=1, threshold=0.0)] == ['r2']
        assert [r for r, _ in store.similarity_query('python', k=5, threshold=0.0, filters={'kind': 'note'})] == ['r1']
        assert store.similarity_query('python', k=5, threshold=0.99, filters={'kind': 'note'}) == []

    def test_date_filters_keep_semantic_hits(self, store: LocalVectorStore):
        store.upsert('r1', 'python', {'updated_at': '2024-06-01T00:00:00+00:00'})
        store.upsert('r2', 'python', {'updated_at': '2023-06-01T00:00:00+00:00'})

        results = store.similarity_query('python', k=5, threshold=0.0, filters={'date_from': '2024-01-01'})

        assert [record_id for record_id, _ in results] == ['r1']
        assert results[0][1] == pytest.approx(1.0)

    def test_upsert_replaces_and_delete_is_idempotent(self, store: LocalVectorStore):
        store.upsert('r1', 'docker')
        store.upsert('r1', 'react')
        assert store.count() == 1
        assert store.similarity_query('docker', k=5, threshold=0.5) == []

        store.delete('r1')
        store.delete('r1')
        assert store.count() == 0

    def test_persists_across_instances(self, tmp_path, store: LocalVectorStore, embedder):
        store.upsert('r1', 'react hooks', {'kind': 'note'})

        with open(store.path, encoding='utf-8') as f:
            saved = json.load(f)
        assert saved['version'] == '1.0'
        assert [doc['id'] for doc in saved['embeddings']] == ['r1']

        reloaded = LocalVectorStore(store.path, embedder)
        assert reloaded.count() == 1
        assert reloaded.similarity_query('react', k=1, threshold=0.1)[0][0] == 'r1'

    def test_loads_bare_list_format(self, tmp_path, embedder):
        path = tmp_path / 'legacy.json'
        path.write_text(json.dumps([{'id': 'old', 'embedding': [1, 0, 0, 0, 0], 'metadata': {}}]))

        store = LocalVectorStore(str(path), embedder)

        assert store.count() == 1

    def test_corrupt_file_starts_empty(self, tmp_path, embedder):
        path = tmp_path / 'broken.json'
        path.write_text('{not json')
        assert LocalVectorStore(str(path), embedder).count() == 0

    def test_memory_only_store(self, embedder):
        store = LocalVectorStore(None, embedder)
        store.upsert('r1', 'python')
        assert store.count() == 1

    def test_save_failure_raises(self, tmp_path, embedder):
        blocker = tmp_path / 'file'
        blocker.write_text('')
        store = LocalVectorStore(str(blocker / 'store.json'), embedder)

        with pytest.raises(VectorStoreError):
            store.upsert('r1', 'python')

    def test_reset(self, store: LocalVectorStore):
        store.upsert('r1', 'python')
        store.reset()
        assert store.count() == 0


class TestBatchingVectorStore:
    """Tests for BatchingVectorStore."""

    def test_flushes_when_batch_is_full(self, store: LocalVectorStore, embedder: KeywordEmbedder):
        batching = BatchingVectorStore(store, batch_size=2, batch_interval=60)

        batching.upsert('r1', 'react')
        assert batching.pending == 1
        assert store.count() == 0

        batching.upsert('r2', 'python')
        assert batching.pending == 0
        assert store.count() == 2
        batching.close()

    def test_flushes_after_interval(self, store: LocalVectorStore):
        batching = BatchingVectorStore(store, batch_size=100, batch_interval=0.05)
        batching.upsert('r1', 'react')

        deadline = time.time() + 2
        while store.count() == 0 and time.time() < deadline:
            time.sleep(0.01)

        assert store.count() == 1
        batching.close()

    def test_query_sees_pending_writes(self, store: LocalVectorStore):
        batching = BatchingVectorStore(store, batch_size=100, batch_interval=60)
        batching.upsert('r1', 'react hooks')

        assert batching.similarity_query('react', k=5, threshold=0.1)[0][0] == 'r1'
        batching.close()

    def test_later_write_wins_for_same_id(self, store: LocalVectorStore):
        batching = BatchingVectorStore(store, batch_size=100, batch_interval=60)
        batching.upsert('r1', 'react')
        batching.delete('r1')
        assert batching.count() == 0

        batching.delete('r2')
        batching.upsert('r2', 'docker')
        assert batching.count() == 1
        batching.close()

    def test_inner_store_without_bulk_methods(self):
        inner = Mock(spec=['upsert', 'delete', 'similarity_query', 'count', 'close', 'health_check'])
        batching = BatchingVectorStore(inner, batch_size=10, batch_interval=60)

        batching.delete('old')
        batching.upsert('new', 'text', {'kind': 'note'})
        batching.flush()

        inner.delete.assert_called_once_with('old')
        inner.upsert.assert_called_once_with('new', 'text', {'kind': 'note'})

    def test_close_flushes_and_closes_inner(self):
        inner = Mock()
        batching = BatchingVectorStore(inner, batch_size=10, batch_interval=60)
        batching.upsert('r1', 'text')

        batching.close()

        inner.upsert_many.assert_called_once_with([('r1', 'text', None)])
        inner.close.assert_called_once()
        assert batching.pending == 0


class SlowStore(VectorStore):
    """Records applied writes; the first bulk upsert stalls."""

    def __init__(self, delay=0.3, fail_upserts=0):
        self.documents = {}
        self.delay = delay
        self.fail_upserts = fail_upserts
        self.entered = threading.Event()

    def upsert(self, record_id, text, metadata=None):
        self.upsert_many([(record_id, text, metadata)])

    def upsert_many(self, items):
        if self.fail_upserts:
            self.fail_upserts -= 1
            raise RuntimeError('embedding service unavailable')
        if not self.entered.is_set():
            self.entered.set()
            time.sleep(self.delay)
        for record_id, text, _ in items:
            self.documents[record_id] = text

    def delete(self, record_id):
        self.documents.pop(record_id, None)

    def similarity_query(self, text, k, threshold, filters=None):
        return []


class TestBatchingFlushOrdering:
    """Tests for concurrent and failing flushes."""

    def test_newer_write_wins_over_stalled_timer_flush(self):
        inner = SlowStore(delay=0.3)
        batching = BatchingVectorStore(inner, batch_size=100, batch_interval=0.01)

        batching.upsert('r1', 'v1')
        assert inner.entered.wait(2)
        batching.upsert('r1', 'v2')
        batching.flush()

        assert inner.documents['r1'] == 'v2'
        batching.close()

    def test_delete_is_not_undone_by_stalled_upsert(self):
        inner = SlowStore(delay=0.3)
        batching = BatchingVectorStore(inner, batch_size=100, batch_interval=0.01)

        batching.upsert('r1', 'v1')
        assert inner.entered.wait(2)
        batching.delete('r1')
        batching.flush()

        assert 'r1' not in inner.documents
        batching.close()

    def test_failed_flush_requeues_batch(self):
        inner = SlowStore(delay=0, fail_upserts=1)
        batching = BatchingVectorStore(inner, batch_size=100, batch_interval=60)
        batching.upsert('r1', 'v1')
        batching.upsert('r2', 'v1')

        with pytest.raises(RuntimeError):
            batching.flush()
        assert batching.pending == 2

        batching.upsert('r1', 'v2')
        batching.flush()

        assert inner.documents == {'r1': 'v2', 'r2': 'v1'}
        assert batching.pending == 0
        batching.close()
