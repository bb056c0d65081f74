"""Tests for the OpenSearch text and vector stores against a mocked client."""

from unittest.mock import MagicMock

import pytest
from conftest import make_record
from opensearchpy.exceptions import NotFoundError, TransportError

from devmemory.utils.config import OpenSearchConfig
from devmemory.utils.opensearch_client import (OpenSearchError, OpenSearchTextStore, OpenSearchVectorStore,
                                               build_filter_clauses)


@pytest.fixture
def opensearch_config() -> OpenSearchConfig:
    return OpenSearchConfig(endpoint='localhost',
                            port=9200,
                            region='us-east-1',
                            index_name='devmemory',
                            dimension=3,
                            auth='none',
                            use_ssl=False)


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def text_store(opensearch_config, client) -> OpenSearchTextStore:
    return OpenSearchTextStore(opensearch_config, client=client)


@pytest.fixture
def embedder() -> MagicMock:
    embedder = MagicMock()
    embedder.embed_document.return_value = [0.1, 0.2, 0.3]
    embedder.embed_query.return_value = [0.3, 0.2, 0.1]
    return embedder


@pytest.fixture
def vector_store(opensearch_config, client, embedder) -> OpenSearchVectorStore:
    return OpenSearchVectorStore(opensearch_config, embedder, client=client)


def test_build_filter_clauses():
    clauses = build_filter_clauses({
        'kind': 'decision',
        'tags': 'react',
        'project': 'Atlas',
        'date_from': '2024-01-01',
        'unknown': 'ignored',
    })

    assert clauses == [
        {'term': {'kind': 'decision'}},
        {'terms': {'tags': ['react']}},
        {'term': {'attributes.project': 'Atlas'}},
        {'range': {'updated_at': {'gte': '2024-01-01'}}},
    ]
    assert build_filter_clauses(None) == []


class TestOpenSearchTextStore:
    """Tests for OpenSearchTextStore."""

    def test_index_names(self, text_store: OpenSearchTextStore, vector_store: OpenSearchVectorStore):
        assert text_store.index_name == 'devmemory_record'
        assert vector_store.index_name == 'devmemory_vector'

    def test_put_indexes_record_by_id(self, text_store: OpenSearchTextStore, client: MagicMock):
        client.index.return_value = {'result': 'created'}
        record = make_record('r1', title='React', tags=['ui'])

        text_store.put(record)

        kwargs = client.index.call_args.kwargs
        assert kwargs['index'] == 'devmemory_record'
        assert kwargs['id'] == 'r1'
        assert kwargs['body']['tags'] == ['ui']

    def test_put_failure_raises(self, text_store: OpenSearchTextStore, client: MagicMock):
        client.index.side_effect = TransportError(500, 'internal', {})
        with pytest.raises(OpenSearchError):
            text_store.put(make_record('r1'))

    def test_get_round_trips_source(self, text_store: OpenSearchTextStore, client: MagicMock):
        record = make_record('r1', title='Hooks', body='useEffect', tags=['react'])
        client.get.return_value = {'found': True, '_source': record.to_dict()}

        assert text_store.get('r1') == record

    def test_get_missing_returns_none(self, text_store: OpenSearchTextStore, client: MagicMock):
        client.get.side_effect = NotFoundError(404, 'not_found', {})
        assert text_store.get('missing') is None

    def test_delete(self, text_store: OpenSearchTextStore, client: MagicMock):
        client.delete.return_value = {'result': 'deleted'}
        assert text_store.delete('r1') is True

        client.delete.side_effect = NotFoundError(404, 'not_found', {})
        assert text_store.delete('r1') is False

    def test_full_text_query_returns_ids_in_rank_order(self, text_store: OpenSearchTextStore, client: MagicMock):
        client.search.return_value = {'hits': {'hits': [{'_id': 'r2'}, {'_id': 'r1'}]}}

        ids = text_store.full_text_query('react hooks', 5, {'kind': 'note'})

        assert ids == ['r2', 'r1']
        body = client.search.call_args.kwargs['body']
        assert body['size'] == 5
        assert body['query']['bool']['must'][0]['multi_match']['query'] == 'react hooks'
        assert body['query']['bool']['filter'] == [{'term': {'kind': 'note'}}]

    def test_create_index_if_not_exists(self, text_store: OpenSearchTextStore, client: MagicMock):
        client.indices.exists.return_value = True
        assert text_store.create_index_if_not_exists() == 'exists'

        client.indices.exists.return_value = False
        client.indices.create.return_value = {'acknowledged': True}
        assert text_store.create_index_if_not_exists() == 'created'

    def test_health_check_reports_errors(self, text_store: OpenSearchTextStore, client: MagicMock):
        client.indices.exists.return_value = False
        assert text_store.health_check() is True

        client.indices.exists.side_effect = ConnectionError('refused')
        assert text_store.health_check() is False


class TestOpenSearchVectorStore:
    """Tests for OpenSearchVectorStore."""

    @pytest.mark.parametrize('cosine', [1.0, 0.5, 0.0, -0.5])
    def test_score_to_similarity_inverts_cosinesimil(self, cosine):
        score = 1.0 / (2.0 - cosine)
        assert OpenSearchVectorStore.score_to_similarity(score) == pytest.approx(cosine)

    def test_upsert_embeds_document(self, vector_store: OpenSearchVectorStore, client: MagicMock, embedder):
        vector_store.upsert('r1', 'React hooks', {'kind': 'note'})

        embedder.embed_document.assert_called_once_with('React hooks')
        body = client.index.call_args.kwargs['body']
        assert body == {'kind': 'note', 'record_id': 'r1', 'embedding': [0.1, 0.2, 0.3]}

    def test_similarity_query_applies_threshold(self, vector_store: OpenSearchVectorStore, client: MagicMock):
        client.search.return_value = {
            'hits': {
                'hits': [
                    {'_id': 'low', '_score': 1.0 / 1.8},  # cos 0.2
                    {'_id': 'high', '_score': 1.0 / 1.1},  # cos 0.9
                ]
            }
        }

        results = vector_store.similarity_query('hooks', 5, 0.5, {'project': 'Atlas'})

        assert [record_id for record_id, _ in results] == ['high']
        assert results[0][1] == pytest.approx(0.9)
        body = client.search.call_args.kwargs['body']
        assert body['query']['bool']['must'][0]['knn']['embedding']['vector'] == [0.3, 0.2, 0.1]
        assert body['query']['bool']['filter'] == [{'term': {'project': 'Atlas'}}]

    def test_delete_missing_is_not_an_error(self, vector_store: OpenSearchVectorStore, client: MagicMock):
        client.delete.side_effect = NotFoundError(404, 'not_found', {})
        vector_store.delete('missing')

    def test_count(self, vector_store: OpenSearchVectorStore, client: MagicMock):
        client.count.return_value = {'count': 7}
        assert vector_store.count() == 7
