"""
OpenSearch-backed record store (full-text) and vector store (k-NN).
"""

import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import Record
from ..services.backends import TextStore, VectorStore
from .bedrock_embed import BedrockEmbed
from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def build_filter_clauses(filters: Optional[Dict[str, Any]], project_field: str = 'attributes.project') -> List[Dict]:
    """
    Translate search filters into OpenSearch bool filter clauses.

    Supported keys: kind, tags (any of), project, date_from and date_to (on updated_at).
    Unknown keys are ignored.
    """
    clauses = []
    if not filters:
        return clauses

    if filters.get('kind'):
        clauses.append({'term': {'kind': getattr(filters['kind'], 'value', filters['kind'])}})
    if filters.get('tags'):
        tags = filters['tags']
        clauses.append({'terms': {'tags': [tags] if isinstance(tags, str) else list(tags)}})
    if filters.get('project'):
        clauses.append({'term': {project_field: filters['project']}})

    date_range = {}
    if filters.get('date_from'):
        date_range['gte'] = filters['date_from']
    if filters.get('date_to'):
        date_range['lte'] = filters['date_to']
    if date_range:
        clauses.append({'range': {'updated_at': date_range}})

    return clauses


def _is_not_found(e: OpenSearchException) -> bool:
    # OpenSearchException args: (status_code, error_type, error_info)
    return isinstance(e, NotFoundError) or (len(e.args) >= 2 and (e.args[0] == 404 or e.args[1] == 'not_found'))


class OpenSearchClient:
    """OpenSearch connection with optional AWS SigV4 authentication."""

    index_suffix = ''

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client (created from config when None)
        """
        self.config = config
        self.index_name = f'{config.index_name}_{self.index_suffix}'
        self.client = client or self._connect(config)

        logger.info(f'Initialized {type(self).__name__} for index: {self.index_name}')

    @staticmethod
    def _connect(config: OpenSearchConfig) -> OpenSearch:
        auth = None
        if config.auth == 'aws':
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)

        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        return OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                          http_auth=auth,
                          use_ssl=config.use_ssl,
                          verify_certs=config.use_ssl,
                          connection_class=RequestsHttpConnection)

    def index_body(self) -> Dict[str, Any]:
        raise NotImplementedError

    def create_index_if_not_exists(self) -> str:
        """
        Create this store's index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=self.index_name, body=self.index_body())
            if not response.get('acknowledged', False):
                return 'failed'

            logger.info(f'Created index {self.index_name}')
            if self.config.auth == 'aws':
                # Serverless collections need a moment before new indices accept writes
                logger.info(f'Waiting 15s for index {self.index_name} sync-up...')
                time.sleep(15)
            return 'created'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name)
            return response in [True, False]
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False


class OpenSearchTextStore(OpenSearchClient, TextStore):
    """Authoritative record store with BM25 full-text search."""

    index_suffix = 'record'

    def index_body(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'title': {
                        'type': 'text'
                    },
                    'body': {
                        'type': 'text'
                    },
                    'kind': {
                        'type': 'keyword'
                    },
                    'tags': {
                        'type': 'keyword'
                    },
                    'attributes': {
                        'type': 'object',
                        'properties': {
                            'project': {
                                'type': 'keyword'
                            }
                        }
                    },
                    'created_at': {
                        'type': 'date'
                    },
                    'updated_at': {
                        'type': 'date'
                    }
                }
            }
        }

    def put(self, record: Record) -> None:
        try:
            response = self.client.index(index=self.index_name, id=record.id, body=record.to_dict())
        except OpenSearchException as e:
            logger.error(f'Error indexing record {record.id}: {e}')
            raise OpenSearchError(f'Failed to index record: {e}')

        if response.get('result') not in ['created', 'updated']:
            logger.warning(f'Unexpected result indexing record {record.id}: {response}')

    def get(self, record_id: str) -> Optional[Record]:
        try:
            response = self.client.get(index=self.index_name, id=record_id)
        except OpenSearchException as e:
            if _is_not_found(e):
                return None
            logger.error(f'Error getting record {record_id}: {e}')
            raise OpenSearchError(f'Failed to get record: {e}')

        if not response.get('found', True):
            return None
        return Record.from_dict(response['_source'])

    def delete(self, record_id: str) -> bool:
        try:
            response = self.client.delete(index=self.index_name, id=record_id)
        except OpenSearchException as e:
            if _is_not_found(e):
                logger.debug(f'Record {record_id} not found for deletion')
                return False
            logger.error(f'Error deleting record {record_id}: {e}')
            raise OpenSearchError(f'Failed to delete record: {e}')

        return response.get('result') == 'deleted'

    def full_text_query(self, text: str, limit: int, filters: Optional[Dict[str, Any]] = None) -> List[str]:
        search_body = {
            'size': limit,
            'query': {
                'bool': {
                    'must': [{
                        'multi_match': {
                            'query': text,
                            'fields': ['title^2', 'body', 'tags']
                        }
                    }],
                    'filter': build_filter_clauses(filters)
                }
            },
            '_source': False
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing full-text search: {e}')
            raise OpenSearchError(f'Full-text search failed: {e}')

        ids = [hit['_id'] for hit in response['hits']['hits']]
        logger.debug(f'Full-text search returned {len(ids)} records')
        return ids

    def list_records(self, limit: int = 50, filters: Optional[Dict[str, Any]] = None) -> List[Record]:
        search_body = {
            'size': limit,
            'query': {
                'bool': {
                    'must': [{
                        'match_all': {}
                    }],
                    'filter': build_filter_clauses(filters)
                }
            },
            'sort': [{
                'updated_at': {
                    'order': 'desc'
                }
            }]
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error listing records: {e}')
            raise OpenSearchError(f'Failed to list records: {e}')

        return [Record.from_dict(hit['_source']) for hit in response['hits']['hits']]

    def iter_records(self) -> Iterator[Record]:
        try:
            for hit in helpers.scan(self.client, index=self.index_name, query={'query': {'match_all': {}}}):
                yield Record.from_dict(hit['_source'])
        except OpenSearchException as e:
            logger.error(f'Error scanning records: {e}')
            raise OpenSearchError(f'Failed to scan records: {e}')


class OpenSearchVectorStore(OpenSearchClient, VectorStore):
    """k-NN index of record embeddings with filterable metadata."""

    index_suffix = 'vector'

    def __init__(self, config: OpenSearchConfig, embedder: BedrockEmbed, client: Optional[OpenSearch] = None):
        super().__init__(config, client)
        self.embedder = embedder

    def index_body(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'record_id': {
                        'type': 'keyword'
                    },
                    'title': {
                        'type': 'text'
                    },
                    'kind': {
                        'type': 'keyword'
                    },
                    'tags': {
                        'type': 'keyword'
                    },
                    'project': {
                        'type': 'keyword'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'nmslib'
                        }
                    },
                    'updated_at': {
                        'type': 'date'
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

    @staticmethod
    def score_to_similarity(score: float) -> float:
        """Invert the cosinesimil score transform, score = 1 / (2 - cos)."""
        if score <= 0:
            return -1.0
        return max(-1.0, min(1.0, 2.0 - 1.0 / score))

    def upsert(self, record_id: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        document = dict(metadata or {})
        document['record_id'] = record_id
        document['embedding'] = self.embedder.embed_document(text)

        try:
            self.client.index(index=self.index_name, id=record_id, body=document)
        except OpenSearchException as e:
            logger.error(f'Error indexing vector for record {record_id}: {e}')
            raise OpenSearchError(f'Failed to index vector: {e}')
        logger.debug(f'Indexed vector for record {record_id}')

    def delete(self, record_id: str) -> None:
        try:
            self.client.delete(index=self.index_name, id=record_id)
        except OpenSearchException as e:
            if _is_not_found(e):
                logger.debug(f'Vector for record {record_id} not found for deletion')
                return
            logger.error(f'Error deleting vector for record {record_id}: {e}')
            raise OpenSearchError(f'Failed to delete vector: {e}')

    def similarity_query(self,
                         text: str,
                         k: int,
                         threshold: float,
                         filters: Optional[Dict[str, Any]] = None) -> List[Tuple[str, float]]:
        query_vector = self.embedder.embed_query(text)
        search_body = {
            'size': k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_vector,
                                'k': k
                            }
                        }
                    }],
                    'filter': build_filter_clauses(filters, project_field='project')
                }
            },
            '_source': {
                'excludes': ['embedding']
            }
        }

        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        results = []
        for hit in response['hits']['hits']:
            similarity = self.score_to_similarity(hit['_score'])
            if similarity >= threshold:
                results.append((hit['_id'], similarity))
        results.sort(key=lambda item: -item[1])

        logger.debug(f'Vector search returned {len(results)} results above threshold {threshold}')
        return results[:k]

    def count(self) -> int:
        try:
            return int(self.client.count(index=self.index_name)['count'])
        except OpenSearchException as e:
            logger.error(f'Error counting vectors: {e}')
            raise OpenSearchError(f'Failed to count vectors: {e}')
