"""
Memory Management Service: single entry point for record writes, hybrid search
and knowledge-graph queries.
"""

import uuid
from collections import deque
from typing import Any, Dict, List, Optional, Union

from ..models.core import (Entity, EntitySearchResult, EntityType, Record, RecordKind, Relationship, RelationshipPath,
                           RelationType, SearchHit, SearchMethod)
from ..utils.batching_vector_store import BatchingVectorStore
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import AppConfig
from ..utils.config import config as default_config
from ..utils.health_check import get_health_status
from ..utils.local_vector_store import LocalVectorStore
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneGraphStore
from ..utils.opensearch_client import OpenSearchError, OpenSearchTextStore, OpenSearchVectorStore
from ..utils.timestamp_utils import utc_now
from .backends import EntityExtractor, GraphStore, TextStore, VectorStore
from .entity_extraction import build_entity_extractor
from .hybrid_search import HybridSearchEngine
from .ingestion import IngestionCoordinator, IngestionError, vector_metadata

logger = get_logger(__name__)

DIRECTIONS = ('incoming', 'outgoing', 'both')
REINDEX_PROGRESS_EVERY = 100


class MemoryManagementError(Exception):
    """Custom exception for memory management errors."""
    pass


def build_text_store(cfg: AppConfig) -> TextStore:
    store = OpenSearchTextStore(cfg.opensearch)
    try:
        store.create_index_if_not_exists()
    except OpenSearchError as e:
        logger.warning(f'Failed to create record index: {e}')
    return store


def build_vector_store(cfg: AppConfig) -> VectorStore:
    """Create the configured vector store, wrapped for batching when enabled."""
    embedder = BedrockEmbed(cfg.bedrock_embed)
    provider = cfg.vector_store.provider

    if provider == 'local':
        store = LocalVectorStore(cfg.vector_store.local_path, embedder)
    elif provider == 'opensearch':
        store = OpenSearchVectorStore(cfg.opensearch, embedder)
        try:
            store.create_index_if_not_exists()
        except OpenSearchError as e:
            logger.warning(f'Failed to create vector index: {e}')
    else:
        raise ValueError(f'Unknown vector store provider: {provider}')

    if cfg.vector_store.batching_enabled:
        return BatchingVectorStore(store, cfg.vector_store.batch_size, cfg.vector_store.batch_interval)
    return store


def build_graph_store(cfg: AppConfig) -> GraphStore:
    return NeptuneGraphStore(cfg.neptune)


class MemoryManagementService:
    """Unified service over the text, vector and graph backends."""

    def __init__(self,
                 text_store: Optional[TextStore] = None,
                 vector_store: Optional[VectorStore] = None,
                 graph_store: Optional[GraphStore] = None,
                 entity_extractor: Optional[EntityExtractor] = None,
                 app_config: Optional[AppConfig] = None):
        """
        Initialize the memory management service.

        Backends not passed in are built from configuration.
        """
        self.config = app_config or default_config
        self.text_store = text_store or build_text_store(self.config)
        self.vector_store = vector_store or build_vector_store(self.config)
        self.graph_store = graph_store or build_graph_store(self.config)
        self.entity_extractor = entity_extractor or build_entity_extractor(self.config.entity_extraction.provider)

        self.search_engine = HybridSearchEngine(self.text_store,
                                                self.vector_store,
                                                self.graph_store,
                                                config=self.config.search)
        self.ingestion = IngestionCoordinator(self.text_store,
                                              self.vector_store,
                                              self.graph_store,
                                              self.entity_extractor,
                                              config=self.config.ingestion)

        logger.info(f'Initialized MemoryManagementService (vector store: {type(self.vector_store).__name__})')

    # Records

    async def create_memory(self,
                            title: str,
                            body: str,
                            kind: Union[str, RecordKind] = RecordKind.NOTE,
                            tags: Optional[List[str]] = None,
                            attributes: Optional[Dict[str, Any]] = None) -> Record:
        """Create a memory record and index it in every backend.

        Raises:
            IngestionError: If the record store write fails
            MemoryManagementError: On unexpected failures
        """
        try:
            return await self.ingestion.create_record(title, body, RecordKind(kind), tags, attributes)
        except (IngestionError, ValueError):
            raise
        except Exception as e:
            logger.error(f'Unexpected error creating memory: {e}')
            raise MemoryManagementError(f'Memory create failed: {e}')

    async def update_memory(self, memory_id: str, updates: Dict[str, Any]) -> Optional[Record]:
        try:
            return await self.ingestion.update_record(memory_id, updates)
        except (IngestionError, ValueError):
            raise
        except Exception as e:
            logger.error(f'Unexpected error updating memory {memory_id}: {e}')
            raise MemoryManagementError(f'Memory update failed: {e}')

    async def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory. Entities it mentioned stay in the graph.

        Returns:
            True if the memory existed
        """
        if not memory_id or not memory_id.strip():
            logger.warning('Empty memory ID provided for deletion')
            return False
        return await self.ingestion.delete_record(memory_id)

    async def get_memory(self, memory_id: str) -> Optional[Record]:
        return await self.ingestion.get_record(memory_id)

    def get_recent_memories(self, limit: int = 20) -> List[Record]:
        return self.text_store.list_records(limit=limit)

    def get_memories_by_kind(self, kind: Union[str, RecordKind], limit: int = 50) -> List[Record]:
        return self.text_store.list_records(limit=limit, filters={'kind': RecordKind(kind).value})

    def get_memories_by_tags(self, tags: List[str], limit: int = 50) -> List[Record]:
        return self.text_store.list_records(limit=limit, filters={'tags': list(tags)})

    # Search

    async def search_memories(self,
                              query: str,
                              limit: Optional[int] = None,
                              search_method: Union[str, SearchMethod] = SearchMethod.AUTO,
                              threshold: Optional[float] = None,
                              filters: Optional[Dict[str, Any]] = None) -> List[SearchHit]:
        """Hybrid search over all memories.

        Backend outages degrade the result instead of raising.

        Raises:
            ValueError: If search_method is unknown
        """
        return await self.search_engine.search(query, limit, search_method, threshold, filters)

    # Knowledge graph

    def search_entities(self, query: str, limit: int = 10) -> List[EntitySearchResult]:
        if not query or not query.strip() or limit <= 0:
            return []
        return self.graph_store.search_entities(query, limit)

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        return self.graph_store.get_entity(entity_id)

    def get_entity_relationships(self, entity_id: str, direction: str = 'both') -> List[Relationship]:
        if direction not in DIRECTIONS:
            raise ValueError(f'direction must be one of {DIRECTIONS}, got {direction!r}')
        return self.graph_store.list_relationships_for_entity(entity_id, direction)

    def get_entities_by_type(self, entity_type: Union[str, EntityType], limit: int = 50) -> List[Entity]:
        entity_type = EntityType(entity_type)
        matches = [entity for entity in self.graph_store.list_entities() if entity.type == entity_type]
        matches.sort(key=lambda entity: entity.name.lower())
        return matches[:limit]

    def get_all_entities(self) -> List[Entity]:
        return self.graph_store.list_entities()

    def get_all_relationships(self) -> List[Relationship]:
        return self.graph_store.list_relationships()

    def find_relationship_path(self,
                               from_entity_id: str,
                               to_entity_id: str,
                               max_depth: int = 3,
                               max_paths: int = 10) -> List[RelationshipPath]:
        """
        Find paths between two entities, following edges in either direction.

        Paths are explored breadth-first so shorter paths come first; a path never
        visits the same entity twice.

        Args:
            from_entity_id: Start entity
            to_entity_id: Target entity
            max_depth: Maximum number of relationships in a path
            max_paths: Stop after this many paths

        Returns:
            Paths ordered by length, then by path strength (product of edge strengths) descending
        """
        entities = {entity.id: entity for entity in self.graph_store.list_entities()}
        if from_entity_id not in entities or to_entity_id not in entities:
            return []
        if from_entity_id == to_entity_id:
            return [RelationshipPath([entities[from_entity_id]], [], 1.0)]

        adjacency: Dict[str, List] = {}
        for relationship in self.graph_store.list_relationships():
            adjacency.setdefault(relationship.from_entity_id, []).append((relationship, relationship.to_entity_id))
            adjacency.setdefault(relationship.to_entity_id, []).append((relationship, relationship.from_entity_id))

        paths: List[RelationshipPath] = []
        queue = deque([(from_entity_id, [from_entity_id], [])])
        while queue and len(paths) < max_paths:
            node, visited, edges = queue.popleft()
            if len(edges) >= max_depth:
                continue
            for relationship, neighbor in adjacency.get(node, []):
                if neighbor in visited or neighbor not in entities:
                    continue
                path_edges = edges + [relationship]
                if neighbor == to_entity_id:
                    strength = 1.0
                    for edge in path_edges:
                        strength *= edge.strength
                    paths.append(RelationshipPath([entities[entity_id] for entity_id in visited + [neighbor]], path_edges,
                                                  strength))
                    if len(paths) >= max_paths:
                        break
                else:
                    queue.append((neighbor, visited + [neighbor], path_edges))

        paths.sort(key=lambda path: (path.path_length, -path.path_strength))
        return paths

    def get_graph_statistics(self) -> Dict[str, Any]:
        entities = self.graph_store.list_entities()
        relationships = self.graph_store.list_relationships()

        entity_types: Dict[str, int] = {}
        for entity in entities:
            entity_types[entity.type.value] = entity_types.get(entity.type.value, 0) + 1
        relationship_types: Dict[str, int] = {}
        for relationship in relationships:
            relationship_types[relationship.type.value] = relationship_types.get(relationship.type.value, 0) + 1

        return {
            'entity_count': len(entities),
            'relationship_count': len(relationships),
            'entity_types': entity_types,
            'relationship_types': relationship_types,
            'avg_relationships_per_entity': round(2 * len(relationships) / len(entities), 2) if entities else 0.0,
        }

    def create_entity(self,
                      name: str,
                      entity_type: Union[str, EntityType],
                      confidence: float = 1.0,
                      memory_ids: Optional[List[str]] = None) -> Entity:
        """Create an entity, or merge into the existing entity with the same name."""
        if not name or not name.strip():
            raise ValueError('Entity name must not be empty')
        now = utc_now()
        entity = Entity(id=str(uuid.uuid4()),
                        name=name.strip(),
                        type=EntityType(entity_type),
                        confidence=confidence,
                        memory_ids=list(memory_ids or []),
                        created_at=now,
                        updated_at=now)
        return self.graph_store.upsert_entity(entity)

    def create_relationship(self,
                            from_entity: str,
                            to_entity: str,
                            relationship_type: Union[str, RelationType],
                            strength: float = 0.5,
                            confidence: float = 1.0,
                            memory_id: Optional[str] = None) -> Optional[Relationship]:
        """
        Create a relationship between two entities given by id or name.

        Returns:
            The stored relationship, or None if either entity cannot be resolved
        """
        endpoints = []
        for reference in (from_entity, to_entity):
            entity = self.graph_store.get_entity(reference) or self.graph_store.find_entity_by_name(reference)
            if entity is None:
                logger.debug(f'Entity {reference!r} not found, relationship not created')
                return None
            endpoints.append(entity)

        now = utc_now()
        relationship = Relationship(id=str(uuid.uuid4()),
                                    from_entity_id=endpoints[0].id,
                                    to_entity_id=endpoints[1].id,
                                    type=RelationType(relationship_type),
                                    strength=strength,
                                    confidence=confidence,
                                    memory_id=memory_id,
                                    created_at=now,
                                    updated_at=now)
        return self.graph_store.upsert_relationship(relationship)

    # Operations

    def get_system_health(self) -> Dict[str, Any]:
        components = get_health_status(self.text_store, self.vector_store, self.graph_store)
        return {
            'overall': all(status.get('healthy', False) for status in components.values()),
            'text': components['text_store']['healthy'],
            'vector': components['vector_store']['healthy'],
            'graph': components['graph_store']['healthy'],
            'components': components,
        }

    def reindex_vectors(self) -> Dict[str, int]:
        """
        Re-embed every stored record into the active vector store.

        Used after switching vector store providers. Failures are logged per record
        and do not stop the run.

        Returns:
            Counts of total, reindexed and failed records
        """
        total = reindexed = failed = 0
        logger.info('Starting vector reindex')

        for record in self.text_store.iter_records():
            total += 1
            try:
                self.vector_store.upsert(record.id, record.document_text(), vector_metadata(record))
                reindexed += 1
            except Exception as e:
                failed += 1
                logger.warning(f'Failed to reindex record {record.id}: {type(e).__name__}: {e}')
            if total % REINDEX_PROGRESS_EVERY == 0:
                logger.info(f'Reindex progress: {total} records processed ({failed} failed)')

        if isinstance(self.vector_store, BatchingVectorStore):
            self.vector_store.flush()

        logger.info(f'Vector reindex complete: {reindexed}/{total} records, {failed} failed')
        return {'total': total, 'reindexed': reindexed, 'failed': failed}

    def close(self) -> None:
        self.vector_store.close()
        close_graph = getattr(self.graph_store, 'close', None)
        if close_graph is not None:
            close_graph()
