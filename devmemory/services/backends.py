"""
Capabilities the hybrid search core depends on.

Concrete implementations live in utils/ (OpenSearch, Neptune, local vector store)
and are chosen once at startup from configuration.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ..models.core import Entity, EntitySearchResult, ExtractionResult, Record, Relationship, normalize_name


def entity_match_relevance(query: str, entity_name: str) -> float:
    """Relevance of an entity name to a search string, 0.0 when unrelated.

    Exact name 1.0, name appearing as a whole word or phrase in the query 0.8,
    name containing the query len(query)/len(name).
    """
    query_key = normalize_name(query)
    name_key = normalize_name(entity_name)
    if not query_key or not name_key:
        return 0.0
    if name_key == query_key:
        return 1.0
    if re.search(r'(?<!\w)' + re.escape(name_key) + r'(?!\w)', query_key):
        return 0.8
    if query_key in name_key:
        return len(query_key) / len(name_key)
    return 0.0


def rank_entity_matches(query: str, entities: List[Entity], limit: int) -> List[Tuple[Entity, float]]:
    """Score entities against a query and return the best matches, ties broken by name."""
    scored = []
    for entity in entities:
        relevance = entity_match_relevance(query, entity.name)
        if relevance > 0:
            scored.append((entity, relevance))
    scored.sort(key=lambda item: (-item[1], normalize_name(item[0].name)))
    return scored[:limit]


class TextStore(ABC):
    """Authoritative record store with full-text search."""

    @abstractmethod
    def put(self, record: Record) -> None:
        """Insert or replace a record. Raises on failure."""

    @abstractmethod
    def get(self, record_id: str) -> Optional[Record]:
        """Return the record or None when absent."""

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        """Delete a record. Returns False when it did not exist."""

    @abstractmethod
    def full_text_query(self, text: str, limit: int, filters: Optional[Dict[str, Any]] = None) -> List[str]:
        """Return record ids ranked by the store's own relevance."""

    @abstractmethod
    def list_records(self, limit: int = 50, filters: Optional[Dict[str, Any]] = None) -> List[Record]:
        """Return records ordered by updated_at descending."""

    @abstractmethod
    def iter_records(self) -> Iterator[Record]:
        """Iterate over every stored record."""

    def health_check(self) -> bool:
        return True


class VectorStore(ABC):
    """Similarity index over record text. Embeddings are computed behind this interface."""

    @abstractmethod
    def upsert(self, record_id: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Insert or replace the vector for a record."""

    @abstractmethod
    def delete(self, record_id: str) -> None:
        """Remove the vector for a record; missing ids are not an error."""

    @abstractmethod
    def similarity_query(self,
                         text: str,
                         k: int,
                         threshold: float,
                         filters: Optional[Dict[str, Any]] = None) -> List[Tuple[str, float]]:
        """Return up to k (record_id, similarity) pairs with similarity >= threshold, best first."""

    def count(self) -> int:
        return 0

    def close(self) -> None:
        """Release resources and flush pending writes."""

    def health_check(self) -> bool:
        return True


class EntityExtractor(ABC):
    """Turns record text into name-keyed entities and relationship intents."""

    @abstractmethod
    def extract(self, text: str, attributes: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        pass


class GraphStore(ABC):
    """Persisted entity/relationship graph."""

    @abstractmethod
    def upsert_entity(self, entity: Entity) -> Entity:
        """Create the entity, or merge it into an existing entity with the same name.

        Merging unions memory_ids and keeps the higher confidence. Returns the stored entity.
        """

    @abstractmethod
    def find_entity_by_name(self, name: str) -> Optional[Entity]:
        pass

    @abstractmethod
    def get_entity(self, entity_id: str) -> Optional[Entity]:
        pass

    @abstractmethod
    def upsert_relationship(self, relationship: Relationship) -> Optional[Relationship]:
        """Store an edge; returns None if either endpoint entity does not exist."""

    @abstractmethod
    def search_entities(self, text: str, limit: int) -> List[EntitySearchResult]:
        """Entities whose names match the text, most relevant first."""

    @abstractmethod
    def list_relationships_for_entity(self, entity_id: str, direction: str = 'both') -> List[Relationship]:
        """direction is one of incoming, outgoing, both."""

    @abstractmethod
    def list_entities(self) -> List[Entity]:
        pass

    @abstractmethod
    def list_relationships(self) -> List[Relationship]:
        pass

    def health_check(self) -> bool:
        return True
