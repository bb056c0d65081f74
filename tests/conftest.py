"""Shared fixtures and in-memory backends for the test suite."""

import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pytest

from devmemory.models.core import (Entity, EntitySearchResult, ExtractionResult, Record, Relationship,
                                   normalize_name)
from devmemory.services.backends import (EntityExtractor, GraphStore, TextStore, VectorStore,
                                         rank_entity_matches)
from devmemory.utils.config import IngestionConfig, SearchConfig

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def tokens(text: str) -> List[str]:
    return re.findall(r'\w+', text.lower())


def make_record(record_id: str, title: str = '', body: str = '', minutes: int = 0, **kwargs) -> Record:
    """Record whose timestamps are BASE_TIME + minutes."""
    stamp = BASE_TIME + timedelta(minutes=minutes)
    return Record(id=record_id,
                  title=title or record_id,
                  body=body,
                  created_at=stamp,
                  updated_at=stamp,
                  **kwargs)


def search_config(**overrides) -> SearchConfig:
    values = dict(default_limit=20,
                  default_threshold=0.5,
                  auto_vector_min_length=50,
                  vector_share=0.6,
                  text_share=0.3,
                  graph_share=0.1,
                  backend_timeout=1.0)
    values.update(overrides)
    return SearchConfig(**values)


class FakeTextStore(TextStore):
    """Dict-backed record store; full-text rank is the number of matched query tokens."""

    def __init__(self):
        self.records: Dict[str, Record] = {}
        self.fail = False
        self.ranking: Optional[List[str]] = None  # fixed full_text_query answer when set
        self.delay = 0.0
        self.filters_seen: List[Optional[Dict[str, Any]]] = []

    def _check(self):
        if self.fail:
            raise RuntimeError('text store unavailable')

    def put(self, record: Record) -> None:
        self._check()
        self.records[record.id] = record

    def get(self, record_id: str) -> Optional[Record]:
        self._check()
        return self.records.get(record_id)

    def delete(self, record_id: str) -> bool:
        self._check()
        return self.records.pop(record_id, None) is not None

    def full_text_query(self, text: str, limit: int, filters: Optional[Dict[str, Any]] = None) -> List[str]:
        self._check()
        self.filters_seen.append(filters)
        if self.delay:
            time.sleep(self.delay)
        if self.ranking is not None:
            return self.ranking[:limit]
        wanted = set(tokens(text))
        scored = []
        for record in self._filtered(filters):
            score = len(wanted & set(tokens(record.document_text())))
            if score:
                scored.append((score, record))
        scored.sort(key=lambda item: (-item[0], -item[1].updated_at.timestamp(), item[1].id))
        return [record.id for _, record in scored[:limit]]

    def list_records(self, limit: int = 50, filters: Optional[Dict[str, Any]] = None) -> List[Record]:
        self._check()
        records = sorted(self._filtered(filters), key=lambda r: r.updated_at, reverse=True)
        return records[:limit]

    def iter_records(self) -> Iterator[Record]:
        self._check()
        return iter(list(self.records.values()))

    def _filtered(self, filters):
        filters = filters or {}
        for record in self.records.values():
            if filters.get('kind') and record.kind.value != filters['kind']:
                continue
            if filters.get('tags') and not set(filters['tags']) & set(record.tags):
                continue
            yield record


class FakeVectorStore(VectorStore):
    """Token-overlap similarity, or fixed scores from `similarities` when set."""

    def __init__(self):
        self.documents: Dict[str, str] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.similarities: Optional[Dict[str, float]] = None
        self.fail = False
        self.delay = 0.0
        self.queries: List[Tuple[str, int, float]] = []
        self.filters_seen: List[Optional[Dict[str, Any]]] = []
        self.closed = False

    def _check(self):
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise RuntimeError('vector store unavailable')

    def upsert(self, record_id: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self._check()
        self.documents[record_id] = text
        self.metadata[record_id] = dict(metadata or {})

    def delete(self, record_id: str) -> None:
        self._check()
        self.documents.pop(record_id, None)
        self.metadata.pop(record_id, None)

    def similarity_query(self, text, k, threshold, filters=None):
        self.queries.append((text, k, threshold))
        self.filters_seen.append(filters)
        self._check()
        if self.similarities is not None:
            scored = list(self.similarities.items())
        else:
            wanted = set(tokens(text))
            scored = []
            for record_id, document in self.documents.items():
                have = set(tokens(document))
                if wanted and have:
                    scored.append((record_id, len(wanted & have) / len(wanted | have)))
        scored = [item for item in scored if item[1] >= threshold]
        scored.sort(key=lambda item: (-item[1], item[0]))
        return scored[:k]

    def count(self) -> int:
        return len(self.documents)

    def close(self) -> None:
        self.closed = True


class FakeGraphStore(GraphStore):
    """In-memory graph with the same merge rules as the Neptune store."""

    def __init__(self):
        self.entities: Dict[str, Entity] = {}
        self.relationships: Dict[Tuple[str, str, str], Relationship] = {}
        self.fail = False
        self.delay = 0.0

    def _check(self):
        if self.fail:
            raise RuntimeError('graph store unavailable')

    def upsert_entity(self, entity: Entity) -> Entity:
        self._check()
        existing = self.find_entity_by_name(entity.name)
        if existing is None:
            self.entities[entity.id] = entity
            return entity
        existing.confidence = max(existing.confidence, entity.confidence)
        for memory_id in entity.memory_ids:
            if memory_id not in existing.memory_ids:
                existing.memory_ids.append(memory_id)
        return existing

    def find_entity_by_name(self, name: str) -> Optional[Entity]:
        self._check()
        key = normalize_name(name)
        for entity in self.entities.values():
            if normalize_name(entity.name) == key:
                return entity
        return None

    def get_entity(self, entity_id: str) -> Optional[Entity]:
        self._check()
        return self.entities.get(entity_id)

    def upsert_relationship(self, relationship: Relationship) -> Optional[Relationship]:
        self._check()
        if relationship.from_entity_id not in self.entities or relationship.to_entity_id not in self.entities:
            return None
        key = (relationship.from_entity_id, relationship.to_entity_id, relationship.type.value)
        existing = self.relationships.get(key)
        if existing is None:
            self.relationships[key] = relationship
            return relationship
        existing.strength = max(existing.strength, relationship.strength)
        existing.confidence = max(existing.confidence, relationship.confidence)
        return existing

    def search_entities(self, text: str, limit: int) -> List[EntitySearchResult]:
        self._check()
        if self.delay:
            time.sleep(self.delay)
        results = []
        for entity, relevance in rank_entity_matches(text, list(self.entities.values()), limit):
            count = len(self.list_relationships_for_entity(entity.id))
            results.append(EntitySearchResult(entity=entity, relevance=relevance, relationship_count=count))
        return results

    def list_relationships_for_entity(self, entity_id: str, direction: str = 'both') -> List[Relationship]:
        self._check()
        result = []
        for relationship in self.relationships.values():
            outgoing = relationship.from_entity_id == entity_id
            incoming = relationship.to_entity_id == entity_id
            if (direction == 'outgoing' and outgoing) or (direction == 'incoming' and incoming) or \
                    (direction == 'both' and (outgoing or incoming)):
                result.append(relationship)
        return result

    def list_entities(self) -> List[Entity]:
        self._check()
        return list(self.entities.values())

    def list_relationships(self) -> List[Relationship]:
        self._check()
        return list(self.relationships.values())


class FailingExtractor(EntityExtractor):

    def extract(self, text: str, attributes: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        raise RuntimeError('extractor unavailable')


@pytest.fixture
def text_store() -> FakeTextStore:
    return FakeTextStore()


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def graph_store() -> FakeGraphStore:
    return FakeGraphStore()


@pytest.fixture
def ingestion_config() -> IngestionConfig:
    return IngestionConfig(side_effect_timeout=1.0)
