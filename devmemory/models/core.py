"""
Core data models for the hybrid memory system.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from ..utils.timestamp_utils import from_iso, to_iso, utc_now


class RecordKind(str, Enum):
    """Kinds of memory a user can capture."""
    CODE_SNIPPET = 'code_snippet'
    DOCUMENTATION = 'documentation'
    MEETING_NOTES = 'meeting_notes'
    DECISION = 'decision'
    API_CALL = 'api_call'
    DEBUG_SESSION = 'debug_session'
    PROJECT_CONTEXT = 'project_context'
    KUBERNETES_RESOURCE = 'kubernetes_resource'
    COMMAND = 'command'
    LINK = 'link'
    NOTE = 'note'


class EntityType(str, Enum):
    PERSON = 'person'
    PROJECT = 'project'
    TECHNOLOGY = 'technology'
    CONCEPT = 'concept'
    ORGANIZATION = 'organization'
    FILE = 'file'
    REPOSITORY = 'repository'
    API = 'api'
    DATABASE = 'database'
    SERVICE = 'service'
    LOCATION = 'location'
    SITE = 'site'
    DOCUMENT = 'document'


class RelationType(str, Enum):
    WORKS_ON = 'works_on'
    CREATED_BY = 'created_by'
    DEPENDS_ON = 'depends_on'
    RELATED_TO = 'related_to'
    BELONGS_TO = 'belongs_to'
    IMPLEMENTS = 'implements'
    USES = 'uses'
    CALLS = 'calls'
    EXTENDS = 'extends'
    CONTAINS = 'contains'
    MANAGES = 'manages'
    COLLABORATES_WITH = 'collaborates_with'


class Backend(str, Enum):
    """Retrieval backends orchestrated by the search engine."""
    TEXT = 'text'
    VECTOR = 'vector'
    GRAPH = 'graph'


class SearchMethod(str, Enum):
    """Search method hint accepted by the query router."""
    AUTO = 'auto'
    TEXT = 'text'
    VECTOR = 'vector'
    GRAPH = 'graph'
    HYBRID = 'hybrid'


def normalize_name(name: str) -> str:
    """Key used to match entity names regardless of case and surrounding whitespace."""
    return ' '.join(name.split()).lower()


def dedupe_tags(tags) -> List[str]:
    """Drop blank and repeated tags, keeping first-seen order."""
    seen = set()
    result = []
    for tag in tags or []:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


@dataclass
class Record:
    """A captured memory. TextStore is its system of record."""
    id: str
    title: str
    body: str
    kind: RecordKind = RecordKind.NOTE
    tags: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)  # provenance / source metadata
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def document_text(self) -> str:
        """Text handed to the vector store and the entity extractor."""
        return f"{self.title}\n\n{self.body}\n\nTags: {', '.join(self.tags)}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'body': self.body,
            'kind': self.kind.value,
            'tags': list(self.tags),
            'attributes': dict(self.attributes),
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Record':
        return cls(id=data['id'],
                   title=data.get('title', ''),
                   body=data.get('body', ''),
                   kind=RecordKind(data.get('kind') or RecordKind.NOTE),
                   tags=list(data.get('tags') or []),
                   attributes=dict(data.get('attributes') or {}),
                   created_at=from_iso(data.get('created_at')),
                   updated_at=from_iso(data.get('updated_at')))


@dataclass
class Entity:
    """A named concept extracted from one or more records.

    memory_ids is a back-reference: entities outlive the records that mention them.
    """
    id: str
    name: str
    type: EntityType
    confidence: float = 1.0
    memory_ids: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type.value,
            'confidence': self.confidence,
            'memory_ids': list(self.memory_ids),
            'created_at': to_iso(self.created_at),
            'updated_at': to_iso(self.updated_at),
        }


@dataclass
class Relationship:
    """A directed edge between two entities."""
    id: str
    from_entity_id: str
    to_entity_id: str
    type: RelationType
    strength: float = 0.5
    confidence: float = 1.0
    memory_id: Optional[str] = None  # record that established the relationship
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'from_entity_id': self.from_entity_id,
            'to_entity_id': self.to_entity_id,
            'type': self.type.value,
            'strength': self.strength,
            'confidence': self.confidence,
            'memory_id': self.memory_id,
            'created_at': to_iso(self.created_at),
        }


@dataclass
class ExtractedEntity:
    name: str
    type: EntityType
    confidence: float = 1.0


@dataclass
class RelationshipIntent:
    """A relationship keyed by entity names, before the names are resolved to ids."""
    from_name: str
    to_name: str
    type: RelationType
    strength: float = 0.5
    confidence: float = 1.0


@dataclass
class ExtractionResult:
    entities: List[ExtractedEntity] = field(default_factory=list)
    relationships: List[RelationshipIntent] = field(default_factory=list)


@dataclass
class EntitySearchResult:
    entity: Entity
    relevance: float
    relationship_count: int = 0


@dataclass
class GraphContext:
    """Why a hit was surfaced by the graph backend."""
    connected_entities: List[str] = field(default_factory=list)
    relationship_paths: List[str] = field(default_factory=list)

    def absorb(self, other: 'GraphContext') -> None:
        for name in other.connected_entities:
            if name not in self.connected_entities:
                self.connected_entities.append(name)
        for path in other.relationship_paths:
            if path not in self.relationship_paths:
                self.relationship_paths.append(path)


@dataclass
class SearchHit:
    """A record matched by one or more backends. Not persisted."""
    record: Record
    score: Optional[float] = None  # cosine similarity, vector hits only
    origin_backends: Set[Backend] = field(default_factory=set)
    graph_context: Optional[GraphContext] = None
    text_rank: Optional[int] = None  # position in the text backend's own ordering

    @property
    def search_method(self) -> str:
        if len(self.origin_backends) > 1:
            return SearchMethod.HYBRID.value
        if self.origin_backends:
            return next(iter(self.origin_backends)).value
        return SearchMethod.HYBRID.value

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'record': self.record.to_dict(),
            'score': self.score,
            'search_method': self.search_method,
            'origin_backends': sorted(backend.value for backend in self.origin_backends),
        }
        if self.graph_context is not None:
            result['graph_context'] = {
                'connected_entities': list(self.graph_context.connected_entities),
                'relationship_paths': list(self.graph_context.relationship_paths),
            }
        return result


@dataclass
class RelationshipPath:
    entities: List[Entity]
    relationships: List[Relationship]
    path_strength: float

    @property
    def path_length(self) -> int:
        return len(self.relationships)
