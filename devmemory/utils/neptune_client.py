"""
Amazon Neptune graph store for entities and relationships, using the Gremlin Python
driver with optional AWS SigV4 authentication.
"""

from functools import wraps
from typing import Any, Dict, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, P

from ..models.core import Entity, EntitySearchResult, EntityType, Relationship, RelationType, normalize_name
from ..services.backends import GraphStore, rank_entity_matches
from .config import NeptuneConfig
from .logging_config import get_logger
from .timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

ENTITY_LABEL = 'Entity'
RELATIONSHIP_LABEL = 'RELATES'


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _first(data: Dict[str, Any], key: str, default=None):
    """Vertex value maps wrap every property in a list; edge value maps do not."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def entity_from_value_map(data: Dict[str, Any]) -> Entity:
    memory_ids = data.get('memory_ids', [])
    if not isinstance(memory_ids, list):
        memory_ids = [memory_ids]
    return Entity(id=_first(data, 'id', ''),
                  name=_first(data, 'name', ''),
                  type=EntityType(_first(data, 'type', EntityType.CONCEPT.value)),
                  confidence=float(_first(data, 'confidence', 1.0)),
                  memory_ids=sorted(memory_ids),
                  created_at=from_iso(_first(data, 'created_at')),
                  updated_at=from_iso(_first(data, 'updated_at')))


def relationship_from_projection(data: Dict[str, Any]) -> Relationship:
    """Build a Relationship from an edge projected as {'edge': value_map, 'from': id, 'to': id}."""
    edge = data['edge']
    return Relationship(id=_first(edge, 'id', ''),
                        from_entity_id=data['from'],
                        to_entity_id=data['to'],
                        type=RelationType(_first(edge, 'type', RelationType.RELATED_TO.value)),
                        strength=float(_first(edge, 'strength', 0.5)),
                        confidence=float(_first(edge, 'confidence', 1.0)),
                        memory_id=_first(edge, 'memory_id'),
                        created_at=from_iso(_first(edge, 'created_at')),
                        updated_at=from_iso(_first(edge, 'updated_at')))


class NeptuneGraphStore(GraphStore):
    """Entity/relationship graph on Amazon Neptune.

    Entities are 'Entity' vertices keyed by a normalized name; relationships are
    'RELATES' edges, at most one per (from, to, type).
    """

    def __init__(self, config: NeptuneConfig, g=None):
        """
        Initialize Neptune graph store.

        Args:
            config: NeptuneConfig instance with connection parameters
            g: Pre-built graph traversal source (a remote connection is opened when None)
        """
        self.config = config
        self.connection = None
        self.g = g
        if g is None:
            self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        headers = {}
        if self.config.use_iam_auth:
            credentials = Session().get_credentials()
            if credentials is None:
                raise NeptuneError('No AWS credentials found')
            region = self.config.region or Session().region_name or 'us-east-1'
            request = AWSRequest(method='GET', url=conn_string, data=None)
            SigV4Auth(credentials.get_frozen_credentials(), 'neptune-db', region).add_auth(request)
            headers = request.headers.items()

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=headers,
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()
            self.connection = None

    def _entities(self, t) -> List[Entity]:
        return [entity_from_value_map(data) for data in t.value_map().to_list()]

    def _relationships(self, t) -> List[Relationship]:
        rows = t.project('edge', 'from', 'to')\
            .by(__.value_map())\
            .by(__.out_v().values('id'))\
            .by(__.in_v().values('id'))\
            .to_list()
        return [relationship_from_projection(row) for row in rows]

    @retry_on_connection_error
    def upsert_entity(self, entity: Entity) -> Entity:
        """Create the entity or merge it into the vertex with the same normalized name.

        Lookup, create and merge run as one traversal keyed on name_key, so
        concurrent upserts of the same name converge on a single vertex.
        """
        name_key = normalize_name(entity.name)
        now = to_iso(utc_now())

        create = __.add_v(ENTITY_LABEL).property('id', entity.id)\
            .property('name', entity.name)\
            .property('name_key', name_key)\
            .property('type', entity.type.value)\
            .property('confidence', entity.confidence)\
            .property('created_at', to_iso(entity.created_at))

        t = self.g.V().has(ENTITY_LABEL, 'name_key', name_key).fold()\
            .coalesce(__.unfold(), create)\
            .side_effect(__.has('confidence', P.lt(entity.confidence))
                         .property(Cardinality.single, 'confidence', entity.confidence))\
            .property(Cardinality.single, 'updated_at', now)
        for memory_id in entity.memory_ids:
            t = t.property(Cardinality.set_, 'memory_ids', memory_id)
        stored = entity_from_value_map(t.value_map().next())

        if stored.id == entity.id:
            logger.debug(f'Upserted entity vertex: {stored.name!r} ({stored.id})')
        else:
            logger.debug(f'Merged entity {entity.name!r} into {stored.name!r} ({stored.id})')
        return stored

    @retry_on_connection_error
    def find_entity_by_name(self, name: str) -> Optional[Entity]:
        matches = self._entities(self.g.V().has(ENTITY_LABEL, 'name_key', normalize_name(name)).limit(1))
        return matches[0] if matches else None

    @retry_on_connection_error
    def get_entity(self, entity_id: str) -> Optional[Entity]:
        matches = self._entities(self.g.V().has(ENTITY_LABEL, 'id', entity_id).limit(1))
        return matches[0] if matches else None

    @retry_on_connection_error
    def upsert_relationship(self, relationship: Relationship) -> Optional[Relationship]:
        for entity_id in (relationship.from_entity_id, relationship.to_entity_id):
            if not self.g.V().has(ENTITY_LABEL, 'id', entity_id).has_next():
                logger.debug(f'Entity {entity_id} not found, skipping relationship {relationship.type.value}')
                return None

        def same_edge():
            return self.g.V().has(ENTITY_LABEL, 'id', relationship.from_entity_id)\
                .out_e(RELATIONSHIP_LABEL).has('type', relationship.type.value)\
                .where(__.in_v().has('id', relationship.to_entity_id))

        existing = self._relationships(same_edge())
        now = to_iso(utc_now())

        if existing:
            stored = existing[0]
            stored.strength = max(stored.strength, relationship.strength)
            stored.confidence = max(stored.confidence, relationship.confidence)
            stored.updated_at = from_iso(now)
            same_edge().property('strength', stored.strength)\
                .property('confidence', stored.confidence)\
                .property('updated_at', now)\
                .iterate()
            logger.debug(f'Merged relationship {stored.id} ({stored.type.value})')
            return stored

        t = self.g.V().has(ENTITY_LABEL, 'id', relationship.from_entity_id)\
            .add_e(RELATIONSHIP_LABEL).to(__.V().has(ENTITY_LABEL, 'id', relationship.to_entity_id))\
            .property('id', relationship.id)\
            .property('type', relationship.type.value)\
            .property('strength', relationship.strength)\
            .property('confidence', relationship.confidence)\
            .property('created_at', to_iso(relationship.created_at))\
            .property('updated_at', to_iso(relationship.updated_at))
        if relationship.memory_id:
            t = t.property('memory_id', relationship.memory_id)
        t.next()
        logger.debug(f'Created relationship edge: {relationship.id} ({relationship.type.value})')
        return relationship

    @retry_on_connection_error
    def search_entities(self, text: str, limit: int) -> List[EntitySearchResult]:
        results = []
        for entity, relevance in rank_entity_matches(text, self.list_entities(), limit):
            count = self.g.V().has(ENTITY_LABEL, 'id', entity.id).both_e(RELATIONSHIP_LABEL).count().next()
            results.append(EntitySearchResult(entity=entity, relevance=relevance, relationship_count=int(count)))
        return results

    @retry_on_connection_error
    def list_relationships_for_entity(self, entity_id: str, direction: str = 'both') -> List[Relationship]:
        start = self.g.V().has(ENTITY_LABEL, 'id', entity_id)
        if direction == 'outgoing':
            t = start.out_e(RELATIONSHIP_LABEL)
        elif direction == 'incoming':
            t = start.in_e(RELATIONSHIP_LABEL)
        elif direction == 'both':
            t = start.both_e(RELATIONSHIP_LABEL)
        else:
            raise ValueError(f'Unknown relationship direction: {direction}')
        return self._relationships(t)

    @retry_on_connection_error
    def list_entities(self) -> List[Entity]:
        return self._entities(self.g.V().has_label(ENTITY_LABEL))

    @retry_on_connection_error
    def list_relationships(self) -> List[Relationship]:
        return self._relationships(self.g.E().has_label(RELATIONSHIP_LABEL))

    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            self.g.V().limit(1).count().next()
            return True
        except Exception as e:
            logger.error(f'Neptune health check failed: {e}')
            return False
