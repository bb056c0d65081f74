"""
Write-side fan-out: keeps the vector index and knowledge graph in step with the
authoritative text store.
"""

import asyncio
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional

from ..models.core import (Entity, EntityType, ExtractedEntity, Record, RecordKind, Relationship, RelationshipIntent,
                           dedupe_tags, normalize_name)
from ..utils.config import IngestionConfig
from ..utils.config import config as app_config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import later_of, utc_now
from .backends import EntityExtractor, GraphStore, TextStore, VectorStore

logger = get_logger(__name__)

UPDATABLE_FIELDS = ('title', 'body', 'kind', 'tags', 'attributes')


class IngestionError(Exception):
    """Raised when the authoritative text store write fails."""
    pass


def vector_metadata(record: Record) -> Dict[str, Any]:
    """Filterable fields stored alongside a record's vector."""
    metadata = {
        'title': record.title,
        'kind': record.kind.value,
        'tags': list(record.tags),
        'updated_at': record.updated_at.isoformat(),
    }
    if record.attributes.get('project'):
        metadata['project'] = record.attributes['project']
    return metadata


class IngestionCoordinator:
    """Fans record writes out to the text, vector and graph backends.

    The text store write must succeed; vector and graph writes are best-effort
    and only logged when they fail.
    """

    def __init__(self,
                 text_store: TextStore,
                 vector_store: VectorStore,
                 graph_store: GraphStore,
                 entity_extractor: EntityExtractor,
                 config: Optional[IngestionConfig] = None):
        self.text_store = text_store
        self.vector_store = vector_store
        self.graph_store = graph_store
        self.entity_extractor = entity_extractor
        self.config = config or app_config.ingestion

        logger.info('Initialized IngestionCoordinator')

    async def create_record(self,
                            title: str,
                            body: str,
                            kind: RecordKind = RecordKind.NOTE,
                            tags: Optional[List[str]] = None,
                            attributes: Optional[Dict[str, Any]] = None,
                            record_id: Optional[str] = None) -> Record:
        """
        Create a record and index it everywhere.

        Args:
            title: Short title
            body: Record text
            kind: Record kind
            tags: Tags, duplicates dropped
            attributes: Provenance/source metadata
            record_id: Caller-supplied id; a uuid4 is generated when None

        Returns:
            The stored record

        Raises:
            IngestionError: If record_id is already taken or the text store write fails
        """
        if record_id:
            await self._ensure_new(record_id)

        now = utc_now()
        record = Record(id=record_id or str(uuid.uuid4()),
                        title=title,
                        body=body,
                        kind=RecordKind(kind),
                        tags=dedupe_tags(tags),
                        attributes=dict(attributes or {}),
                        created_at=now,
                        updated_at=now)

        await self._write_authoritative(record)
        logger.debug(f'Record created in text store: {record.id}')

        await self._fan_out(record)
        logger.info(f'Record created: {record.id} ({record.title!r})')
        return record

    async def _ensure_new(self, record_id: str) -> None:
        try:
            existing = await asyncio.to_thread(self.text_store.get, record_id)
        except Exception as e:
            logger.error(f'Failed to check record id {record_id}: {e}')
            raise IngestionError(f'Record creation failed: {e}')
        if existing is not None:
            raise IngestionError(f'Record already exists: {record_id}')

    async def update_record(self, record_id: str, updates: Dict[str, Any]) -> Optional[Record]:
        """
        Apply a partial update and re-index the record.

        Args:
            record_id: Record to update
            updates: Subset of title, body, kind, tags, attributes; other keys are ignored

        Returns:
            The updated record, or None if it does not exist

        Raises:
            IngestionError: If reading or writing the text store fails
        """
        try:
            existing = await asyncio.to_thread(self.text_store.get, record_id)
        except Exception as e:
            logger.error(f'Failed to load record {record_id} for update: {e}')
            raise IngestionError(f'Record update failed: {e}')
        if existing is None:
            logger.debug(f'Record not found for update: {record_id}')
            return None

        changes = {key: value for key, value in updates.items() if key in UPDATABLE_FIELDS}
        ignored = set(updates) - set(changes)
        if ignored:
            logger.debug(f'Ignoring non-updatable fields for {record_id}: {sorted(ignored)}')
        if 'kind' in changes:
            changes['kind'] = RecordKind(changes['kind'])
        if 'tags' in changes:
            changes['tags'] = dedupe_tags(changes['tags'])
        if 'attributes' in changes:
            changes['attributes'] = dict(changes['attributes'] or {})

        updated = replace(existing, **changes, updated_at=later_of(existing.updated_at))

        await self._write_authoritative(updated)
        await self._fan_out(updated)
        logger.debug(f'Record updated across backends: {record_id}')
        return updated

    async def delete_record(self, record_id: str) -> bool:
        """
        Delete a record from the text store and, best-effort, from the vector store.

        Graph entities and relationships are kept since other records may reference them.

        Returns:
            True if the text store held the record

        Raises:
            IngestionError: If the text store delete fails
        """
        text_delete = asyncio.to_thread(self.text_store.delete, record_id)
        vector_delete = self._best_effort('vector delete', record_id, self.vector_store.delete, record_id)
        deleted, _ = await asyncio.gather(text_delete, vector_delete, return_exceptions=True)

        if isinstance(deleted, BaseException):
            logger.error(f'Failed to delete record {record_id} from text store: {deleted}')
            raise IngestionError(f'Record delete failed: {deleted}')

        logger.debug(f'Record delete {record_id}: existed={bool(deleted)}')
        return bool(deleted)

    async def get_record(self, record_id: str) -> Optional[Record]:
        return await asyncio.to_thread(self.text_store.get, record_id)

    async def _write_authoritative(self, record: Record) -> None:
        try:
            await asyncio.to_thread(self.text_store.put, record)
        except Exception as e:
            logger.error(f'Failed to write record {record.id} to text store: {e}')
            raise IngestionError(f'Record write failed: {e}')

    async def _fan_out(self, record: Record) -> None:
        await asyncio.gather(
            self._best_effort('vector upsert', record.id, self.vector_store.upsert, record.id, record.document_text(),
                              vector_metadata(record)),
            self._best_effort('graph enrichment', record.id, self.enrich_graph, record),
        )

    async def _best_effort(self, operation: str, record_id: str, func, *args) -> None:
        try:
            await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.config.side_effect_timeout)
        except asyncio.TimeoutError:
            logger.warning(f'{operation} timed out for record {record_id}; index may lag until re-ingested')
        except Exception as e:
            logger.warning(f'{operation} failed for record {record_id}: {type(e).__name__}: {e}')

    def enrich_graph(self, record: Record) -> List[Entity]:
        """
        Extract entities and relationships from a record and store them in the graph.

        Runs as one best-effort unit: names are first resolved to stored entities,
        then relationship intents are rewritten to entity ids.

        Returns:
            Entities the record now references
        """
        extraction = self.entity_extractor.extract(record.document_text(), record.attributes)
        if not extraction.entities:
            logger.debug(f'No entities extracted from record {record.id}')
            return []

        resolved: Dict[str, Entity] = {}
        for extracted in extraction.entities:
            try:
                entity = self.resolve_or_create_entity(extracted, record.id)
            except Exception as e:
                logger.warning(f'Failed to store entity {extracted.name!r} for record {record.id}: {e}')
                continue
            resolved[normalize_name(extracted.name)] = entity

        created = 0
        for intent in extraction.relationships:
            try:
                if self.resolve_relationship(intent, resolved, record.id) is not None:
                    created += 1
            except Exception as e:
                logger.warning(f'Failed to store relationship {intent.from_name!r} -> {intent.to_name!r} '
                               f'for record {record.id}: {e}')

        logger.debug(f'Record {record.id}: {len(resolved)} entities, {created} relationships stored')
        return list(resolved.values())

    def resolve_or_create_entity(self, extracted: ExtractedEntity, record_id: Optional[str] = None) -> Entity:
        """
        Attach a record to the entity with this name, creating the entity if needed.

        Args:
            extracted: Name-keyed entity from the extractor
            record_id: Record that mentions the entity

        Returns:
            The stored entity
        """
        now = utc_now()
        candidate = Entity(id=str(uuid.uuid4()),
                           name=extracted.name.strip(),
                           type=EntityType(extracted.type),
                           confidence=extracted.confidence,
                           memory_ids=[record_id] if record_id else [],
                           created_at=now,
                           updated_at=now)
        return self.graph_store.upsert_entity(candidate)

    def resolve_relationship(self,
                             intent: RelationshipIntent,
                             resolved: Optional[Dict[str, Entity]] = None,
                             record_id: Optional[str] = None) -> Optional[Relationship]:
        """
        Rewrite a name-keyed relationship intent to entity ids and store it.

        Names not resolved during this ingestion are looked up in the graph; if
        either endpoint is still unknown the intent is dropped.

        Returns:
            The stored relationship, or None when dropped
        """
        resolved = resolved or {}
        endpoints = []
        for name in (intent.from_name, intent.to_name):
            entity = resolved.get(normalize_name(name)) or self.graph_store.find_entity_by_name(name)
            if entity is None:
                logger.debug(f'Entity {name!r} not found, skipping relationship {intent.type}')
                return None
            endpoints.append(entity)

        now = utc_now()
        relationship = Relationship(id=str(uuid.uuid4()),
                                    from_entity_id=endpoints[0].id,
                                    to_entity_id=endpoints[1].id,
                                    type=intent.type,
                                    strength=intent.strength,
                                    confidence=intent.confidence,
                                    memory_id=record_id,
                                    created_at=now,
                                    updated_at=now)
        return self.graph_store.upsert_relationship(relationship)
