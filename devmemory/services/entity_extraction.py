"""
Entity extraction: pattern-based (default, offline) and Bedrock LLM two-step extraction.
"""

import math
import re
from typing import Any, Dict, List, Optional

from ..models.core import EntityType, ExtractedEntity, ExtractionResult, RelationshipIntent, RelationType, normalize_name
from ..utils.bedrock_llm import BedrockLLM, BedrockLLMError
from ..utils.config import BedrockLLMConfig
from ..utils.config import config as app_config
from ..utils.json_utils import parse_json_list
from ..utils.logging_config import get_logger
from .backends import EntityExtractor

logger = get_logger(__name__)

TECHNOLOGIES = {
    'react': 'React',
    'angular': 'Angular',
    'vue': 'Vue',
    'nodejs': 'Node.js',
    'node.js': 'Node.js',
    'python': 'Python',
    'java': 'Java',
    'javascript': 'JavaScript',
    'typescript': 'TypeScript',
    'aws': 'AWS',
    'azure': 'Azure',
    'gcp': 'GCP',
    'kubernetes': 'Kubernetes',
    'docker': 'Docker',
    'redis': 'Redis',
    'mongodb': 'MongoDB',
    'postgresql': 'PostgreSQL',
    'sqlite': 'SQLite',
    'github': 'GitHub',
    'gitlab': 'GitLab',
    'jenkins': 'Jenkins',
    'terraform': 'Terraform',
    'ansible': 'Ansible',
    'elasticsearch': 'Elasticsearch',
    'opensearch': 'OpenSearch',
    'kafka': 'Kafka',
}

ORGANIZATION_PATTERNS = [
    re.compile(r'\b[A-Z][a-zA-Z]+ (?:Inc|LLC|Corp|Corporation|Company|Ltd|Limited)\b'),
    re.compile(r'\b(?:Microsoft|Google|Amazon|Apple|Meta|Tesla|Netflix)\b'),
]

PROJECT_PATTERNS = [
    re.compile(r'\b[Pp]roject\s+([A-Z][\w-]{2,30})'),
    re.compile(r'\b([A-Z][\w-]{2,20})\s+project\b'),
    re.compile(r'\b[Ii]nitiative\s+([A-Z][\w-]{2,30})'),
]

PROJECT_STOPWORDS = {'The', 'This', 'That', 'Our', 'Your', 'Their', 'New', 'Each', 'Every', 'Any'}

LOCATION_PATTERNS = [
    re.compile(r'\b(?:New York|Los Angeles|Chicago|Houston|Seattle|San Francisco|Boston|Austin|Denver)\b'),
    re.compile(r'\b(?:USA|United States|UK|United Kingdom|Canada|Germany|France|Japan|Australia)\b'),
]

_TECHNOLOGY_RE = re.compile(r'(?<![\w.])(' + '|'.join(re.escape(k) for k in sorted(TECHNOLOGIES, key=len, reverse=True))
                            + r')(?![\w])')


class EntityExtractionError(Exception):
    """Custom exception for entity extraction errors."""
    pass


def _clean_email_to_name(value: str) -> str:
    """'jane.doe@corp.com' -> 'Jane Doe'; plain names pass through."""
    value = value.strip()
    if '@' not in value:
        return value
    local = value.split('@', 1)[0]
    return ' '.join(part.capitalize() for part in re.split(r'[._-]+', local) if part)


class PatternEntityExtractor(EntityExtractor):
    """Extract entities with keyword and regex heuristics; relationships come from co-occurrence."""

    def extract(self, text: str, attributes: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        attributes = attributes or {}
        if not text or not text.strip():
            return ExtractionResult()

        found: Dict[str, ExtractedEntity] = {}

        def add(name: str, entity_type: EntityType, confidence: float) -> None:
            name = ' '.join(name.split())
            key = normalize_name(name)
            if not key:
                return
            if key in found:
                found[key].confidence = max(found[key].confidence, confidence)
                return
            found[key] = ExtractedEntity(name=name, type=entity_type, confidence=confidence)

        for person in self._people(attributes):
            add(person, EntityType.PERSON, 1.0)
        if attributes.get('project'):
            add(str(attributes['project']), EntityType.PROJECT, 1.0)
        for project in self._projects(text):
            add(project, EntityType.PROJECT, 0.7)
        for org in self._organizations(text):
            add(org, EntityType.ORGANIZATION, 0.8)
        for tech in self._technologies(text):
            add(tech, EntityType.TECHNOLOGY, 0.9)
        for location in self._locations(text):
            add(location, EntityType.LOCATION, 0.7)

        entities = list(found.values())
        relationships = self._relationships(entities)
        logger.debug(f'Pattern extraction found {len(entities)} entities and {len(relationships)} relationships')
        return ExtractionResult(entities=entities, relationships=relationships)

    @staticmethod
    def _people(attributes: Dict[str, Any]) -> List[str]:
        people = []
        if attributes.get('author'):
            people.append(_clean_email_to_name(str(attributes['author'])))
        for participant in attributes.get('participants') or []:
            people.append(_clean_email_to_name(str(participant)))
        return [p for p in people if p]

    @staticmethod
    def _technologies(text: str) -> List[str]:
        names = []
        for match in _TECHNOLOGY_RE.finditer(text.lower()):
            name = TECHNOLOGIES[match.group(1)]
            if name not in names:
                names.append(name)
        return names

    @staticmethod
    def _organizations(text: str) -> List[str]:
        names = []
        for pattern in ORGANIZATION_PATTERNS:
            for match in pattern.findall(text):
                if match not in names:
                    names.append(match)
        return names

    @staticmethod
    def _projects(text: str) -> List[str]:
        names = []
        for pattern in PROJECT_PATTERNS:
            for match in pattern.finditer(text):
                name = match.group(1).strip()
                if (len(name) > 2 and name not in PROJECT_STOPWORDS and name.lower() not in TECHNOLOGIES
                        and name not in names):
                    names.append(name)
        return names

    @staticmethod
    def _locations(text: str) -> List[str]:
        names = []
        for pattern in LOCATION_PATTERNS:
            for match in pattern.findall(text):
                if match not in names:
                    names.append(match)
        return names

    @staticmethod
    def _relationships(entities: List[ExtractedEntity]) -> List[RelationshipIntent]:
        by_type: Dict[EntityType, List[str]] = {}
        for entity in entities:
            by_type.setdefault(entity.type, []).append(entity.name)

        people = by_type.get(EntityType.PERSON, [])
        projects = by_type.get(EntityType.PROJECT, [])
        technologies = by_type.get(EntityType.TECHNOLOGY, [])
        organizations = by_type.get(EntityType.ORGANIZATION, [])

        intents = []
        for person in people:
            for project in projects:
                intents.append(RelationshipIntent(person, project, RelationType.WORKS_ON, 0.8, 0.7))
            if not projects:
                for tech in technologies:
                    intents.append(RelationshipIntent(person, tech, RelationType.USES, 0.5, 0.6))
        for i, person in enumerate(people):
            for other in people[i + 1:]:
                intents.append(RelationshipIntent(person, other, RelationType.COLLABORATES_WITH, 0.6, 0.6))
        for project in projects:
            for tech in technologies:
                intents.append(RelationshipIntent(project, tech, RelationType.USES, 0.7, 0.7))
            for org in organizations:
                intents.append(RelationshipIntent(project, org, RelationType.BELONGS_TO, 0.5, 0.5))
        if not projects:
            for i, tech in enumerate(technologies):
                for other in technologies[i + 1:]:
                    intents.append(RelationshipIntent(tech, other, RelationType.RELATED_TO, 0.3, 0.5))
        return intents


class BedrockEntityExtractor(EntityExtractor):
    """Extract entities and relationships from record text using a Bedrock LLM, in two calls."""

    def __init__(self, llm: Optional[BedrockLLM] = None, llm_config: Optional[BedrockLLMConfig] = None):
        """Initialize the entity extraction service."""
        self.llm = llm or BedrockLLM(llm_config or app_config.bedrock_llm)

        logger.info('Initialized BedrockEntityExtractor')

    def extract(self, text: str, attributes: Optional[Dict[str, Any]] = None) -> ExtractionResult:
        """Extract entities, then relationships between them.

        Args:
            text: Record text
            attributes: Record attributes, author/project are given to the model as context

        Returns:
            ExtractionResult with name-keyed relationships

        Raises:
            EntityExtractionError: If the LLM call fails
        """
        if not text or not text.strip():
            logger.warning('Empty text provided for entity extraction')
            return ExtractionResult()

        context = self._context(text, attributes or {})
        entities = self.extract_entities(context)
        if len(entities) < 2:
            return ExtractionResult(entities=entities)
        return ExtractionResult(entities=entities, relationships=self.extract_relationships(context, entities))

    def extract_entities(self, context: str) -> List[ExtractedEntity]:
        """First LLM call: extract typed entities."""
        entity_types = '|'.join(t.value for t in EntityType)
        system_prompt = f"""
You are an expert entity extraction system for a developer knowledge base. Extract entities from the note.

Extract entities that are:
- People (authors, teammates, stakeholders)
- Projects, repositories, services and APIs
- Technologies (languages, frameworks, databases, cloud services)
- Organizations, locations, documents and concepts

Return a JSON array of entities with this exact format:
```json
[
  {{
    "name": "entity name",
    "type": "{entity_types}",
    "confidence": 0.9
  }}
]
```

Only extract entities that are explicitly mentioned. Do not infer or assume entities.
Return empty array [] if no entities found."""

        data = self._call(system_prompt, f'Extract entities from the note:\n{context}')

        entities = []
        seen = set()
        for item in data:
            if not isinstance(item, dict):
                continue
            name = str(item.get('name', '')).strip()
            try:
                entity_type = EntityType(str(item.get('type', '')).strip().lower())
            except ValueError:
                entity_type = EntityType.CONCEPT
            key = normalize_name(name)
            if not key or key in seen:
                continue
            seen.add(key)
            entities.append(ExtractedEntity(name=name, type=entity_type, confidence=_confidence(item.get('confidence', 0.8))))

        logger.debug(f'Extracted {len(entities)} entities')
        return entities

    def extract_relationships(self, context: str, entities: List[ExtractedEntity]) -> List[RelationshipIntent]:
        """Second LLM call: relationships between the entities found by the first."""
        names = {normalize_name(e.name): e.name for e in entities}
        relation_types = '|'.join(t.value for t in RelationType)
        system_prompt = f"""
You are an expert relationship extraction system. Extract relationships between entities from the note.

Entities found in the note: {', '.join(names.values())}

Return a JSON array of relationships with this exact format:
```json
[
  {{
    "from_name": "source entity name",
    "to_name": "target entity name",
    "type": "{relation_types}",
    "strength": 0.5,
    "confidence": 0.9
  }}
]
```

Only use the entities listed above. Strength is the relative importance of the relationship.
Strength and confidence should be between 0.0 and 1.0.
Return empty array [] if no relationships found."""

        data = self._call(system_prompt, f'Extract relationships from the note:\n{context}')

        intents = []
        for item in data:
            if not isinstance(item, dict):
                continue
            from_key = normalize_name(str(item.get('from_name', '')))
            to_key = normalize_name(str(item.get('to_name', '')))
            if from_key not in names or to_key not in names:
                logger.debug('Skip relationship due to unknown entity name')
                continue
            try:
                relation_type = RelationType(str(item.get('type', '')).strip().lower())
            except ValueError:
                relation_type = RelationType.RELATED_TO
            intents.append(RelationshipIntent(from_name=names[from_key],
                                              to_name=names[to_key],
                                              type=relation_type,
                                              strength=_confidence(item.get('strength', 0.5)),
                                              confidence=_confidence(item.get('confidence', 0.8))))

        logger.debug(f'Extracted {len(intents)} relationships')
        return intents

    def _call(self, system_prompt: str, user_text: str) -> List[Any]:
        llm_messages = [{
            'role': 'user',
            'content': [{
                'text': user_text
            }]
        }, {
            'role': 'assistant',
            'content': [{
                'text': '```json'
            }]
        }]

        try:
            response, _ = self.llm.generate_response(messages=llm_messages, system_prompt=system_prompt, stop_sequences=['```'])
        except BedrockLLMError as e:
            logger.error(f'LLM error during entity extraction: {e}')
            raise EntityExtractionError(f'Entity extraction failed: {e}')

        try:
            return parse_json_list(response)
        except ValueError as e:
            logger.error(f'Failed to parse entity extraction JSON: {e}')
            return []

    @staticmethod
    def _context(text: str, attributes: Dict[str, Any]) -> str:
        lines = [text]
        for key in ('author', 'project', 'repository'):
            if attributes.get(key):
                lines.append(f'{key.capitalize()}: {attributes[key]}')
        return '\n'.join(lines)


def _confidence(value: Any) -> float:
    try:
        value = float(value)
    except (ValueError, TypeError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, value))


def build_entity_extractor(provider: Optional[str] = None) -> EntityExtractor:
    """Create the configured extractor (pattern or bedrock)."""
    provider = (provider or app_config.entity_extraction.provider).lower()
    if provider == 'bedrock':
        return BedrockEntityExtractor()
    if provider != 'pattern':
        logger.warning(f'Unknown entity extractor {provider!r}, using pattern extractor')
    return PatternEntityExtractor()
