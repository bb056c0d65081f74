"""
Adapters that run one backend query and normalize its output to SearchHit.

Adapters are synchronous and raise on backend failure; the search engine runs
them in worker threads and turns failures into fallbacks.
"""

from typing import Any, Dict, List, Optional

from ..models.core import Backend, GraphContext, SearchHit
from ..utils.logging_config import get_logger
from .backends import GraphStore, TextStore, VectorStore

logger = get_logger(__name__)


class TextSearchAdapter:
    """Full-text search; hits keep the text backend's own order and carry no similarity."""

    backend = Backend.TEXT

    def __init__(self, text_store: TextStore):
        self.text_store = text_store

    def search(self, query: str, k: int, filters: Optional[Dict[str, Any]] = None) -> List[SearchHit]:
        record_ids = self.text_store.full_text_query(query, k, filters)
        hits = []
        for rank, record_id in enumerate(record_ids[:k]):
            record = self.text_store.get(record_id)
            if record is None:
                logger.debug(f'Text hit {record_id} no longer in text store')
                continue
            hits.append(SearchHit(record=record, origin_backends={Backend.TEXT}, text_rank=rank))
        return hits


class VectorSearchAdapter:
    """Semantic search; similarity thresholding is left to the vector store."""

    backend = Backend.VECTOR

    def __init__(self, vector_store: VectorStore, text_store: TextStore):
        self.vector_store = vector_store
        self.text_store = text_store

    def search(self,
               query: str,
               k: int,
               threshold: float,
               filters: Optional[Dict[str, Any]] = None) -> List[SearchHit]:
        matches = self.vector_store.similarity_query(query, k, threshold, filters)
        hits = []
        for record_id, similarity in sorted(matches, key=lambda m: -m[1])[:k]:
            # Vectors may lag behind deletes; the text store decides existence
            record = self.text_store.get(record_id)
            if record is None:
                logger.debug(f'Vector hit {record_id} has no backing record, skipping')
                continue
            hits.append(SearchHit(record=record, score=float(similarity), origin_backends={Backend.VECTOR}))
        return hits


class GraphSearchAdapter:
    """Entity search; every record referenced by a matching entity becomes a hit."""

    backend = Backend.GRAPH

    def __init__(self, graph_store: GraphStore, text_store: TextStore):
        self.graph_store = graph_store
        self.text_store = text_store

    def search(self, query: str, k: int) -> List[SearchHit]:
        results = self.graph_store.search_entities(query, k)

        hits: Dict[str, SearchHit] = {}
        for result in results:
            entity = result.entity
            context = GraphContext(connected_entities=[entity.name],
                                   relationship_paths=[f'Found entity: {entity.name} ({_type_label(entity.type)})'])
            for memory_id in entity.memory_ids:
                if memory_id in hits:
                    hits[memory_id].graph_context.absorb(context)
                    continue
                if len(hits) >= k:
                    continue
                record = self.text_store.get(memory_id)
                if record is None:
                    continue
                hits[memory_id] = SearchHit(record=record,
                                            origin_backends={Backend.GRAPH},
                                            graph_context=GraphContext(list(context.connected_entities),
                                                                       list(context.relationship_paths)))
        return list(hits.values())


def _type_label(value) -> str:
    return getattr(value, 'value', value)
