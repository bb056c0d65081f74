"""
Hybrid search engine: runs the routed backend queries concurrently and merges
their results into one deduplicated, deterministically ordered list.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from ..models.core import Backend, GraphContext, SearchHit, SearchMethod
from ..utils.config import SearchConfig
from ..utils.config import config as app_config
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import from_iso
from .backends import GraphStore, TextStore, VectorStore
from .query_router import BackendCall, QueryRouter
from .search_adapters import GraphSearchAdapter, TextSearchAdapter, VectorSearchAdapter

logger = get_logger(__name__)


@dataclass
class BackendOutcome:
    """Result of one planned backend call after failure handling."""
    backend: Backend
    hits: List[SearchHit] = field(default_factory=list)
    failed: bool = False
    fallback_hits: List[SearchHit] = field(default_factory=list)  # text hits standing in for a failed vector call


def merge_hits(vector_hits: List[SearchHit],
               text_hits: List[SearchHit],
               graph_hits: List[SearchHit],
               limit: int) -> List[SearchHit]:
    """
    Merge per-backend hits into a single ranked list.

    Vector hits are inserted first (best similarity first), then text hits that are
    not yet present, then graph hits, which enrich an existing entry in place or are
    appended. The result is sorted with scored entries by similarity descending,
    followed by unscored entries by record updated_at descending; the sort is stable
    so insertion order decides remaining ties.

    Args:
        vector_hits: Hits from the vector adapter
        text_hits: Hits from the text adapter, in the text backend's order
        graph_hits: Hits from the graph adapter
        limit: Maximum number of hits to return

    Returns:
        Merged hits, each record id at most once
    """
    merged: Dict[str, SearchHit] = {}

    for hit in sorted(vector_hits, key=lambda h: -(h.score or 0.0)):
        existing = merged.get(hit.record.id)
        if existing is None:
            merged[hit.record.id] = _copy_hit(hit)
        elif (hit.score or 0.0) > (existing.score or 0.0):
            existing.score = hit.score

    for hit in text_hits:
        existing = merged.get(hit.record.id)
        if existing is None:
            merged[hit.record.id] = _copy_hit(hit)
        else:
            existing.origin_backends.add(Backend.TEXT)
            if existing.text_rank is None:
                existing.text_rank = hit.text_rank

    for hit in graph_hits:
        existing = merged.get(hit.record.id)
        if existing is None:
            merged[hit.record.id] = _copy_hit(hit)
            continue
        existing.origin_backends.add(Backend.GRAPH)
        if hit.graph_context is not None:
            if existing.graph_context is None:
                existing.graph_context = GraphContext()
            existing.graph_context.absorb(hit.graph_context)

    ordered = sorted(merged.values(), key=_rank_key)
    return ordered[:max(limit, 0)]


def _rank_key(hit: SearchHit):
    if hit.score is not None:
        return (0, -hit.score)
    return (1, -_timestamp(hit.record.updated_at))


def _timestamp(value: Union[datetime, str, None]) -> float:
    return from_iso(value).timestamp()


def _copy_hit(hit: SearchHit) -> SearchHit:
    context = None
    if hit.graph_context is not None:
        context = GraphContext(list(hit.graph_context.connected_entities), list(hit.graph_context.relationship_paths))
    return SearchHit(record=hit.record,
                     score=hit.score,
                     origin_backends=set(hit.origin_backends),
                     graph_context=context,
                     text_rank=hit.text_rank)


class HybridSearchEngine:
    """Routes, executes and merges searches across the text, vector and graph backends."""

    def __init__(self,
                 text_store: TextStore,
                 vector_store: VectorStore,
                 graph_store: GraphStore,
                 router: Optional[QueryRouter] = None,
                 config: Optional[SearchConfig] = None):
        """
        Initialize the engine.

        Args:
            text_store: Authoritative record store, also used to resolve hit ids
            vector_store: Active vector store (whichever implementation was configured)
            graph_store: Entity/relationship graph
            router: Query router, built from config when None
            config: SearchConfig, uses the global config when None
        """
        self.config = config or app_config.search
        self.router = router or QueryRouter(self.config)
        self.text_adapter = TextSearchAdapter(text_store)
        self.vector_adapter = VectorSearchAdapter(vector_store, text_store)
        self.graph_adapter = GraphSearchAdapter(graph_store, text_store)

        logger.info('Initialized HybridSearchEngine')

    async def search(self,
                     query: str,
                     limit: Optional[int] = None,
                     search_method: Union[str, SearchMethod] = SearchMethod.AUTO,
                     threshold: Optional[float] = None,
                     filters: Optional[Dict[str, Any]] = None) -> List[SearchHit]:
        """
        Search records across the backends chosen by the router.

        Backend failures never reach the caller: a failed vector call is replaced by
        text search with the same budget, a failed text or graph call is omitted.

        Args:
            query: Query text; blank queries return [] without touching any backend
            limit: Maximum number of results
            search_method: auto, text, vector, graph or hybrid
            threshold: Vector similarity cutoff
            filters: Backend-native filters forwarded to the text and vector stores

        Returns:
            Ranked hits, possibly empty

        Raises:
            ValueError: If search_method is unknown
        """
        if not query or not query.strip():
            logger.debug('Empty query, returning no results')
            return []

        plan = self.router.route(query, search_method, limit, threshold)
        if not plan.calls:
            return []

        outcomes = await asyncio.gather(*(self._execute(call, query, filters) for call in plan.calls))

        vector_hits: List[SearchHit] = []
        text_hits: List[SearchHit] = []
        fallback_hits: List[SearchHit] = []
        graph_hits: List[SearchHit] = []
        for outcome in outcomes:
            if outcome.backend == Backend.VECTOR:
                vector_hits = outcome.hits
                fallback_hits = outcome.fallback_hits
            elif outcome.backend == Backend.TEXT:
                text_hits = outcome.hits
            else:
                graph_hits = outcome.hits

        if all(outcome.failed for outcome in outcomes) and not fallback_hits:
            logger.warning(f'All backends failed for query {query[:50]!r}, returning no results')
            return []

        results = merge_hits(vector_hits, text_hits + fallback_hits, graph_hits, plan.limit)

        logger.debug(f'Search completed: query={query[:50]!r} method={plan.method.value} '
                     f'vector={len(vector_hits)} text={len(text_hits)} fallback={len(fallback_hits)} '
                     f'graph={len(graph_hits)} results={len(results)}')
        return results

    async def _execute(self, call: BackendCall, query: str, filters: Optional[Dict[str, Any]]) -> BackendOutcome:
        """Run one planned call; never raises."""
        try:
            if call.backend == Backend.VECTOR:
                hits = await self._run(self.vector_adapter.search, query, call.k, call.threshold, filters)
            elif call.backend == Backend.TEXT:
                hits = await self._run(self.text_adapter.search, query, call.k, filters)
            else:
                hits = await self._run(self.graph_adapter.search, query, call.k)
            return BackendOutcome(call.backend, hits)
        except Exception as e:
            logger.warning(f'{call.backend.value} search failed ({type(e).__name__}: {e})')

        if call.backend != Backend.VECTOR:
            return BackendOutcome(call.backend, failed=True)

        logger.warning('Vector search unavailable, falling back to text search')
        try:
            fallback = await self._run(self.text_adapter.search, query, call.k, filters)
        except Exception as e:
            logger.warning(f'Text fallback for vector search failed ({type(e).__name__}: {e})')
            fallback = []
        return BackendOutcome(call.backend, failed=True, fallback_hits=fallback)

    async def _run(self, func, *args):
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.config.backend_timeout)
