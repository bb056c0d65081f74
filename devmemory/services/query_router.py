"""
Query routing policy: decides which backends a search touches and how much of the
result budget each one gets. Pure decision logic, no I/O.
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Union

from ..models.core import Backend, SearchMethod
from ..utils.config import SearchConfig
from ..utils.config import config as app_config
from ..utils.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class BackendCall:
    """One backend invocation in a search plan."""
    backend: Backend
    k: int
    threshold: Optional[float] = None  # only meaningful for vector


@dataclass
class SearchPlan:
    method: SearchMethod  # effective method after resolving 'auto'
    limit: int
    calls: List[BackendCall] = field(default_factory=list)

    @property
    def backends(self) -> List[Backend]:
        return [call.backend for call in self.calls]

    def call_for(self, backend: Backend) -> Optional[BackendCall]:
        for call in self.calls:
            if call.backend == backend:
                return call
        return None


class QueryRouter:
    """Chooses backends for a query from an explicit method hint or the query's shape."""

    def __init__(self, config: Optional[SearchConfig] = None):
        self.config = config or app_config.search

    def route(self,
              query: str,
              method_hint: Union[str, SearchMethod] = SearchMethod.AUTO,
              limit: Optional[int] = None,
              threshold: Optional[float] = None) -> SearchPlan:
        """
        Build a search plan.

        Args:
            query: Raw query string
            method_hint: auto, text, vector, graph or hybrid
            limit: Result budget (config default when None)
            threshold: Vector similarity cutoff (config default when None)

        Returns:
            SearchPlan ordered vector, text, graph; an empty plan for blank queries or non-positive limits

        Raises:
            ValueError: If method_hint is not a known search method
        """
        method = SearchMethod(method_hint)
        limit = self.config.default_limit if limit is None else limit
        threshold = self.config.default_threshold if threshold is None else threshold

        if not query or not query.strip() or limit <= 0:
            return SearchPlan(method=method, limit=max(limit, 0))

        if method == SearchMethod.AUTO:
            if len(query) > self.config.auto_vector_min_length:
                # Long natural-language questions go to semantic search only
                method = SearchMethod.VECTOR
            else:
                method = SearchMethod.HYBRID

        if method == SearchMethod.HYBRID:
            calls = [
                BackendCall(Backend.VECTOR, self._share(limit, self.config.vector_share), threshold),
                BackendCall(Backend.TEXT, self._share(limit, self.config.text_share)),
                BackendCall(Backend.GRAPH, self._share(limit, self.config.graph_share)),
            ]
        elif method == SearchMethod.VECTOR:
            calls = [BackendCall(Backend.VECTOR, limit, threshold)]
        else:
            calls = [BackendCall(Backend(method.value), limit)]

        plan = SearchPlan(method=method, limit=limit, calls=calls)
        logger.debug(f'Routed query ({len(query)} chars, hint={method_hint}) to '
                     f'{[(c.backend.value, c.k) for c in plan.calls]}')
        return plan

    @staticmethod
    def _share(limit: int, share: float) -> int:
        # round() guards against float noise such as 20 * 0.3 == 6.000000000000001
        return max(1, math.ceil(round(limit * share, 9)))
