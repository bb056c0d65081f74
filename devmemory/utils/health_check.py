"""
Health check utilities for the application.
"""

from typing import Any, Dict

from ..services.backends import GraphStore, TextStore, VectorStore
from .logging_config import get_logger

logger = get_logger(__name__)


def _component_status(name: str, service: str, component) -> Dict[str, Any]:
    try:
        healthy = bool(component.health_check())
        return {'healthy': healthy, 'service': service, 'implementation': type(component).__name__}
    except Exception as e:
        logger.warning(f'{name} health check raised: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(text_store: TextStore, vector_store: VectorStore, graph_store: GraphStore) -> Dict[str, Any]:
    """Get detailed health status of each backend.

    Returns:
        Dictionary with health status of each component
    """
    health_status = {
        'text_store': _component_status('text_store', 'Record store (full-text)', text_store),
        'vector_store': _component_status('vector_store', 'Vector store', vector_store),
        'graph_store': _component_status('graph_store', 'Knowledge graph', graph_store),
    }

    if health_status['vector_store']['healthy']:
        try:
            health_status['vector_store']['vector_count'] = vector_store.count()
        except Exception as e:
            logger.warning(f'Vector count unavailable: {e}')

    return health_status
