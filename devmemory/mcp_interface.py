"""
MCP Interface Layer using fastmcp for agent and editor integrations.
"""
import asyncio
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .services.ingestion import IngestionError
from .services.memory_management import MemoryManagementError, MemoryManagementService
from .utils.config import config
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('DevMemory')
memory_service: Optional[MemoryManagementService] = None


def get_memory_service() -> MemoryManagementService:
    """Build the service on first use so importing this module needs no AWS access."""
    global memory_service
    if memory_service is None:
        memory_service = MemoryManagementService()
    return memory_service


@mcp.tool()
async def create_memory(title: str,
                        content: str,
                        memory_type: str = 'note',
                        tags: Optional[List[str]] = None,
                        metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Store a new memory.

    Args:
        title: Short title
        content: Memory body
        memory_type: code_snippet, documentation, meeting_notes, decision, api_call, debug_session,
            project_context, kubernetes_resource, command, link or note
        tags: Optional tags
        metadata: Optional provenance such as author, project or repository

    Returns:
        The stored memory
    """
    if not title or not title.strip():
        raise ToolError('Title is required')
    try:
        record = await get_memory_service().create_memory(title, content, memory_type, tags, metadata)
        return record.to_dict()
    except ValueError as e:
        raise ToolError(f'Invalid memory: {e}')
    except (IngestionError, MemoryManagementError) as e:
        logger.error(f'Memory creation failed in MCP: {e}')
        raise ToolError(f'Memory creation failed: {e}')


@mcp.tool()
async def update_memory(memory_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Update title, content, memory_type, tags or metadata of a memory.

    Returns:
        The updated memory, or None if it does not exist
    """
    # Tool-facing names map onto record fields
    aliases = {'content': 'body', 'memory_type': 'kind', 'metadata': 'attributes'}
    changes = {aliases.get(key, key): value for key, value in updates.items()}
    try:
        record = await get_memory_service().update_memory(memory_id, changes)
        return record.to_dict() if record else None
    except ValueError as e:
        raise ToolError(f'Invalid update: {e}')
    except (IngestionError, MemoryManagementError) as e:
        logger.error(f'Memory update failed in MCP: {e}')
        raise ToolError(f'Memory update failed: {e}')


@mcp.tool()
async def delete_memory(memory_id: str) -> bool:
    """Delete a memory. Returns False if it did not exist."""
    try:
        return await get_memory_service().delete_memory(memory_id)
    except IngestionError as e:
        logger.error(f'Memory deletion failed in MCP: {e}')
        raise ToolError(f'Memory deletion failed: {e}')


@mcp.tool()
async def get_memory(memory_id: str) -> Optional[Dict[str, Any]]:
    """Fetch a memory by id."""
    record = await get_memory_service().get_memory(memory_id)
    return record.to_dict() if record else None


@mcp.tool()
async def search_memories(query: str,
                          limit: int = 20,
                          search_method: str = 'auto',
                          threshold: Optional[float] = None,
                          filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Search memories across full-text, semantic and knowledge-graph backends.

    Args:
        query: Natural language or keyword query
        limit: Maximum number of results to return (default: 20)
        search_method: auto, text, vector, graph or hybrid
        threshold: Minimum semantic similarity for vector matches
        filters: Optional kind, tags, project, date_from, date_to

    Returns:
        Ranked results with the memory, similarity score and matching backends
    """
    try:
        hits = await get_memory_service().search_memories(query, limit, search_method, threshold, filters)
    except ValueError as e:
        raise ToolError(str(e))

    logger.debug(f'MCP search returned {len(hits)} results')
    return [hit.to_dict() for hit in hits]


@mcp.tool()
async def search_entities(query: str, limit: int = 10) -> List[Dict[str, Any]]:
    """Find knowledge-graph entities (people, projects, technologies...) by name."""
    results = await asyncio.to_thread(get_memory_service().search_entities, query, limit)
    return [{
        'entity': result.entity.to_dict(),
        'relevance': result.relevance,
        'relationship_count': result.relationship_count
    } for result in results]


@mcp.tool()
async def get_entity_relationships(entity_id: str, direction: str = 'both') -> List[Dict[str, Any]]:
    """List relationships of an entity. direction is incoming, outgoing or both."""
    try:
        relationships = await asyncio.to_thread(get_memory_service().get_entity_relationships, entity_id, direction)
    except ValueError as e:
        raise ToolError(str(e))
    return [relationship.to_dict() for relationship in relationships]


@mcp.tool()
async def system_health() -> Dict[str, Any]:
    """Report health of the record, vector and graph backends."""
    return await asyncio.to_thread(get_memory_service().get_system_health)


def main():
    transport = config.mcp.transport
    if transport == 'stdio':
        mcp.run(transport=transport)
    else:
        mcp.run(transport=transport, host=config.mcp.host, port=config.mcp.port)


if __name__ == '__main__':
    main()
