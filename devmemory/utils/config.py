"""
Configuration management for backend services and application settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str
    use_iam_auth: bool


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch (full-text records and k-NN vectors)."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    auth: str  # aws | none
    use_ssl: bool


@dataclass
class VectorStoreConfig:
    """Which vector store backs semantic search. Chosen once at startup."""
    provider: str  # opensearch | local
    local_path: str
    batching_enabled: bool
    batch_size: int
    batch_interval: float


@dataclass
class EntityExtractionConfig:
    """Configuration for entity extraction."""
    provider: str  # pattern | bedrock


@dataclass
class SearchConfig:
    """Query routing and execution policy."""
    default_limit: int
    default_threshold: float
    auto_vector_min_length: int
    vector_share: float
    text_share: float
    graph_share: float
    backend_timeout: float


@dataclass
class IngestionConfig:
    """Configuration for write fan-out."""
    side_effect_timeout: float


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    vector_store: VectorStoreConfig
    entity_extraction: EntityExtractionConfig
    search: SearchConfig
    ingestion: IngestionConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '3')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '3')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '1.0')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'),
                                   use_iam_auth=_env_bool('NEPTUNE_IAM_AUTH', 'true'))

    # OpenSearch configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'devmemory'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         auth=os.getenv('OPENSEARCH_AUTH', 'aws'),
                                         use_ssl=_env_bool('OPENSEARCH_USE_SSL', 'true'))

    vector_store_config = VectorStoreConfig(provider=os.getenv('VECTOR_STORE_PROVIDER', 'opensearch'),
                                            local_path=os.getenv('VECTOR_STORE_LOCAL_PATH', './data/vector-data.json'),
                                            batching_enabled=_env_bool('VECTOR_STORE_BATCHING', 'false'),
                                            batch_size=int(os.getenv('VECTOR_STORE_BATCH_SIZE', '50')),
                                            batch_interval=float(os.getenv('VECTOR_STORE_BATCH_INTERVAL', '0.1')))

    entity_extraction_config = EntityExtractionConfig(provider=os.getenv('ENTITY_EXTRACTOR', 'pattern'))

    # Search routing configuration
    search_config = SearchConfig(default_limit=int(os.getenv('SEARCH_DEFAULT_LIMIT', '20')),
                                 default_threshold=float(os.getenv('SEARCH_DEFAULT_THRESHOLD', '0.5')),
                                 auto_vector_min_length=int(os.getenv('SEARCH_AUTO_VECTOR_MIN_LENGTH', '50')),
                                 vector_share=float(os.getenv('SEARCH_VECTOR_SHARE', '0.6')),
                                 text_share=float(os.getenv('SEARCH_TEXT_SHARE', '0.3')),
                                 graph_share=float(os.getenv('SEARCH_GRAPH_SHARE', '0.1')),
                                 backend_timeout=float(os.getenv('SEARCH_BACKEND_TIMEOUT', '5.0')))

    ingestion_config = IngestionConfig(side_effect_timeout=float(os.getenv('INGESTION_SIDE_EFFECT_TIMEOUT', '30.0')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     vector_store=vector_store_config,
                     entity_extraction=entity_extraction_config,
                     search=search_config,
                     ingestion=ingestion_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
