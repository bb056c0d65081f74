"""
Amazon Bedrock embedding client used by the vector stores.
"""

import json
import random
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)

DOCUMENT = 'search_document'
QUERY = 'search_query'


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Turns record documents and search queries into fixed-length vectors."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension
        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        family = self._model_family()
        if family == 'cohere' and self.dimension != 1024:
            raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id} ({self.dimension} dims)')

    def _model_family(self) -> Optional[str]:
        model = self.model_id.lower()
        for family in ('titan', 'cohere'):
            if family in model:
                return family
        return None

    def _payload(self, text: str, input_type: str) -> Dict[str, Any]:
        family = self._model_family()
        if family == 'titan':
            return {'inputText': text, 'dimensions': self.dimension}
        if family == 'cohere':
            return {'input_type': input_type, 'texts': [text]}
        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def _invoke(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        body = json.dumps(payload)
        last_error: Optional[Exception] = None

        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                last_error = e
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                if attempt < self.config.retry_attempts - 1:
                    time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {last_error}')

    def embed(self, text: str, input_type: str = DOCUMENT) -> List[float]:
        """
        Embed a piece of text.

        Args:
            text: Text to embed; blank text maps to the zero vector
            input_type: DOCUMENT for stored records, QUERY for search text

        Returns:
            Embedding of length config.dimension

        Raises:
            BedrockEmbedError: If the model call fails or returns a malformed vector
        """
        if not text or not text.strip():
            logger.debug('Blank text, returning zero embedding')
            return [0.0] * self.dimension

        result = self._invoke(self._payload(text, input_type))
        if 'embedding' in result:
            vector = result['embedding']
        else:
            vectors = result.get('embeddings') or [[]]
            vector = vectors[0]

        if len(vector) != self.dimension:
            raise BedrockEmbedError(f'Expected {self.dimension}-dimensional embedding, got {len(vector)}')
        return [float(value) for value in vector]

    def embed_document(self, text: str) -> List[float]:
        return self.embed(text, DOCUMENT)

    def embed_query(self, text: str) -> List[float]:
        return self.embed(text, QUERY)
