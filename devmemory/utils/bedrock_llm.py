"""
Amazon Bedrock LLM client used for model-assisted entity extraction.
"""

import random
import time
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock Converse client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Pre-built bedrock-runtime client (created from config when None)
        """
        self.config = config
        self.model_id = config.model_id

        # Retries are handled here so that backoff is visible in logs
        self.bedrock_runtime = client or boto3.client('bedrock-runtime',
                                                      region_name=config.region,
                                                      config=BotoConfig(connect_timeout=10,
                                                                        read_timeout=120,
                                                                        retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a response with the Converse API.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, usage)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        inference_config = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

        last_error: Optional[Exception] = None
        for attempt in range(self.config.retry_attempts):
            try:
                response = self.bedrock_runtime.converse(modelId=self.model_id,
                                                         messages=messages,
                                                         system=[{'text': system_prompt}],
                                                         inferenceConfig=inference_config)
                content = response.get('output', {}).get('message', {}).get('content', [])
                text = ''.join(block.get('text', '') for block in content)
                logger.debug(f'Bedrock LLM response generated (length: {len(text)})')
                return text, response.get('usage')

            except (ClientError, BotoCoreError) as e:
                last_error = e
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')
                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    time.sleep(self.config.retry_delay * (2**attempt) + random.uniform(0, 1))

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {last_error}')
