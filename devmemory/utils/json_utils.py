"""
JSON helpers for model responses and stored documents.
"""

import json
from typing import Any, List


def clean_json_response(response: str) -> str:
    """Strip markdown code fences from an LLM response.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = response.strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_list(response: str) -> List[Any]:
    """Parse an LLM response expected to hold a JSON array.

    Args:
        response: Raw LLM response, possibly fenced

    Returns:
        Parsed list

    Raises:
        ValueError: If the response is not valid JSON or not an array
    """
    cleaned = clean_json_response(response)
    if not cleaned:
        return []
    data = json.loads(cleaned)  # json.JSONDecodeError is a ValueError
    if not isinstance(data, list):
        raise ValueError(f'Expected a JSON array, got {type(data).__name__}')
    return data
