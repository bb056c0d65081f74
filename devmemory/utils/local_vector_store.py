"""
In-process vector store persisted to a JSON file.

Used for single-user setups where no OpenSearch collection is available.
"""

import json
import os
import threading
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from ..services.backends import VectorStore
from .logging_config import get_logger
from .timestamp_utils import from_iso, to_iso, utc_now

logger = get_logger(__name__)

STORE_VERSION = '1.0'
DATE_FILTERS = ('date_from', 'date_to')


class VectorStoreError(Exception):
    """Custom exception for local vector store errors."""
    pass


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors; 0.0 for mismatched lengths or zero vectors."""
    if a.shape != b.shape:
        return 0.0
    magnitude = float(np.linalg.norm(a) * np.linalg.norm(b))
    if magnitude == 0:
        return 0.0
    return float(np.dot(a, b) / magnitude)


def matches_filters(metadata: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
    """Match metadata against search filters.

    date_from and date_to bound metadata['updated_at'] inclusively. Every other key is an
    equality match; list-valued metadata matches if it contains any wanted value. Empty
    filter values are ignored.
    """
    for key, expected in (filters or {}).items():
        if expected is None or expected == '' or expected == []:
            continue
        if key in DATE_FILTERS:
            if not _within_date_filter(metadata.get('updated_at'), key, expected):
                return False
            continue
        actual = metadata.get(key)
        expected = getattr(expected, 'value', expected)
        if isinstance(actual, list):
            wanted = expected if isinstance(expected, (list, tuple, set)) else [expected]
            if not any(value in actual for value in wanted):
                return False
        elif actual != expected:
            return False
    return True


def _within_date_filter(updated_at: Any, key: str, bound: Any) -> bool:
    if not updated_at:
        return False
    stamp = from_iso(updated_at)
    limit = from_iso(bound)
    return stamp >= limit if key == 'date_from' else stamp <= limit


class LocalVectorStore(VectorStore):
    """Brute-force cosine similarity over embeddings kept in memory."""

    def __init__(self, path: Optional[str], embedder):
        """
        Initialize the store, loading any previously saved vectors.

        Args:
            path: JSON file to persist to; None keeps the store in memory only
            embedder: Object with embed_document(text) and embed_query(text)
        """
        self.path = path
        self.embedder = embedder
        self._lock = threading.RLock()
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._vectors: Dict[str, np.ndarray] = {}
        self._load()

        logger.info(f'Initialized LocalVectorStore with {len(self._documents)} vectors (path={path})')

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f'Failed to load vector store from {self.path}, starting empty: {e}')
            return

        # Older files hold a bare list of documents
        documents = data if isinstance(data, list) else data.get('embeddings', [])
        for document in documents:
            if document.get('id') and document.get('embedding'):
                self._documents[document['id']] = document
                self._vectors[document['id']] = np.asarray(document['embedding'], dtype=float)

    def save(self) -> None:
        """Write all vectors to disk through a temporary file and an atomic rename."""
        if not self.path:
            return
        with self._lock:
            payload = {
                'version': STORE_VERSION,
                'timestamp': to_iso(utc_now()),
                'embeddings': list(self._documents.values()),
            }
            directory = os.path.dirname(self.path)
            temp_path = f'{self.path}.tmp'
            try:
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(temp_path, 'w', encoding='utf-8') as f:
                    json.dump(payload, f)
                os.replace(temp_path, self.path)
            except OSError as e:
                logger.error(f'Failed to save vector store to {self.path}: {e}')
                raise VectorStoreError(f'Failed to save vector store: {e}')

        logger.debug(f'Saved {len(payload["embeddings"])} vectors to {self.path}')

    def upsert(self, record_id: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.upsert_many([(record_id, text, metadata)])

    def upsert_many(self, items: List[Tuple[str, str, Optional[Dict[str, Any]]]]) -> None:
        """Embed and store several records, saving once."""
        if not items:
            return
        embedded = [(record_id, self.embedder.embed_document(text), metadata) for record_id, text, metadata in items]
        with self._lock:
            for record_id, embedding, metadata in embedded:
                self._documents[record_id] = {
                    'id': record_id,
                    'embedding': [float(value) for value in embedding],
                    'metadata': dict(metadata or {}),
                }
                self._vectors[record_id] = np.asarray(embedding, dtype=float)
            self.save()

    def delete(self, record_id: str) -> None:
        self.delete_many([record_id])

    def delete_many(self, record_ids: List[str]) -> None:
        with self._lock:
            removed = 0
            for record_id in record_ids:
                if self._documents.pop(record_id, None) is not None:
                    removed += 1
                self._vectors.pop(record_id, None)
            if removed:
                self.save()

    def similarity_query(self,
                         text: str,
                         k: int,
                         threshold: float,
                         filters: Optional[Dict[str, Any]] = None) -> List[Tuple[str, float]]:
        if k <= 0:
            return []
        query = np.asarray(self.embedder.embed_query(text), dtype=float)

        with self._lock:
            results = []
            for record_id, vector in self._vectors.items():
                if not matches_filters(self._documents[record_id].get('metadata', {}), filters):
                    continue
                similarity = cosine_similarity(query, vector)
                if similarity >= threshold:
                    results.append((record_id, similarity))

        results.sort(key=lambda item: (-item[1], item[0]))
        return results[:k]

    def count(self) -> int:
        return len(self._documents)

    def reset(self) -> None:
        with self._lock:
            self._documents.clear()
            self._vectors.clear()
            self.save()
        logger.info('Reset local vector store')
