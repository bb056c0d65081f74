"""
Write-coalescing wrapper around a vector store.
"""

import threading
from typing import Any, Dict, List, Optional, Tuple

from ..services.backends import VectorStore
from .logging_config import get_logger

logger = get_logger(__name__)


class BatchingVectorStore(VectorStore):
    """Buffers upserts and deletes and applies them in batches.

    A batch is flushed when batch_size writes are pending or batch_interval
    seconds after the first pending write, whichever comes first. Queries flush
    pending writes before running so they always see the caller's own writes.
    """

    def __init__(self, inner: VectorStore, batch_size: int = 50, batch_interval: float = 0.1):
        self.inner = inner
        self.batch_size = max(1, batch_size)
        self.batch_interval = batch_interval
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._pending_upserts: Dict[str, Tuple[str, Optional[Dict[str, Any]]]] = {}
        self._pending_deletes: List[str] = []
        self._timer: Optional[threading.Timer] = None
        self._closed = False

        logger.info(f'Initialized BatchingVectorStore (batch_size={self.batch_size}, interval={batch_interval}s)')

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending_upserts) + len(self._pending_deletes)

    def upsert(self, record_id: str, text: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            if record_id in self._pending_deletes:
                self._pending_deletes.remove(record_id)
            self._pending_upserts[record_id] = (text, metadata)
        self._after_write()

    def delete(self, record_id: str) -> None:
        with self._lock:
            self._pending_upserts.pop(record_id, None)
            if record_id not in self._pending_deletes:
                self._pending_deletes.append(record_id)
        self._after_write()

    def _after_write(self) -> None:
        if self._closed:
            self.flush()
            return
        if self.pending >= self.batch_size:
            self.flush()
            return
        with self._lock:
            if self._timer is None:
                self._timer = threading.Timer(self.batch_interval, self._flush_from_timer)
                self._timer.daemon = True
                self._timer.start()

    def _flush_from_timer(self) -> None:
        try:
            self.flush()
        except Exception as e:
            logger.warning(f'Background vector batch flush failed: {type(e).__name__}: {e}')

    def flush(self) -> None:
        """Apply pending deletes, then pending upserts, to the wrapped store.

        Flushes are serialized so batches reach the wrapped store in write order.
        If the wrapped store raises, the unapplied part of the batch is queued again
        (unless a newer write for the same id is already pending) and the error is re-raised.
        """
        with self._flush_lock:
            with self._lock:
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
                deletes, self._pending_deletes = self._pending_deletes, []
                upserts, self._pending_upserts = self._pending_upserts, {}

            if not deletes and not upserts:
                return

            try:
                self._apply_deletes(deletes)
            except Exception:
                self._requeue(deletes, upserts)
                raise
            try:
                self._apply_upserts(upserts)
            except Exception:
                self._requeue([], upserts)
                raise

            logger.debug(f'Flushed vector batch: {len(deletes)} deletes, {len(upserts)} upserts')

    def _apply_deletes(self, deletes: List[str]) -> None:
        if not deletes:
            return
        if hasattr(self.inner, 'delete_many'):
            self.inner.delete_many(deletes)
        else:
            for record_id in deletes:
                self.inner.delete(record_id)

    def _apply_upserts(self, upserts: Dict[str, Tuple[str, Optional[Dict[str, Any]]]]) -> None:
        if not upserts:
            return
        items = [(record_id, text, metadata) for record_id, (text, metadata) in upserts.items()]
        if hasattr(self.inner, 'upsert_many'):
            self.inner.upsert_many(items)
        else:
            for record_id, text, metadata in items:
                self.inner.upsert(record_id, text, metadata)

    def _requeue(self, deletes: List[str], upserts: Dict[str, Tuple[str, Optional[Dict[str, Any]]]]) -> None:
        with self._lock:
            for record_id in deletes:
                if record_id not in self._pending_upserts and record_id not in self._pending_deletes:
                    self._pending_deletes.append(record_id)
            for record_id, entry in upserts.items():
                if record_id not in self._pending_upserts and record_id not in self._pending_deletes:
                    self._pending_upserts[record_id] = entry
        logger.warning(f'Vector batch flush failed, re-queued deletes={deletes} upserts={sorted(upserts)}')

    def similarity_query(self,
                         text: str,
                         k: int,
                         threshold: float,
                         filters: Optional[Dict[str, Any]] = None) -> List[Tuple[str, float]]:
        self.flush()
        return self.inner.similarity_query(text, k, threshold, filters)

    def count(self) -> int:
        self.flush()
        return self.inner.count()

    def close(self) -> None:
        self._closed = True
        self.flush()
        self.inner.close()

    def health_check(self) -> bool:
        return self.inner.health_check()
