"""Long-term vector memory, namespaced per user"""
from __future__ import annotations
import time
import uuid
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Sequence
import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class MemoryRecord:
    id: str
    text: str
    vector: np.ndarray
    created_at: float = field(default_factory=time.time)


class VectorMemory:
    """In-process similarity store; each user id is its own namespace.

    Recall with an empty query returns the most recent snippets, since the
    query signal handed in by a turn may be stale or missing.
    """

    def __init__(self, top_k: int = 5, max_records_per_user: int = 1000):
        self.top_k = top_k
        self.max_records_per_user = max_records_per_user
        self._namespaces: Dict[str, Deque[MemoryRecord]] = {}

    def namespace_size(self, user_id: str) -> int:
        return len(self._namespaces.get(user_id, ()))

    async def store(self, user_id: str, text: str, vector: Sequence[float]) -> str:
        if not text:
            raise ValueError("memory text must be non-empty")
        vec = np.asarray(vector, dtype=np.float32)
        if vec.ndim != 1 or vec.size == 0:
            raise ValueError("memory vector must be a non-empty 1-d sequence")
        ns = self._namespaces.setdefault(user_id, deque(maxlen=self.max_records_per_user))
        rec = MemoryRecord(id=f"mem-{uuid.uuid4().hex}", text=text, vector=vec)
        ns.append(rec)
        logger.debug(f"Stored memory {rec.id} for user {user_id} ({len(ns)} records)")
        return rec.id

    async def recall(self, user_id: str, query: Sequence[float]) -> List[str]:
        records = list(self._namespaces.get(user_id, ()))
        if not records:
            return []
        q = np.asarray(query, dtype=np.float32)
        if q.size == 0:
            return [r.text for r in records[-self.top_k:]]
        candidates = [r for r in records if r.vector.shape == q.shape]
        if not candidates:
            return []
        matrix = np.stack([r.vector for r in candidates])
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(q) or 1.0)
        scores = matrix @ q / np.where(norms == 0, 1.0, norms)
        order = np.argsort(-scores)[: self.top_k]
        return [candidates[i].text for i in order]
