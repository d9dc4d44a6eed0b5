"""Exact nearest-neighbor index over normalized vectors.

Similarity is cosine similarity computed as a dot product over
pre-normalized float32 rows. Rows are kept sorted by chunk identity and
ranking uses a stable sort on descending similarity, so equal scores
always come back in identity order.
"""

import threading
from typing import Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from ..errors import DimensionMismatch


def normalize(vector: Iterable[float], dimensions: int) -> np.ndarray:
    array = np.asarray(vector, dtype=np.float32)
    if array.ndim != 1 or array.shape[0] != dimensions:
        raise DimensionMismatch(dimensions, int(array.size))
    norm = float(np.linalg.norm(array))
    if norm == 0.0 or not np.isfinite(norm):
        return np.zeros(dimensions, dtype=np.float32)
    return array / norm


class VectorIndex:
    """Brute-force cosine index with deterministic tie-breaking."""

    def __init__(self, dimensions: int):
        self.dimensions = dimensions
        self._vectors: Dict[str, np.ndarray] = {}
        self._ids: List[str] = []
        self._matrix: Optional[np.ndarray] = None
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._vectors

    def ids(self) -> Set[str]:
        return set(self._vectors)

    def upsert(self, chunk_id: str, vector: Iterable[float]) -> None:
        """Insert or replace a vector.

        Raises:
            DimensionMismatch: If the vector does not match the index dimension
        """
        normalized = normalize(vector, self.dimensions)
        with self._lock:
            self._vectors[chunk_id] = normalized
            self._matrix = None

    def remove(self, chunk_id: str) -> bool:
        """Drop a vector; returns False if the id was not indexed."""
        with self._lock:
            if self._vectors.pop(chunk_id, None) is None:
                return False
            self._matrix = None
            return True

    def _build(self) -> Tuple[List[str], np.ndarray]:
        with self._lock:
            if self._matrix is None:
                self._ids = sorted(self._vectors)
                if self._ids:
                    self._matrix = np.stack([self._vectors[cid] for cid in self._ids])
                else:
                    self._matrix = np.zeros((0, self.dimensions), dtype=np.float32)
            return self._ids, self._matrix

    def query(
        self,
        vector: Iterable[float],
        k: int,
        allowed: Optional[Set[str]] = None,
        threshold: Optional[float] = None,
    ) -> List[Tuple[str, float]]:
        """Top-k chunk ids by cosine similarity, best first.

        Args:
            vector: Query vector, normalized here
            k: Maximum number of results
            allowed: Restrict results to these chunk ids
            threshold: Drop results below this similarity
        """
        if k <= 0:
            return []
        query_vec = normalize(vector, self.dimensions)
        ids, matrix = self._build()
        if not ids:
            return []

        scores = matrix @ query_vec
        # Round away float32 noise so mathematically equal scores tie.
        scores = np.round(scores.astype(np.float64), 6)
        order = np.argsort(-scores, kind="stable")

        results: List[Tuple[str, float]] = []
        for idx in order:
            score = float(scores[idx])
            if threshold is not None and score < threshold:
                break
            chunk_id = ids[idx]
            if allowed is not None and chunk_id not in allowed:
                continue
            results.append((chunk_id, score))
            if len(results) >= k:
                break
        return results

