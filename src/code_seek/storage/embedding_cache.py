"""Embedding cache keyed by chunk identity and model fingerprint.

Vectors for one model fingerprint live in one msgpack file under
``embeddings/``. A cache never serves vectors recorded under a different
fingerprint, so switching models can not mix incompatible vectors.
"""

import hashlib
import logging
import os
import re
import threading
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

import msgpack
import numpy as np

from ..errors import DimensionMismatch, StoreCorruption

logger = logging.getLogger(__name__)

EMBEDDINGS_DIR = "embeddings"


def model_slug(model_fingerprint: str) -> str:
    """Filesystem-safe, collision-resistant name for a model fingerprint."""
    readable = re.sub(r"[^A-Za-z0-9._-]+", "-", model_fingerprint).strip("-")[:48]
    digest = hashlib.sha256(model_fingerprint.encode("utf-8")).hexdigest()[:12]
    return f"{readable}-{digest}"


class EmbeddingCache:
    """Maps chunk identity to a float32 vector for one model."""

    def __init__(self, index_dir: Path, model_fingerprint: str, dimensions: int):
        self.index_dir = Path(index_dir)
        self.model_fingerprint = model_fingerprint
        self.dimensions = dimensions
        self.path = self.index_dir / EMBEDDINGS_DIR / f"{model_slug(model_fingerprint)}.msgpack"
        self._vectors: Dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._vectors

    def ids(self) -> Set[str]:
        with self._lock:
            return set(self._vectors)

    def get(self, chunk_id: str) -> Optional[np.ndarray]:
        return self._vectors.get(chunk_id)

    def put(self, chunk_id: str, vector: Iterable[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1 or array.shape[0] != self.dimensions:
            raise DimensionMismatch(self.dimensions, int(array.size))
        with self._lock:
            self._vectors[chunk_id] = array
        return array

    def discard(self, chunk_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for chunk_id in chunk_ids:
                if self._vectors.pop(chunk_id, None) is not None:
                    removed += 1
        return removed

    def load(self) -> "EmbeddingCache":
        """Load persisted vectors for this fingerprint.

        Raises:
            StoreCorruption: If the file does not match its header
        """
        if not self.path.exists():
            return self

        try:
            with open(self.path, "rb") as f:
                payload = msgpack.unpack(f, raw=False)
            ids: List[str] = payload["ids"]
            dimensions = int(payload["dimensions"])
            fingerprint = payload["model_fingerprint"]
            matrix = np.frombuffer(payload["vectors"], dtype=np.float32)
        except (OSError, ValueError, KeyError, TypeError, msgpack.UnpackException) as e:
            raise StoreCorruption(self.path, f"unreadable embeddings: {e}")

        if fingerprint != self.model_fingerprint:
            raise StoreCorruption(self.path, "model fingerprint mismatch")
        if dimensions != self.dimensions:
            raise StoreCorruption(
                self.path, f"dimension {dimensions} != active model {self.dimensions}"
            )
        if matrix.size != len(ids) * dimensions:
            raise StoreCorruption(self.path, "vector data does not match id count")

        matrix = matrix.reshape(len(ids), dimensions)
        with self._lock:
            self._vectors = {cid: matrix[i].copy() for i, cid in enumerate(ids)}
        logger.debug(f"Loaded {len(ids)} cached embeddings from {self.path}")
        return self

    def save(self, keep: Optional[Set[str]] = None) -> int:
        """Persist vectors, dropping every id not in ``keep``.

        Returns:
            Number of vectors written
        """
        with self._lock:
            if keep is not None:
                self._vectors = {
                    cid: vec for cid, vec in self._vectors.items() if cid in keep
                }
            ids = sorted(self._vectors)
            if ids:
                matrix = np.stack([self._vectors[cid] for cid in ids]).astype(np.float32)
            else:
                matrix = np.zeros((0, self.dimensions), dtype=np.float32)

        payload = {
            "model_fingerprint": self.model_fingerprint,
            "dimensions": self.dimensions,
            "ids": ids,
            "vectors": matrix.tobytes(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex}.tmp")
        with open(tmp_path, "wb") as f:
            msgpack.pack(payload, f, use_bin_type=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)
        return len(ids)

    def other_model_files(self) -> List[Path]:
        """Cache files written for fingerprints other than the active one."""
        directory = self.path.parent
        if not directory.exists():
            return []
        return sorted(p for p in directory.glob("*.msgpack") if p != self.path)
