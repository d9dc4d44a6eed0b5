"""Offline embedding provider based on feature hashing.

Each text is split into identifier tokens (with camelCase and snake_case
parts) and character trigrams; every feature is hashed into a signed
bucket of a fixed-size vector which is then L2-normalized. The output is
fully deterministic, needs no model download, and places texts that
share identifiers close together, which is enough for local use and for
tests. Heavier providers plug in through the same EmbeddingProvider seam.
"""

import hashlib
import logging
import re
from typing import Iterator, List, Sequence

import numpy as np

from ..config import EmbeddingConfig
from .embedding_provider import EmbeddingProvider

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

TRIGRAM_WEIGHT = 0.5


def _features(text: str) -> Iterator[tuple]:
    for token in _TOKEN_RE.findall(text):
        lowered = token.lower()
        yield lowered, 1.0
        parts = [p.lower() for piece in token.split("_") for p in _CAMEL_RE.findall(piece)]
        if len(parts) > 1:
            for part in parts:
                yield part, 1.0
        padded = f"#{lowered}#"
        for i in range(len(padded) - 2):
            yield "3:" + padded[i : i + 3], TRIGRAM_WEIGHT


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-features embeddings computed with numpy."""

    def __init__(self, config: EmbeddingConfig):
        self.config = config
        self.dimensions = config.dimensions

    def _bucket(self, feature: str) -> tuple:
        digest = hashlib.blake2b(feature.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "little")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self.dimensions, sign

    def _embed_one(self, text: str) -> np.ndarray:
        vector = np.zeros(self.dimensions, dtype=np.float32)
        for feature, weight in _features(text):
            index, sign = self._bucket(feature)
            vector[index] += sign * weight
        norm = float(np.linalg.norm(vector))
        if norm > 0.0:
            vector /= norm
        return vector

    def get_embeddings_batch(self, texts: Sequence[str]) -> List[List[float]]:
        return [self._embed_one(text).tolist() for text in texts]

    def get_provider_name(self) -> str:
        return "hashing"

    def get_current_model(self) -> str:
        return self.config.model

    def get_dimensions(self) -> int:
        return self.dimensions
