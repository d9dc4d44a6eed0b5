"""
Content fingerprints for files and chunks.

File hashes let the indexer skip untouched files outright. Chunk
identities let embeddings be reused across runs: two chunks share an
identity exactly when their path, structural kind, text and occurrence
index among identical siblings are equal.
"""

import hashlib
from typing import Dict, Tuple

HASH_PREFIX = "sha256:"


def hash_bytes(data: bytes) -> str:
    """SHA256 of raw bytes with the 'sha256:' prefix."""
    return f"{HASH_PREFIX}{hashlib.sha256(data).hexdigest()}"


def chunk_identity(path: str, kind: str, text: str, occurrence: int = 0) -> str:
    """Stable identity for one chunk.

    Byte offsets are not hashed, so a chunk that only moved because an
    earlier function grew keeps its identity and its embedding.
    """
    hasher = hashlib.sha256()
    for part in (path, kind, str(occurrence)):
        hasher.update(part.encode("utf-8"))
        hasher.update(b"\x00")
    hasher.update(text.encode("utf-8"))
    return hasher.hexdigest()


class ChunkIdentifier:
    """Assigns identities to the chunks of one file in order.

    Identical (kind, text) pairs inside a file get increasing occurrence
    indexes so they never collapse into one identity.
    """

    def __init__(self, path: str):
        self.path = path
        self._seen: Dict[Tuple[str, str], int] = {}

    def next_identity(self, kind: str, text: str) -> str:
        key = (kind, text)
        occurrence = self._seen.get(key, 0)
        self._seen[key] = occurrence + 1
        return chunk_identity(self.path, kind, text, occurrence)
