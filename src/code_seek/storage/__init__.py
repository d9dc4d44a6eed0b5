"""Persisted index storage: manifests, snapshots, embeddings and vectors."""

from .embedding_cache import EmbeddingCache
from .manifest import ChunkRecord, FileEntry, Manifest
from .snapshot import IndexSnapshot, SnapshotHolder, load_published_snapshot
from .snapshot_store import SnapshotStore
from .vector_index import VectorIndex

__all__ = [
    "ChunkRecord",
    "EmbeddingCache",
    "FileEntry",
    "IndexSnapshot",
    "Manifest",
    "SnapshotHolder",
    "SnapshotStore",
    "VectorIndex",
    "load_published_snapshot",
]
