"""Indexing services and the public CodeSeekService facade."""

from .code_seek_service import ChunkPreview, CodeSeekService, FileInspection, IndexStats
from .embedding_provider import EmbeddingProvider
from .hashing_provider import HashingEmbeddingProvider
from .incremental_indexer import (
    IncrementalIndexer,
    IndexerState,
    IndexMode,
    IndexOutcome,
    PartialFailure,
)
from .indexing_lock import IndexingLock

__all__ = [
    "ChunkPreview",
    "CodeSeekService",
    "EmbeddingProvider",
    "FileInspection",
    "HashingEmbeddingProvider",
    "IncrementalIndexer",
    "IndexMode",
    "IndexOutcome",
    "IndexStats",
    "IndexerState",
    "IndexingLock",
    "PartialFailure",
]
