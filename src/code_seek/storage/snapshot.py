"""In-memory index snapshots and the process-wide current-snapshot pointer.

An IndexSnapshot bundles one manifest version with its chunk metadata and
vector index. Snapshots are never mutated after publication; a commit
builds a new one and swaps the pointer. Readers lease the current
snapshot for the duration of a query, and the holder keeps a reference
count per version so on-disk artifacts of a leased version are not
collected underneath them.
"""

import logging
import threading
from bisect import bisect_right
from collections import OrderedDict
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Set

from ..errors import StaleSnapshot, StoreCorruption
from .embedding_cache import EmbeddingCache
from .manifest import ChunkRecord, FileEntry, Manifest
from .snapshot_store import SnapshotStore
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

TEXT_CACHE_SIZE = 256


class IndexSnapshot:
    """One consistent, read-only view of the index."""

    def __init__(
        self,
        manifest: Manifest,
        chunks: Dict[str, ChunkRecord],
        vectors: VectorIndex,
        store: Optional[SnapshotStore] = None,
    ):
        self.manifest = manifest
        self.chunks = chunks
        self.vectors = vectors
        self.store = store
        self._starts: Dict[str, List[int]] = {}
        self._texts: "OrderedDict[str, str]" = OrderedDict()
        self._text_lock = threading.Lock()

    @property
    def version(self) -> int:
        return self.manifest.version

    @property
    def files(self) -> Dict[str, FileEntry]:
        return self.manifest.files

    def embedded_chunk_ids(self) -> Set[str]:
        return self.vectors.ids()

    def chunks_for_file(self, path: str) -> List[ChunkRecord]:
        entry = self.manifest.files.get(path)
        if entry is None:
            return []
        return [self.chunks[cid] for cid in entry.chunk_ids]

    def chunk_at(self, path: str, byte_offset: int) -> Optional[ChunkRecord]:
        """The chunk whose byte range contains an offset in a file."""
        records = self.chunks_for_file(path)
        if not records:
            return None
        starts = self._starts.get(path)
        if starts is None:
            starts = [record.start_byte for record in records]
            self._starts[path] = starts
        idx = bisect_right(starts, byte_offset) - 1
        if idx < 0:
            return None
        record = records[idx]
        if record.start_byte <= byte_offset < max(record.end_byte, record.start_byte + 1):
            return record
        return None

    def chunk_near(self, path: str, byte_offset: int) -> Optional[ChunkRecord]:
        """The chunk containing an offset, else the next chunk, else the previous one.

        Whitespace between chunks is not chunked, so a selected line that
        starts in indentation or is blank still belongs to a neighbour.
        """
        record = self.chunk_at(path, byte_offset)
        if record is not None:
            return record
        records = self.chunks_for_file(path)
        if not records:
            return None
        idx = bisect_right(self._starts[path], byte_offset)
        return records[idx] if idx < len(records) else records[-1]

    def file_text(self, path: str) -> str:
        """Text of an indexed file exactly as it was indexed.

        Raises:
            StaleSnapshot: If the text was collected because a newer version
                was published by another process
            StoreCorruption: If the text is missing from the published version
        """
        entry = self.manifest.files[path]
        with self._text_lock:
            cached = self._texts.get(entry.content_hash)
            if cached is not None:
                self._texts.move_to_end(entry.content_hash)
                return cached
        if self.store is None:
            raise KeyError(f"No text store attached for {path}")
        try:
            text = self.store.read_blob(entry.content_hash)
        except StoreCorruption:
            # Writers in other processes only keep blobs of their own leases.
            published = self.store.read_current_version()
            if published is not None and published != self.version:
                raise StaleSnapshot(self.version, published)
            raise
        with self._text_lock:
            self._texts[entry.content_hash] = text
            while len(self._texts) > TEXT_CACHE_SIZE:
                self._texts.popitem(last=False)
        return text

    def chunk_text(self, record: ChunkRecord) -> str:
        source = self.file_text(record.path).encode("utf-8")
        return source[record.start_byte : record.end_byte].decode("utf-8", errors="replace")


class SnapshotHolder:
    """Process-wide pointer to the current snapshot, with leases."""

    def __init__(self, snapshot: Optional[IndexSnapshot] = None):
        self._current = snapshot
        self._leases: Dict[int, int] = {}
        self._leased: Dict[int, IndexSnapshot] = {}
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[IndexSnapshot]:
        return self._current

    def publish(self, snapshot: IndexSnapshot) -> Optional[IndexSnapshot]:
        """Swap in a new snapshot; returns the one it replaced."""
        with self._lock:
            previous = self._current
            self._current = snapshot
        logger.debug(
            f"Snapshot pointer moved to version {snapshot.version}"
            + (f" from {previous.version}" if previous else "")
        )
        return previous

    def clear(self) -> None:
        with self._lock:
            self._current = None

    @contextmanager
    def lease(self) -> Iterator[Optional[IndexSnapshot]]:
        """Hold the current snapshot for the duration of a read."""
        with self._lock:
            snapshot = self._current
            if snapshot is not None:
                self._leases[snapshot.version] = self._leases.get(snapshot.version, 0) + 1
                self._leased[snapshot.version] = snapshot
        try:
            yield snapshot
        finally:
            if snapshot is not None:
                with self._lock:
                    remaining = self._leases[snapshot.version] - 1
                    if remaining:
                        self._leases[snapshot.version] = remaining
                    else:
                        del self._leases[snapshot.version]
                        del self._leased[snapshot.version]

    def leased_versions(self) -> Set[int]:
        with self._lock:
            return set(self._leases)

    def leased_snapshots(self) -> List[IndexSnapshot]:
        with self._lock:
            return list(self._leased.values())


def load_published_snapshot(
    store: SnapshotStore, model_fingerprint: str, dimensions: int
) -> Optional[IndexSnapshot]:
    """Build a snapshot from the version CURRENT points at.

    Vectors are only attached when the snapshot was built with the given
    model fingerprint; otherwise the snapshot is lexical-only until it is
    re-indexed.

    Raises:
        StoreCorruption: If the published snapshot or its embeddings are damaged
    """
    loaded = store.load_current()
    if loaded is None:
        return None
    manifest, chunks = loaded

    vectors = VectorIndex(dimensions)
    if manifest.model_fingerprint == model_fingerprint:
        cache = EmbeddingCache(store.index_dir, model_fingerprint, dimensions).load()
        for chunk_id in manifest.iter_chunk_ids():
            vector = cache.get(chunk_id)
            if vector is not None:
                vectors.upsert(chunk_id, vector)
    else:
        logger.warning(
            f"Index version {manifest.version} was built with {manifest.model_fingerprint}, "
            f"not {model_fingerprint}; semantic search is unavailable until it is re-indexed"
        )
    return IndexSnapshot(manifest, chunks, vectors, store)
