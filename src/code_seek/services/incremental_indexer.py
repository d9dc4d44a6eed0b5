"""
Incremental indexer: the single writer of the index.

A pass moves through SCANNING -> DIFFING -> EMBEDDING -> COMMITTING and
back to IDLE; any unexpected error leaves it in FAILED. Work done before
COMMITTING lives only in memory, so a cancelled or failed pass leaves the
last committed snapshot untouched.

Reuse happens at two levels: files whose content hash is unchanged keep
their manifest entry and chunk records as-is, and chunks of changed files
whose identity already has a cached vector for the active model are not
sent to the provider again.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..config import Config
from ..errors import (
    DimensionMismatch,
    IndexingCancelled,
    ProviderError,
    StoreCorruption,
)
from ..indexing.boundary_detector import BoundaryDetector
from ..indexing.file_finder import FileFinder
from ..indexing.fingerprint import ChunkIdentifier, hash_bytes
from ..storage.embedding_cache import EmbeddingCache, model_slug
from ..storage.manifest import ChunkRecord, FileEntry, Manifest
from ..storage.snapshot import IndexSnapshot, SnapshotHolder, load_published_snapshot
from ..storage.snapshot_store import SnapshotStore
from ..storage.vector_index import VectorIndex
from .embedding_provider import EmbeddingProvider
from .indexing_lock import IndexingLock

logger = logging.getLogger(__name__)

ProgressCallback = Callable[..., None]


class IndexerState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DIFFING = "diffing"
    EMBEDDING = "embedding"
    COMMITTING = "committing"
    FAILED = "failed"


class IndexMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass
class PartialFailure:
    """A file- or batch-scoped problem absorbed by the pass."""

    kind: str  # "provider", "parse" or "read"
    message: str
    paths: Tuple[str, ...] = ()
    chunk_ids: Tuple[str, ...] = ()


@dataclass
class IndexOutcome:
    """What one committed indexing pass did."""

    version: int
    mode: str
    model_fingerprint: str
    files_added: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    files_unchanged: int = 0
    best_effort_files: int = 0
    chunks_total: int = 0
    chunks_added: int = 0
    chunks_removed: int = 0
    embeddings_computed: int = 0
    embeddings_reused: int = 0
    embeddings_missing: int = 0
    partial_failures: List[PartialFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    recovered_from_corruption: bool = False
    duration_seconds: float = 0.0

    @property
    def files_touched(self) -> int:
        return self.files_added + self.files_modified + self.files_deleted

    @property
    def partial(self) -> bool:
        return bool(self.partial_failures)


@dataclass
class _ScannedFile:
    path: str
    mtime: float
    size: int
    content_hash: str
    text: Optional[str] = None


@dataclass
class _EmbedJob:
    chunk_ids: List[str]
    texts: List[str]
    paths: Tuple[str, ...]


class IncrementalIndexer:
    """Builds and commits new index versions."""

    def __init__(
        self,
        config: Config,
        embedding_provider: EmbeddingProvider,
        store: SnapshotStore,
        holder: SnapshotHolder,
        lock: IndexingLock,
        file_finder: Optional[FileFinder] = None,
        boundary_detector: Optional[BoundaryDetector] = None,
    ):
        self.config = config
        self.embedding_provider = embedding_provider
        self.store = store
        self.holder = holder
        self.lock = lock
        self.file_finder = file_finder or FileFinder(config)
        self.boundary_detector = boundary_detector or BoundaryDetector(config.indexing)
        self.codebase_dir = Path(config.codebase_dir).resolve()
        self._state = IndexerState.IDLE
        self._state_lock = threading.Lock()
        self.last_error: Optional[BaseException] = None

    @property
    def state(self) -> IndexerState:
        return self._state

    def _transition(self, state: IndexerState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        logger.info(f"Indexer state {previous.value} -> {state.value}")

    def run(
        self,
        mode: IndexMode = IndexMode.INCREMENTAL,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IndexOutcome:
        """Run one indexing pass and commit its result.

        Raises:
            ConcurrencyConflict: If another pass is active; nothing is queued
            IndexingCancelled: If cancel_event was set before the commit
            StoreCorruption: If even a full re-index can not read its inputs
        """
        mode = IndexMode(mode)
        self.lock.acquire(str(self.codebase_dir))
        try:
            try:
                outcome = self._run_pass(mode, cancel_event, progress_callback)
            except StoreCorruption as e:
                if mode == IndexMode.FULL:
                    raise
                logger.warning(f"{e}; discarding incremental state and re-indexing from scratch")
                self._transition(IndexerState.FAILED)
                outcome = self._run_pass(IndexMode.FULL, cancel_event, progress_callback)
                outcome.recovered_from_corruption = True
                outcome.warnings.insert(0, f"Recovered from corrupt index: {e}")
        except IndexingCancelled as e:
            self.last_error = e
            logger.info("Indexing pass cancelled; last committed version kept")
            self._transition(IndexerState.IDLE)
            raise
        except BaseException as e:
            self.last_error = e
            self._transition(IndexerState.FAILED)
            raise
        finally:
            self.lock.release()

        self.last_error = None
        self._transition(IndexerState.IDLE)
        return outcome

    # -- pass ------------------------------------------------------------

    def _run_pass(
        self,
        mode: IndexMode,
        cancel_event: Optional[threading.Event],
        progress_callback: Optional[ProgressCallback],
    ) -> IndexOutcome:
        started = time.time()
        provider = self.embedding_provider
        fingerprint = provider.get_model_fingerprint()
        dimensions = provider.get_dimensions()

        self._transition(IndexerState.SCANNING)
        previous: Optional[IndexSnapshot] = None
        cache = EmbeddingCache(self.store.index_dir, fingerprint, dimensions)
        if mode == IndexMode.INCREMENTAL:
            previous = self._load_previous(fingerprint, dimensions)
            cache.load()
            if previous is not None and previous.manifest.model_fingerprint != fingerprint:
                logger.info(
                    f"Model changed from {previous.manifest.model_fingerprint} to "
                    f"{fingerprint}; embeddings will be recomputed"
                )

        outcome = IndexOutcome(
            version=self._next_version(previous), mode=mode.value, model_fingerprint=fingerprint
        )
        previous_files = previous.files if previous is not None else {}
        scanned = self._scan(previous_files, cancel_event, progress_callback, outcome)

        self._transition(IndexerState.DIFFING)
        entries: Dict[str, FileEntry] = {}
        chunks: Dict[str, ChunkRecord] = {}
        pending_texts: Dict[str, str] = {}
        blobs: Dict[str, str] = {}

        for path in sorted(scanned):
            self._check_cancelled(cancel_event)
            item = scanned[path]
            old_entry = previous_files.get(path)
            if old_entry is not None and old_entry.content_hash == item.content_hash:
                entries[path] = old_entry
                for chunk_id in old_entry.chunk_ids:
                    chunks[chunk_id] = previous.chunks[chunk_id]
                outcome.files_unchanged += 1
                continue

            if old_entry is None:
                outcome.files_added += 1
                logger.debug(f"Added: {path}")
            else:
                outcome.files_modified += 1
                logger.debug(f"Modified: {path}")

            text = item.text or ""
            entry, records = self._chunk_file(item, text, pending_texts, outcome)
            entries[path] = entry
            chunks.update(records)
            blobs[item.content_hash] = text

        deleted = sorted(set(previous_files) - set(scanned))
        outcome.files_deleted = len(deleted)
        for path in deleted:
            logger.debug(f"Deleted: {path}")

        live_ids = [cid for path in sorted(entries) for cid in entries[path].chunk_ids]
        live_set = set(live_ids)
        previous_ids = previous.manifest.chunk_id_set() if previous is not None else set()
        outcome.chunks_total = len(live_set)
        outcome.chunks_added = len(live_set - previous_ids)
        outcome.chunks_removed = len(previous_ids - live_set)

        must_embed = [cid for cid in dict.fromkeys(live_ids) if cid not in cache]
        outcome.embeddings_reused = len(live_set) - len(must_embed)
        logger.info(
            f"Diff: {outcome.files_added} added, {outcome.files_modified} modified, "
            f"{outcome.files_deleted} deleted, {outcome.files_unchanged} unchanged; "
            f"{len(must_embed)} chunks to embed, {outcome.embeddings_reused} reused"
        )

        self._check_cancelled(cancel_event)
        self._transition(IndexerState.EMBEDDING)
        jobs = self._build_jobs(must_embed, chunks, pending_texts, previous)
        self._embed(jobs, cache, cancel_event, progress_callback, outcome)
        outcome.embeddings_missing = sum(1 for cid in live_set if cid not in cache)

        self._check_cancelled(cancel_event)
        self._transition(IndexerState.COMMITTING)
        manifest = Manifest(
            version=outcome.version,
            model_fingerprint=fingerprint,
            files=entries,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        snapshot = self._commit(manifest, chunks, blobs, cache, previous, mode, dimensions)

        outcome.duration_seconds = time.time() - started
        logger.info(
            f"Committed version {snapshot.version}: {len(entries)} files, "
            f"{outcome.chunks_total} chunks, {outcome.embeddings_computed} embedded, "
            f"{len(outcome.partial_failures)} partial failures"
        )
        return outcome

    def _load_previous(self, fingerprint: str, dimensions: int) -> Optional[IndexSnapshot]:
        published = self.store.read_current_version()
        if published is None:
            return None
        current = self.holder.current
        if current is not None and current.version == published:
            return current
        return load_published_snapshot(self.store, fingerprint, dimensions)

    def _next_version(self, previous: Optional[IndexSnapshot]) -> int:
        candidates = [0]
        if previous is not None:
            candidates.append(previous.version)
        candidates.extend(self.store.list_versions())
        try:
            published = self.store.read_current_version()
        except StoreCorruption:
            published = None
        if published is not None:
            candidates.append(published)
        return max(candidates) + 1

    @staticmethod
    def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise IndexingCancelled("Indexing pass cancelled")

    # -- scanning --------------------------------------------------------

    def _scan(
        self,
        previous_files: Dict[str, FileEntry],
        cancel_event: Optional[threading.Event],
        progress_callback: Optional[ProgressCallback],
        outcome: IndexOutcome,
    ) -> Dict[str, _ScannedFile]:
        paths = list(self.file_finder.find_files())
        scanned: Dict[str, _ScannedFile] = {}
        trust_mtime = self.config.indexing.trust_mtime

        for i, path in enumerate(paths):
            self._check_cancelled(cancel_event)
            absolute = self.codebase_dir / path
            old = previous_files.get(path)
            try:
                stat = absolute.stat()
                if (
                    trust_mtime
                    and old is not None
                    and old.mtime == stat.st_mtime
                    and old.size == stat.st_size
                ):
                    scanned[path] = _ScannedFile(
                        path, stat.st_mtime, stat.st_size, old.content_hash
                    )
                else:
                    data = absolute.read_bytes()
                    scanned[path] = _ScannedFile(
                        path,
                        stat.st_mtime,
                        len(data),
                        hash_bytes(data),
                        data.decode("utf-8", errors="replace"),
                    )
            except OSError as e:
                message = f"Could not read {path}: {e}"
                logger.warning(message)
                outcome.partial_failures.append(
                    PartialFailure(kind="read", message=message, paths=(path,))
                )
                if old is not None:
                    # Keep the last indexed version rather than treating it as deleted.
                    scanned[path] = _ScannedFile(path, old.mtime, old.size, old.content_hash)
                continue

            if progress_callback:
                progress_callback(i + 1, len(paths), Path(path), info="scanning")
        return scanned

    # -- diffing ---------------------------------------------------------

    def _chunk_file(
        self,
        item: _ScannedFile,
        text: str,
        pending_texts: Dict[str, str],
        outcome: IndexOutcome,
    ) -> Tuple[FileEntry, Dict[str, ChunkRecord]]:
        result = self.boundary_detector.detect(text, item.path)
        if result.best_effort:
            outcome.best_effort_files += 1
            outcome.warnings.append(result.warning or f"{item.path}: best-effort chunking")
            outcome.partial_failures.append(
                PartialFailure(
                    kind="parse",
                    message=result.warning or "structural parse failed",
                    paths=(item.path,),
                )
            )

        identifier = ChunkIdentifier(item.path)
        records: Dict[str, ChunkRecord] = {}
        chunk_ids: List[str] = []
        for chunk in result.chunks:
            chunk_id = identifier.next_identity(chunk.kind, chunk.text)
            chunk_ids.append(chunk_id)
            pending_texts[chunk_id] = chunk.text
            records[chunk_id] = ChunkRecord(
                chunk_id=chunk_id,
                path=item.path,
                kind=chunk.kind,
                start_byte=chunk.start_byte,
                end_byte=chunk.end_byte,
                line_start=chunk.line_start,
                line_end=chunk.line_end,
                name=chunk.name,
                part=chunk.part,
                token_estimate=chunk.token_estimate,
            )

        entry = FileEntry(
            path=item.path,
            content_hash=item.content_hash,
            mtime=item.mtime,
            size=item.size,
            language=result.language,
            chunk_ids=tuple(chunk_ids),
            best_effort=result.best_effort,
        )
        return entry, records

    # -- embedding -------------------------------------------------------

    def _build_jobs(
        self,
        must_embed: Sequence[str],
        chunks: Dict[str, ChunkRecord],
        pending_texts: Dict[str, str],
        previous: Optional[IndexSnapshot],
    ) -> List[_EmbedJob]:
        batch_size = self.config.embedding.batch_size
        jobs: List[_EmbedJob] = []
        for start in range(0, len(must_embed), batch_size):
            batch = list(must_embed[start : start + batch_size])
            texts = []
            for chunk_id in batch:
                text = pending_texts.get(chunk_id)
                if text is None:
                    # Unchanged file whose chunk never got a vector for this model.
                    text = previous.chunk_text(chunks[chunk_id])
                texts.append(text)
            paths = tuple(sorted({chunks[cid].path for cid in batch}))
            jobs.append(_EmbedJob(chunk_ids=batch, texts=texts, paths=paths))
        return jobs

    def _embed_batch(self, job: _EmbedJob) -> List[List[float]]:
        vectors = self.embedding_provider.get_embeddings_batch(job.texts)
        if len(vectors) != len(job.texts):
            raise ProviderError(
                f"Provider returned {len(vectors)} vectors for {len(job.texts)} texts"
            )
        return vectors

    def _embed(
        self,
        jobs: List[_EmbedJob],
        cache: EmbeddingCache,
        cancel_event: Optional[threading.Event],
        progress_callback: Optional[ProgressCallback],
        outcome: IndexOutcome,
    ) -> None:
        if not jobs:
            return

        workers = min(self.config.embedding.parallel_requests, len(jobs))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed")
        try:
            pending: Dict[Future, _EmbedJob] = {
                executor.submit(self._embed_batch, job): job for job in jobs
            }
            completed = 0
            while pending:
                done, _ = wait(list(pending), timeout=0.5, return_when=FIRST_COMPLETED)
                self._check_cancelled(cancel_event)
                for future in done:
                    job = pending.pop(future)
                    completed += 1
                    self._store_batch(future, job, cache, outcome)
                    if progress_callback:
                        progress_callback(
                            completed,
                            len(jobs),
                            Path(job.paths[0]) if job.paths else Path(""),
                            info=f"embedded batch {completed}/{len(jobs)}",
                        )
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _store_batch(
        self, future: Future, job: _EmbedJob, cache: EmbeddingCache, outcome: IndexOutcome
    ) -> None:
        try:
            vectors = future.result()
            stored = [cache.put(cid, vec) for cid, vec in zip(job.chunk_ids, vectors)]
        except (ProviderError, DimensionMismatch) as e:
            cache.discard(job.chunk_ids)
            message = f"Embedding failed for {len(job.chunk_ids)} chunks: {e}"
            logger.warning(message)
            outcome.partial_failures.append(
                PartialFailure(
                    kind="provider",
                    message=message,
                    paths=job.paths,
                    chunk_ids=tuple(job.chunk_ids),
                )
            )
            return
        outcome.embeddings_computed += len(stored)

    # -- committing ------------------------------------------------------

    def _commit(
        self,
        manifest: Manifest,
        chunks: Dict[str, ChunkRecord],
        blobs: Dict[str, str],
        cache: EmbeddingCache,
        previous: Optional[IndexSnapshot],
        mode: IndexMode,
        dimensions: int,
    ) -> IndexSnapshot:
        live_ids = manifest.chunk_id_set()
        chunks = {cid: chunks[cid] for cid in live_ids}

        for content_hash, text in blobs.items():
            self.store.write_blob(content_hash, text, overwrite=mode == IndexMode.FULL)

        leased = self.holder.leased_snapshots()
        retained_ids = set(live_ids)
        for snapshot in leased + ([previous] if previous is not None else []):
            if snapshot.manifest.model_fingerprint == manifest.model_fingerprint:
                retained_ids |= snapshot.manifest.chunk_id_set()
        # Vectors of the new version are durable before it is published.
        cache.save(keep=retained_ids)

        self.store.write_snapshot(manifest, chunks)
        self.store.publish(manifest.version)

        vectors = VectorIndex(dimensions)
        for chunk_id in sorted(live_ids):
            vector = cache.get(chunk_id)
            if vector is not None:
                vectors.upsert(chunk_id, vector)
        snapshot = IndexSnapshot(manifest, chunks, vectors, self.store)
        self.holder.publish(snapshot)

        # Leases taken before the swap are visible now; later ones get the new snapshot.
        self._collect_garbage(manifest, cache, self.holder.leased_snapshots())
        return snapshot

    def _collect_garbage(
        self, manifest: Manifest, cache: EmbeddingCache, leased: List[IndexSnapshot]
    ) -> None:
        live_versions: Set[int] = {manifest.version}
        live_hashes = manifest.content_hashes()
        keep_ids = manifest.chunk_id_set()
        live_fingerprints = {manifest.model_fingerprint}
        for snapshot in leased:
            live_versions.add(snapshot.version)
            live_hashes |= snapshot.manifest.content_hashes()
            live_fingerprints.add(snapshot.manifest.model_fingerprint)
            if snapshot.manifest.model_fingerprint == manifest.model_fingerprint:
                keep_ids |= snapshot.manifest.chunk_id_set()

        if len(cache) > len(keep_ids & cache.ids()):
            cache.save(keep=keep_ids)

        removed = self.store.collect(live_versions, live_hashes)
        for path in cache.other_model_files():
            if path.stem in {model_slug(fp) for fp in live_fingerprints}:
                continue
            path.unlink(missing_ok=True)
            removed += 1
        if removed:
            logger.info(f"Garbage-collected {removed} unreferenced index artifacts")
