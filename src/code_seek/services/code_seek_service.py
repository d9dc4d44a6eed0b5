"""
Public entry point for indexing and searching one codebase.

CodeSeekService wires the single-writer indexer and the read-only query
engine around one shared snapshot holder. Callers such as a CLI, an
editor integration or an agent tool talk only to this class.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple, Union

from ..config import Config, ConfigManager
from ..errors import ConcurrencyConflict, StoreCorruption
from ..indexing.boundary_detector import BoundaryDetector
from ..indexing.file_finder import FileFinder, IgnorePredicate
from ..search.engine import QueryEngine
from ..search.query import LexicalOptions, SearchFilters, SearchResult
from ..storage.embedding_cache import EmbeddingCache, model_slug
from ..storage.snapshot import IndexSnapshot, SnapshotHolder, load_published_snapshot
from ..storage.snapshot_store import SnapshotStore
from .embedding_provider import EmbeddingProvider
from .hashing_provider import HashingEmbeddingProvider
from .incremental_indexer import (
    IncrementalIndexer,
    IndexerState,
    IndexMode,
    IndexOutcome,
    ProgressCallback,
)
from .indexing_lock import IndexingLock

logger = logging.getLogger(__name__)


@dataclass
class IndexStats:
    """Summary of the published index."""

    exists: bool
    version: Optional[int] = None
    model_fingerprint: Optional[str] = None
    active_model_fingerprint: str = ""
    total_files: int = 0
    total_chunks: int = 0
    embedded_chunks: int = 0
    missing_embeddings: int = 0
    best_effort_files: int = 0
    languages: Dict[str, int] = field(default_factory=dict)
    index_size_bytes: int = 0
    last_updated: Optional[str] = None
    orphaned_artifacts: List[Path] = field(default_factory=list)
    indexer_state: str = IndexerState.IDLE.value


@dataclass
class ChunkPreview:
    kind: str
    line_start: int
    line_end: int
    start_byte: int
    end_byte: int
    token_estimate: int
    name: Optional[str] = None
    part: Optional[int] = None
    preview: str = ""


@dataclass
class FileInspection:
    """How a file would be chunked, without indexing it."""

    path: str
    language: str
    size_bytes: int
    line_count: int
    token_estimate: int
    best_effort: bool
    warning: Optional[str]
    chunks: List[ChunkPreview] = field(default_factory=list)


class CodeSeekService:
    """Index and search one codebase."""

    def __init__(
        self,
        config: Config,
        embedding_provider: Optional[EmbeddingProvider] = None,
        ignore: Optional[IgnorePredicate] = None,
    ):
        self.ignore = ignore
        self.embedding_provider = embedding_provider or HashingEmbeddingProvider(
            config.embedding
        )
        self._configure(config)

    @classmethod
    def for_codebase(
        cls,
        codebase_dir: Union[str, Path],
        embedding_provider: Optional[EmbeddingProvider] = None,
    ) -> "CodeSeekService":
        """Create a service from the codebase's saved configuration."""
        config = ConfigManager.for_codebase(Path(codebase_dir)).load()
        return cls(config, embedding_provider)

    def _configure(self, config: Config) -> None:
        self.config = config
        self.codebase_dir = Path(config.codebase_dir).resolve()
        self.index_dir = config.resolved_index_dir()
        self.store = SnapshotStore(self.index_dir)
        self.holder = SnapshotHolder()
        self.lock = IndexingLock(self.index_dir)
        self._refresh_lock = threading.Lock()
        self.indexer = IncrementalIndexer(
            config,
            self.embedding_provider,
            self.store,
            self.holder,
            self.lock,
            file_finder=FileFinder(config, ignore=self.ignore),
            boundary_detector=BoundaryDetector(config.indexing),
        )
        self.query_engine = QueryEngine(
            config.search, self.embedding_provider, self.holder, refresh=self.refresh
        )

    # -- indexing --------------------------------------------------------

    def index(
        self,
        root: Optional[Union[str, Path]] = None,
        mode: Union[str, IndexMode] = IndexMode.INCREMENTAL,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> IndexOutcome:
        """Bring the index in line with the files on disk.

        Args:
            root: Codebase to index; defaults to the configured one
            mode: "incremental" reuses unchanged work, "full" rebuilds everything
            cancel_event: Set it to abandon the pass before it commits
            progress_callback: Called as (current, total, path, info=...)

        Raises:
            ConcurrencyConflict: If another pass is running
            IndexingCancelled: If cancelled before commit
        """
        if root is not None and Path(root).resolve() != self.codebase_dir:
            if self.lock.held:
                raise ConcurrencyConflict("Cannot switch codebase while indexing")
            logger.info(f"Switching codebase to {root}")
            self._configure(self.config.model_copy(update={"codebase_dir": Path(root)}))
        return self.indexer.run(IndexMode(mode), cancel_event, progress_callback)

    # -- searching -------------------------------------------------------

    def search(
        self,
        mode,
        text: str,
        k: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
        lexical_options: Optional[LexicalOptions] = None,
    ) -> List[SearchResult]:
        """Ranked chunks for a query; see QueryEngine.search."""
        return self.query_engine.search(mode, text, k, filters, lexical_options)

    def list_files(
        self,
        pattern: str,
        lexical_options: LexicalOptions,
        filters: Optional[SearchFilters] = None,
    ) -> List[str]:
        return self.query_engine.list_files(pattern, lexical_options, filters)

    def refresh(self, force: bool = False) -> None:
        """Adopt a version published by another process or not loaded yet.

        With auto_refresh off, a loaded snapshot is only replaced when
        forced, which queries do once its text has been collected.

        A damaged store never fails a query: the last good snapshot stays
        in use and the problem is logged.
        """
        current = self.holder.current
        if current is not None and not (force or self.config.storage.auto_refresh):
            return
        with self._refresh_lock:
            try:
                published = self.store.read_current_version()
                current = self.holder.current
                if published is None or (current is not None and current.version == published):
                    return
                snapshot = load_published_snapshot(
                    self.store,
                    self.embedding_provider.get_model_fingerprint(),
                    self.embedding_provider.get_dimensions(),
                )
            except StoreCorruption as e:
                logger.warning(f"Ignoring unreadable published index: {e}")
                return
            latest = self.holder.current
            if snapshot is not None and (latest is None or snapshot.version > latest.version):
                self.holder.publish(snapshot)

    # -- maintenance -----------------------------------------------------

    def status(self) -> IndexStats:
        fingerprint = self.embedding_provider.get_model_fingerprint()
        stats = IndexStats(
            exists=False,
            active_model_fingerprint=fingerprint,
            indexer_state=self.indexer.state.value,
        )
        self.refresh()
        with self.holder.lease() as snapshot:
            if snapshot is None:
                return stats
            manifest = snapshot.manifest
            stats.exists = True
            stats.version = manifest.version
            stats.model_fingerprint = manifest.model_fingerprint
            stats.total_files = len(manifest.files)
            stats.total_chunks = len(manifest.chunk_id_set())
            stats.embedded_chunks = len(snapshot.embedded_chunk_ids() & manifest.chunk_id_set())
            stats.missing_embeddings = stats.total_chunks - stats.embedded_chunks
            stats.best_effort_files = sum(1 for e in manifest.files.values() if e.best_effort)
            for entry in manifest.files.values():
                stats.languages[entry.language] = stats.languages.get(entry.language, 0) + 1
            stats.last_updated = manifest.created_at
            live_versions, live_hashes, _ = self._live_sets(snapshot)
            stats.orphaned_artifacts = self.store.orphans(live_versions, live_hashes)
        stats.index_size_bytes = self.store.size_bytes()
        return stats

    def clean(self) -> None:
        """Remove the whole index for this codebase."""
        self.lock.acquire(str(self.codebase_dir))
        try:
            self.holder.clear()
            self.store.clear()
            logger.info(f"Removed index at {self.index_dir}")
        finally:
            self.lock.release()
            # The heartbeat lived inside the index directory.
            if self.index_dir.exists() and not any(self.index_dir.iterdir()):
                self.index_dir.rmdir()

    def clean_orphans(self) -> int:
        """Remove artifacts no live snapshot references.

        Returns:
            Number of removed snapshot directories, blobs and cache files
        """
        self.lock.acquire(str(self.codebase_dir))
        try:
            self.refresh()
            current = self.holder.current
            if current is None:
                return 0
            live_versions, live_hashes, live_fingerprints = self._live_sets(current)
            removed = self.store.collect(live_versions, live_hashes)

            cache = EmbeddingCache(
                self.index_dir,
                current.manifest.model_fingerprint,
                self.embedding_provider.get_dimensions(),
            )
            live_slugs = {model_slug(fp) for fp in live_fingerprints}
            for path in cache.other_model_files():
                if path.stem not in live_slugs:
                    path.unlink(missing_ok=True)
                    removed += 1
            logger.info(f"Removed {removed} orphaned index artifacts")
            return removed
        finally:
            self.lock.release()

    def inspect(self, path: Union[str, Path]) -> FileInspection:
        """Chunk one file with the configured detector and report the result.

        Raises:
            FileNotFoundError: If the path is not an existing file
        """
        file_path = Path(path)
        if not file_path.is_absolute():
            file_path = self.codebase_dir / file_path
        if not file_path.is_file():
            raise FileNotFoundError(f"Not a file: {file_path}")

        data = file_path.read_bytes()
        text = data.decode("utf-8", errors="replace")
        try:
            display = file_path.resolve().relative_to(self.codebase_dir).as_posix()
        except ValueError:
            display = file_path.as_posix()

        result = self.indexer.boundary_detector.detect(text, display)
        return FileInspection(
            path=display,
            language=result.language,
            size_bytes=len(data),
            line_count=len(text.splitlines()),
            token_estimate=len(text) // 4,
            best_effort=result.best_effort,
            warning=result.warning,
            chunks=[
                ChunkPreview(
                    kind=chunk.kind,
                    line_start=chunk.line_start,
                    line_end=chunk.line_end,
                    start_byte=chunk.start_byte,
                    end_byte=chunk.end_byte,
                    token_estimate=chunk.token_estimate,
                    name=chunk.name,
                    part=chunk.part,
                    preview=_first_line(chunk.text),
                )
                for chunk in result.chunks
            ],
        )

    def _live_sets(self, current: IndexSnapshot) -> Tuple[Set[int], Set[str], Set[str]]:
        """Versions, content hashes and model fingerprints still in use."""
        versions = {current.version}
        hashes = set(current.manifest.content_hashes())
        fingerprints = {current.manifest.model_fingerprint}
        for snapshot in self.holder.leased_snapshots():
            versions.add(snapshot.version)
            hashes |= snapshot.manifest.content_hashes()
            fingerprints.add(snapshot.manifest.model_fingerprint)
        return versions, hashes, fingerprints


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line
    return ""
