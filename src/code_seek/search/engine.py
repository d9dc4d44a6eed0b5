"""Query dispatch over one leased index snapshot.

Semantic queries go to the vector index, lexical and regex queries to the
lexical engine, and hybrid queries run both and fuse the lists with
Reciprocal Rank Fusion. Every query holds a lease on the snapshot that was
current when it started, so a commit that lands mid-query is not observed.
"""

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, TypeVar

from ..config import SearchConfig
from ..errors import InvalidQuery, ProviderError, StaleSnapshot
from ..storage.snapshot import IndexSnapshot, SnapshotHolder
from .fusion import reciprocal_rank_fusion
from .lexical import LexicalEngine
from .query import (
    LexicalOptions,
    LineMatch,
    SearchFilters,
    SearchMode,
    SearchResult,
    preview_lines,
)

if TYPE_CHECKING:
    from ..services.embedding_provider import EmbeddingProvider

logger = logging.getLogger(__name__)

SEMANTIC_LIST = "semantic"
LEXICAL_LIST = "lexical"

T = TypeVar("T")


class QueryEngine:
    """Read-only search over the current snapshot."""

    def __init__(
        self,
        config: SearchConfig,
        embedding_provider: "EmbeddingProvider",
        holder: SnapshotHolder,
        refresh: Optional[Callable[..., None]] = None,
        lexical_engine: Optional[LexicalEngine] = None,
    ):
        self.config = config
        self.embedding_provider = embedding_provider
        self.holder = holder
        self.refresh = refresh
        self.lexical_engine = lexical_engine or LexicalEngine()

    def search(
        self,
        mode,
        text: str,
        k: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
        lexical_options: Optional[LexicalOptions] = None,
    ) -> List[SearchResult]:
        """Ranked chunks for a query, at most k of them.

        Raises:
            InvalidQuery: For an unknown mode, empty text or a bad pattern
            ProviderError: If the query can not be embedded in semantic mode
            StaleSnapshot: If newer versions retired the snapshot twice during the query
        """
        mode = SearchMode.parse(mode)
        limit = self.config.default_limit if k is None else k
        if limit < 0:
            raise InvalidQuery("k must not be negative")
        if not text:
            raise InvalidQuery("Query text must not be empty")
        filters = filters or SearchFilters()
        options = self._lexical_options(mode, lexical_options)
        if options.lists_files:
            raise InvalidQuery("File listing flags are only valid for list_files")
        if limit == 0:
            return []

        def run(snapshot: IndexSnapshot) -> List[SearchResult]:
            if mode == SearchMode.SEMANTIC:
                semantic = self._semantic(snapshot, text, limit, filters)
                return [
                    self._result(snapshot, cid, score, {SEMANTIC_LIST: rank}, score, [])
                    for rank, (cid, score) in enumerate(semantic, start=1)
                ]

            if mode in (SearchMode.LEXICAL, SearchMode.REGEX):
                lexical = self._lexical(snapshot, text, options, filters)
                return [
                    self._result(
                        snapshot, cid, float(len(matches)), {LEXICAL_LIST: rank}, None, matches
                    )
                    for rank, (cid, matches) in enumerate(lexical[:limit], start=1)
                ]

            return self._hybrid(snapshot, text, limit, filters, options)

        return self._read(run, [])

    def list_files(
        self,
        pattern: str,
        lexical_options: LexicalOptions,
        filters: Optional[SearchFilters] = None,
    ) -> List[str]:
        """Paths that do (or do not) contain a selected line."""
        if not lexical_options.lists_files:
            raise InvalidQuery("list_files needs files_with_matches or files_without_matches")
        filters = filters or SearchFilters()

        def run(snapshot: IndexSnapshot) -> List[str]:
            result = self.lexical_engine.search(
                snapshot, pattern, lexical_options, self._path_predicate(snapshot, filters)
            )
            return result.files

        return self._read(run, [])

    def _read(self, run: Callable[[IndexSnapshot], T], empty: T) -> T:
        """Run a read under a lease on the current snapshot.

        A snapshot whose text another process has already collected is
        dropped for the published version, and the read runs once more.
        """
        if self.refresh is not None:
            self.refresh()
        try:
            with self.holder.lease() as snapshot:
                return empty if snapshot is None else run(snapshot)
        except StaleSnapshot as e:
            if self.refresh is None:
                raise
            logger.info(f"{e}; retrying against the published version")
            self.refresh(force=True)
        with self.holder.lease() as snapshot:
            return empty if snapshot is None else run(snapshot)

    # -- ranked lists ----------------------------------------------------

    def _semantic(
        self, snapshot: IndexSnapshot, text: str, depth: int, filters: SearchFilters
    ) -> List[Tuple[str, float]]:
        if snapshot.manifest.model_fingerprint != self.embedding_provider.get_model_fingerprint():
            logger.warning(
                f"Snapshot {snapshot.version} was embedded with "
                f"{snapshot.manifest.model_fingerprint}; semantic results unavailable"
            )
            return []
        if not len(snapshot.vectors):
            return []

        query_vector = self.embedding_provider.get_embedding(text)
        allowed = None
        if not filters.is_empty():
            include = self._path_predicate(snapshot, filters)
            allowed = {
                cid
                for path in snapshot.files
                if include(path)
                for cid in snapshot.files[path].chunk_ids
            }
        threshold = filters.threshold
        if threshold is None:
            threshold = self.config.semantic_threshold
        return snapshot.vectors.query(query_vector, depth, allowed=allowed, threshold=threshold)

    def _lexical(
        self,
        snapshot: IndexSnapshot,
        pattern: str,
        options: LexicalOptions,
        filters: SearchFilters,
    ) -> List[Tuple[str, List[LineMatch]]]:
        """Chunks in order of their first selected line."""
        result = self.lexical_engine.search(
            snapshot, pattern, options, self._path_predicate(snapshot, filters)
        )
        grouped: Dict[str, List[LineMatch]] = {}
        for match in result.matches:
            record = snapshot.chunk_near(match.path, self._anchor(match))
            if record is None:
                continue
            grouped.setdefault(record.chunk_id, []).append(match)
        return list(grouped.items())

    def _hybrid(
        self,
        snapshot: IndexSnapshot,
        text: str,
        limit: int,
        filters: SearchFilters,
        options: LexicalOptions,
    ) -> List[SearchResult]:
        depth = max(limit, self.config.candidate_pool)
        try:
            semantic = self._semantic(snapshot, text, depth, filters)
        except ProviderError as e:
            logger.warning(f"Query embedding failed, falling back to lexical ranking: {e}")
            semantic = []
        try:
            lexical = self._lexical(snapshot, text, options, filters)[:depth]
        except InvalidQuery:
            # Natural-language text is often not a valid pattern.
            lexical = self._lexical(
                snapshot, text, replace(options, fixed_strings=True), filters
            )[:depth]

        similarities = dict(semantic)
        matches = dict(lexical)
        fused = reciprocal_rank_fusion(
            {
                SEMANTIC_LIST: [cid for cid, _ in semantic],
                LEXICAL_LIST: [cid for cid, _ in lexical],
            },
            k=self.config.rrf_k,
        )
        return [
            self._result(
                snapshot,
                item.id,
                item.score,
                item.ranks,
                similarities.get(item.id),
                matches.get(item.id, []),
            )
            for item in fused[:limit]
        ]

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def _lexical_options(mode: SearchMode, options: Optional[LexicalOptions]) -> LexicalOptions:
        options = options or LexicalOptions()
        options.validate()
        if mode == SearchMode.LEXICAL and not options.fixed_strings:
            options = replace(options, fixed_strings=True)
        return options

    @staticmethod
    def _anchor(match: LineMatch) -> int:
        """Byte offset that decides which chunk a selected line belongs to.

        That is the first match, moved past leading whitespace: indented
        definitions start after their indentation, and a gap before them
        (or a chunk ending there) must not claim the line.
        """
        indent = len(match.line) - len(match.line.lstrip())
        column = max(match.spans[0][0], indent) if match.spans else indent
        return match.byte_offset + len(match.line[:column].encode("utf-8"))

    @staticmethod
    def _path_predicate(snapshot: IndexSnapshot, filters: SearchFilters):
        if filters.is_empty():
            return None

        def include(path: str) -> bool:
            entry = snapshot.files[path]
            return filters.matches_path(path) and filters.matches_language(entry.language)

        return include

    @staticmethod
    def _result(
        snapshot: IndexSnapshot,
        chunk_id: str,
        score: float,
        ranks: Dict[str, int],
        similarity: Optional[float],
        matches: List[LineMatch],
    ) -> SearchResult:
        record = snapshot.chunks[chunk_id]
        return SearchResult(
            chunk_id=chunk_id,
            path=record.path,
            kind=record.kind,
            language=snapshot.files[record.path].language,
            line_start=record.line_start,
            line_end=record.line_end,
            start_byte=record.start_byte,
            end_byte=record.end_byte,
            score=score,
            sources=tuple(name for name in (SEMANTIC_LIST, LEXICAL_LIST) if name in ranks),
            ranks=dict(ranks),
            similarity=similarity,
            name=record.name,
            preview=preview_lines(snapshot.chunk_text(record)),
            matches=list(matches),
        )
