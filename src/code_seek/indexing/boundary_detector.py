"""
Boundary detection: splitting one file's text into ordered chunks.

Structural parsing is a capability selected by language name. Each
capability only proposes byte spans; this module owns everything that
must hold regardless of the parser: ordering, gap filling, splitting of
oversized spans, line numbers, and the whole-file fallback when a parser
fails.
"""

import logging
from bisect import bisect_right
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Sequence

from ..config import IndexingConfig
from ..errors import ParseFailure
from .languages import detect_language

logger = logging.getLogger(__name__)


class ChunkKind(str, Enum):
    """Structural role of a chunk."""

    FUNCTION = "function"
    CLASS = "class"
    BLOCK = "block"
    FILE = "file"


@dataclass(frozen=True)
class ChunkSpan:
    """A byte range proposed by a boundary capability."""

    kind: str
    start_byte: int
    end_byte: int
    name: Optional[str] = None


@dataclass
class DetectedChunk:
    """A chunk with its text and position inside the file."""

    kind: str
    start_byte: int
    end_byte: int
    line_start: int
    line_end: int
    text: str
    name: Optional[str] = None
    part: Optional[int] = None

    @property
    def token_estimate(self) -> int:
        return len(self.text) // 4


@dataclass
class DetectionResult:
    """Outcome of chunking one file."""

    language: str
    chunks: List[DetectedChunk]
    best_effort: bool = False
    warning: Optional[str] = None


class BoundaryCapability(Protocol):
    """Per-language structural chunking."""

    def supports(self, language: str) -> bool:
        ...

    def spans(self, source: bytes, language: str, path: str) -> List[ChunkSpan]:
        """Propose ordered, non-overlapping spans.

        Raises:
            ParseFailure: If the file cannot be parsed
        """
        ...


def line_offsets(source: bytes) -> List[int]:
    """Byte offset at which each line starts."""
    offsets = [0]
    pos = source.find(b"\n")
    while pos != -1:
        offsets.append(pos + 1)
        pos = source.find(b"\n", pos + 1)
    return offsets


class BoundaryDetector:
    """Chooses a capability per language and normalizes its spans."""

    def __init__(
        self,
        config: IndexingConfig,
        capabilities: Optional[Sequence[BoundaryCapability]] = None,
    ):
        self.config = config
        self.chunk_size = config.chunk_size

        if capabilities is None:
            from .block_detector import BlankLineBlockDetector

            default: List[BoundaryCapability] = []
            if config.use_semantic_chunking:
                from .tree_sitter_detector import TreeSitterDetector

                default.append(TreeSitterDetector(chunk_size=config.chunk_size))
            default.append(BlankLineBlockDetector(config))
            capabilities = default

        self.capabilities: List[BoundaryCapability] = list(capabilities)

    def select(self, language: str) -> Optional[BoundaryCapability]:
        for capability in self.capabilities:
            if capability.supports(language):
                return capability
        return None

    def detect(
        self, text: str, path: str, language: Optional[str] = None
    ) -> DetectionResult:
        """Chunk one file. Never raises for parser problems."""
        language = language or detect_language(path, text)
        if not text.strip():
            return DetectionResult(language=language, chunks=[])

        source = text.encode("utf-8")
        offsets = line_offsets(source)
        capability = self.select(language)
        if capability is None:
            return self._whole_file(source, offsets, language, None)

        try:
            spans = capability.spans(source, language, path)
            chunks = self._materialize(source, offsets, spans, path)
        except ParseFailure as e:
            logger.warning(f"{e}; indexing as a single chunk")
            return self._whole_file(source, offsets, language, str(e))
        except UnicodeDecodeError as e:
            failure = ParseFailure(path, f"span split a character: {e}")
            logger.warning(f"{failure}; indexing as a single chunk")
            return self._whole_file(source, offsets, language, str(failure))

        return DetectionResult(language=language, chunks=chunks)

    def _whole_file(
        self,
        source: bytes,
        offsets: List[int],
        language: str,
        warning: Optional[str],
    ) -> DetectionResult:
        chunk = self._make_chunk(source, offsets, ChunkKind.FILE.value, 0, len(source))
        return DetectionResult(
            language=language,
            chunks=[chunk],
            best_effort=warning is not None,
            warning=warning,
        )

    def _materialize(
        self,
        source: bytes,
        offsets: List[int],
        spans: Sequence[ChunkSpan],
        path: str,
    ) -> List[DetectedChunk]:
        ordered = sorted(spans, key=lambda s: (s.start_byte, s.end_byte))
        covered: List[ChunkSpan] = []
        cursor = 0
        for span in ordered:
            if span.start_byte < cursor or span.end_byte > len(source):
                raise ParseFailure(
                    path, f"overlapping span at byte {span.start_byte}"
                )
            if span.end_byte <= span.start_byte:
                continue
            if span.start_byte > cursor:
                covered.append(ChunkSpan(ChunkKind.BLOCK.value, cursor, span.start_byte))
            covered.append(span)
            cursor = span.end_byte
        if cursor < len(source):
            covered.append(ChunkSpan(ChunkKind.BLOCK.value, cursor, len(source)))

        chunks: List[DetectedChunk] = []
        for span in covered:
            if not source[span.start_byte : span.end_byte].strip():
                continue
            chunks.extend(self._split_oversized(source, offsets, span))
        return chunks

    def _split_oversized(
        self, source: bytes, offsets: List[int], span: ChunkSpan
    ) -> List[DetectedChunk]:
        whole = self._make_chunk(
            source, offsets, span.kind, span.start_byte, span.end_byte, span.name
        )
        if len(whole.text) <= self.chunk_size:
            return [whole]

        # Split on line boundaries; a single overlong line stays one part.
        parts: List[DetectedChunk] = []
        part_start = span.start_byte
        part_chars = 0
        first_line = bisect_right(offsets, span.start_byte)
        for line_index in range(first_line, len(offsets) + 1):
            line_end = offsets[line_index] if line_index < len(offsets) else len(source)
            line_end = min(line_end, span.end_byte)
            line_start = max(offsets[line_index - 1], span.start_byte)
            if line_end <= line_start:
                break
            line_chars = len(source[line_start:line_end].decode("utf-8"))
            if part_chars and part_chars + line_chars > self.chunk_size:
                parts.append(
                    self._make_chunk(
                        source, offsets, span.kind, part_start, line_start, span.name
                    )
                )
                part_start = line_start
                part_chars = 0
            part_chars += line_chars
            if line_end >= span.end_byte:
                break
        parts.append(
            self._make_chunk(source, offsets, span.kind, part_start, span.end_byte, span.name)
        )

        parts = [p for p in parts if p.text.strip()]
        for number, part in enumerate(parts, start=1):
            part.part = number
        return parts

    @staticmethod
    def _make_chunk(
        source: bytes,
        offsets: List[int],
        kind: str,
        start: int,
        end: int,
        name: Optional[str] = None,
    ) -> DetectedChunk:
        text = source[start:end].decode("utf-8")
        line_start = bisect_right(offsets, start)
        line_end = bisect_right(offsets, max(end - 1, start))
        return DetectedChunk(
            kind=kind,
            start_byte=start,
            end_byte=end,
            line_start=line_start,
            line_end=line_end,
            text=text,
            name=name,
        )
