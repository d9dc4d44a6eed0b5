"""Blank-line block chunking for languages without a structural grammar.

Algorithm:
1. Split the file into paragraphs separated by blank lines
2. Merge consecutive paragraphs while the block stays within chunk_size
3. A paragraph larger than chunk_size becomes its own block; the boundary
   detector later splits it on line boundaries
"""

from typing import List, Tuple

from ..config import IndexingConfig
from .boundary_detector import ChunkKind, ChunkSpan


class BlankLineBlockDetector:
    """Fallback capability that accepts every language."""

    def __init__(self, config: IndexingConfig):
        self.chunk_size = config.chunk_size

    def supports(self, language: str) -> bool:
        return True

    def spans(self, source: bytes, language: str, path: str) -> List[ChunkSpan]:
        spans: List[ChunkSpan] = []
        block_start = -1
        block_end = 0
        for start, end in self._paragraphs(source):
            if block_start < 0:
                block_start, block_end = start, end
                continue
            if end - block_start <= self.chunk_size:
                block_end = end
                continue
            spans.append(ChunkSpan(ChunkKind.BLOCK.value, block_start, block_end))
            block_start, block_end = start, end

        if block_start >= 0:
            spans.append(ChunkSpan(ChunkKind.BLOCK.value, block_start, block_end))
        return spans

    @staticmethod
    def _paragraphs(source: bytes) -> List[Tuple[int, int]]:
        """Byte ranges of runs of non-blank lines, newline included."""
        paragraphs: List[Tuple[int, int]] = []
        para_start = -1
        pos = 0
        length = len(source)
        while pos < length:
            newline = source.find(b"\n", pos)
            line_end = length if newline == -1 else newline + 1
            blank = not source[pos:line_end].strip()
            if blank and para_start >= 0:
                paragraphs.append((para_start, pos))
                para_start = -1
            elif not blank and para_start < 0:
                para_start = pos
            pos = line_end

        if para_start >= 0:
            paragraphs.append((para_start, length))
        return paragraphs
