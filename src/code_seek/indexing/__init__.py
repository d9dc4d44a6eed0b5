"""Indexing components: file discovery, chunking and fingerprints."""

from .boundary_detector import (
    BoundaryDetector,
    ChunkKind,
    ChunkSpan,
    DetectedChunk,
    DetectionResult,
)
from .file_finder import FileFinder

__all__ = [
    "BoundaryDetector",
    "ChunkKind",
    "ChunkSpan",
    "DetectedChunk",
    "DetectionResult",
    "FileFinder",
]
