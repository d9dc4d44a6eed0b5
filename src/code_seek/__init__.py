"""
Code Seek - incremental hybrid semantic and lexical code search.

Source files are split into content-addressed chunks, embedded only when
their content changes, and searched by meaning, by pattern, or by a
Reciprocal Rank Fusion of both.
"""

__version__ = "0.1.0"

from .config import Config, ConfigManager
from .errors import (
    CodeSeekError,
    ConcurrencyConflict,
    DimensionMismatch,
    IndexingCancelled,
    InvalidQuery,
    ParseFailure,
    ProviderError,
    StaleSnapshot,
    StoreCorruption,
)
from .search.query import LexicalOptions, SearchFilters, SearchMode, SearchResult
from .services.code_seek_service import CodeSeekService
from .services.incremental_indexer import IndexMode, IndexOutcome

__all__ = [
    "CodeSeekError",
    "CodeSeekService",
    "ConcurrencyConflict",
    "Config",
    "ConfigManager",
    "DimensionMismatch",
    "IndexMode",
    "IndexOutcome",
    "IndexingCancelled",
    "InvalidQuery",
    "LexicalOptions",
    "ParseFailure",
    "ProviderError",
    "SearchFilters",
    "SearchMode",
    "SearchResult",
    "StaleSnapshot",
    "StoreCorruption",
]
