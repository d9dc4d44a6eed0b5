"""Query engine, lexical search and rank fusion."""

from .engine import QueryEngine
from .fusion import FusedItem, reciprocal_rank_fusion
from .lexical import LexicalEngine
from .query import LexicalOptions, LineMatch, SearchFilters, SearchMode, SearchResult

__all__ = [
    "FusedItem",
    "LexicalEngine",
    "LexicalOptions",
    "LineMatch",
    "QueryEngine",
    "SearchFilters",
    "SearchMode",
    "SearchResult",
    "reciprocal_rank_fusion",
]
