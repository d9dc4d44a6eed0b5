"""Search request and result data structures."""

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..errors import InvalidQuery


class SearchMode(str, Enum):
    """How a query is answered.

    ``lexical`` treats the query as a literal string and ``regex`` as a
    regular expression; both run on the lexical engine only.
    """

    SEMANTIC = "semantic"
    LEXICAL = "lexical"
    REGEX = "regex"
    HYBRID = "hybrid"

    @classmethod
    def parse(cls, value: Any) -> "SearchMode":
        if isinstance(value, SearchMode):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            valid = ", ".join(mode.value for mode in cls)
            raise InvalidQuery(f"Unknown search mode {value!r}; expected one of {valid}")


@dataclass(frozen=True)
class SearchFilters:
    """Restrictions applied to every ranked list before truncation."""

    paths: Tuple[str, ...] = ()
    languages: Tuple[str, ...] = ()
    threshold: Optional[float] = None

    def __post_init__(self):
        # Accept lists from callers while keeping the dataclass hashable.
        object.__setattr__(self, "paths", tuple(self.paths))
        object.__setattr__(self, "languages", tuple(lang.lower() for lang in self.languages))

    def is_empty(self) -> bool:
        return not self.paths and not self.languages

    def matches_path(self, path: str) -> bool:
        if not self.paths:
            return True
        return any(
            fnmatch.fnmatch(path, pattern) or path.startswith(pattern.rstrip("/") + "/")
            for pattern in self.paths
        )

    def matches_language(self, language: str) -> bool:
        return not self.languages or language.lower() in self.languages


@dataclass(frozen=True)
class LexicalOptions:
    """Flags with the meaning conventional line-oriented search tools give them."""

    case_insensitive: bool = False
    whole_word: bool = False
    invert: bool = False
    fixed_strings: bool = False
    before_context: int = 0
    after_context: int = 0
    max_count: Optional[int] = None
    files_with_matches: bool = False
    files_without_matches: bool = False

    @classmethod
    def with_context(cls, lines: int, **kwargs: Any) -> "LexicalOptions":
        return cls(before_context=lines, after_context=lines, **kwargs)

    def validate(self) -> None:
        if self.files_with_matches and self.files_without_matches:
            raise InvalidQuery(
                "files_with_matches and files_without_matches are mutually exclusive"
            )
        if self.before_context < 0 or self.after_context < 0:
            raise InvalidQuery("Context line counts must not be negative")
        if self.max_count is not None and self.max_count < 0:
            raise InvalidQuery("max_count must not be negative")

    @property
    def lists_files(self) -> bool:
        return self.files_with_matches or self.files_without_matches


@dataclass(frozen=True)
class ContextLine:
    line_number: int
    text: str


@dataclass
class LineMatch:
    """One selected line, located the way grep -n -b reports it."""

    path: str
    line_number: int
    byte_offset: int
    line: str
    spans: List[Tuple[int, int]] = field(default_factory=list)
    before: List[ContextLine] = field(default_factory=list)
    after: List[ContextLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "line_number": self.line_number,
            "byte_offset": self.byte_offset,
            "line": self.line,
            "spans": [list(span) for span in self.spans],
            "before": [[c.line_number, c.text] for c in self.before],
            "after": [[c.line_number, c.text] for c in self.after],
        }


@dataclass
class SearchResult:
    """A single ranked chunk returned by the query engine."""

    chunk_id: str
    path: str
    kind: str
    language: str
    line_start: int
    line_end: int
    start_byte: int
    end_byte: int
    score: float
    sources: Tuple[str, ...] = ()
    ranks: Dict[str, int] = field(default_factory=dict)
    similarity: Optional[float] = None
    name: Optional[str] = None
    preview: str = ""
    matches: List[LineMatch] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "path": self.path,
            "kind": self.kind,
            "language": self.language,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "start_byte": self.start_byte,
            "end_byte": self.end_byte,
            "score": self.score,
            "sources": list(self.sources),
            "ranks": dict(self.ranks),
            "similarity": self.similarity,
            "name": self.name,
            "preview": self.preview,
            "matches": [m.to_dict() for m in self.matches],
        }


def preview_lines(text: str, max_lines: int = 5) -> str:
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return "\n".join(lines)
    return "\n".join(lines[:max_lines]) + "\n..."

