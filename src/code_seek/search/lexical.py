"""Line-oriented pattern search over indexed text.

Results follow the conventions of grep-style tools so that existing
invocation patterns keep their meaning:

- Input is split on ``\\n``; a trailing newline does not start an extra line.
- Line numbers are 1-based; byte offsets are the UTF-8 offset of the start
  of the selected line within its file (``grep -b``).
- ``whole_word`` only accepts matches bounded by non-word characters
  (``grep -w``), ``invert`` selects non-matching lines (``grep -v``),
  ``max_count`` stops a file after that many selected lines (``grep -m``).
- Context lines are never reported twice: a line that is itself selected,
  or already reported as context, is not repeated as context of another
  selected line. Concatenating the output reproduces ``grep -C`` output
  without the ``--`` group separators.

Matching is stateless per query and reads the text committed with the
snapshot, never the working tree.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Pattern

from ..errors import InvalidQuery
from ..storage.snapshot import IndexSnapshot
from .query import ContextLine, LexicalOptions, LineMatch

logger = logging.getLogger(__name__)

PathPredicate = Callable[[str], bool]


@dataclass
class LexicalResult:
    matches: List[LineMatch] = field(default_factory=list)
    files: List[str] = field(default_factory=list)


def compile_pattern(pattern: str, options: LexicalOptions) -> Pattern[str]:
    """Compile a user pattern with grep-style flags.

    Raises:
        InvalidQuery: If the pattern is empty or not a valid expression
    """
    if not pattern:
        raise InvalidQuery("Search pattern must not be empty")
    source = re.escape(pattern) if options.fixed_strings else pattern
    if options.whole_word:
        source = rf"(?<!\w)(?:{source})(?!\w)"
    flags = re.IGNORECASE if options.case_insensitive else 0
    try:
        return re.compile(source, flags)
    except re.error as e:
        raise InvalidQuery(f"Invalid regex pattern '{pattern}': {e}")


def split_lines(text: str) -> List[str]:
    if not text:
        return []
    lines = text.split("\n")
    if text.endswith("\n"):
        lines.pop()
    return lines


def search_text(
    path: str, text: str, compiled: Pattern[str], options: LexicalOptions
) -> List[LineMatch]:
    """Selected lines of one file, in file order."""
    lines = split_lines(text)
    limit = options.max_count
    if limit == 0:
        return []

    selected: List[int] = []
    spans_by_line = {}
    for idx, line in enumerate(lines):
        spans = [m.span() for m in compiled.finditer(line)]
        if bool(spans) != options.invert:
            selected.append(idx)
            if not options.invert:
                spans_by_line[idx] = [span for span in spans if span[0] != span[1]]
            if limit is not None and len(selected) >= limit:
                break

    if not selected:
        return []

    offsets = _line_byte_offsets(lines)
    selected_set = set(selected)
    matches: List[LineMatch] = []
    last_reported = -1
    for position, idx in enumerate(selected):
        before: List[ContextLine] = []
        if options.before_context:
            first = max(idx - options.before_context, last_reported + 1)
            before = [ContextLine(n + 1, lines[n]) for n in range(first, idx)]

        after: List[ContextLine] = []
        last_reported = idx
        if options.after_context:
            stop = min(idx + options.after_context, len(lines) - 1)
            next_selected = selected[position + 1] if position + 1 < len(selected) else None
            for n in range(idx + 1, stop + 1):
                if n in selected_set or (next_selected is not None and n >= next_selected):
                    break
                after.append(ContextLine(n + 1, lines[n]))
                last_reported = n

        matches.append(
            LineMatch(
                path=path,
                line_number=idx + 1,
                byte_offset=offsets[idx],
                line=lines[idx],
                spans=spans_by_line.get(idx, []),
                before=before,
                after=after,
            )
        )
    return matches


def _line_byte_offsets(lines: List[str]) -> List[int]:
    offsets = []
    position = 0
    for line in lines:
        offsets.append(position)
        position += len(line.encode("utf-8")) + 1
    return offsets


class LexicalEngine:
    """Runs one pattern over every file of a snapshot."""

    def search(
        self,
        snapshot: IndexSnapshot,
        pattern: str,
        options: Optional[LexicalOptions] = None,
        include: Optional[PathPredicate] = None,
    ) -> LexicalResult:
        """Scan the snapshot's files in path order.

        Raises:
            InvalidQuery: For an empty or malformed pattern or conflicting flags
        """
        options = options or LexicalOptions()
        options.validate()
        compiled = compile_pattern(pattern, options)

        result = LexicalResult()
        for path in self._paths(snapshot, include):
            text = snapshot.file_text(path)
            found = search_text(path, text, compiled, options)
            if options.files_with_matches:
                if found:
                    result.files.append(path)
            elif options.files_without_matches:
                if not found:
                    result.files.append(path)
            else:
                result.matches.extend(found)
                if found:
                    result.files.append(path)

        logger.debug(
            f"Lexical search for {pattern!r} selected {len(result.matches)} lines "
            f"in {len(result.files)} files"
        )
        return result

    @staticmethod
    def _paths(snapshot: IndexSnapshot, include: Optional[PathPredicate]) -> Iterable[str]:
        for path in sorted(snapshot.files):
            if include is None or include(path):
                yield path
