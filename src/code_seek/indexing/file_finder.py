"""File discovery and filtering for indexing."""

import logging
import os
from pathlib import Path
from typing import Callable, Iterator, List, Optional

import pathspec

from ..config import Config

logger = logging.getLogger(__name__)

# Caller-supplied predicate over POSIX paths relative to the codebase root.
IgnorePredicate = Callable[[str], bool]

COMMON_EXCLUDE_PATTERNS = [
    "*.pyc",
    "*.pyo",
    "*.pyd",
    "*.so",
    "*.dylib",
    "*.dll",
    "*.o",
    "*.a",
    ".DS_Store",
    "Thumbs.db",
    "*.tmp",
    "*.swp",
    "*.swo",
    "*~",
]


class FileFinder:
    """Finds and filters files for indexing based on configuration.

    Exclusion combines the configured directories and patterns, any
    .gitignore at the root or one level below, and an optional external
    ignore predicate. The finder never interprets ignore-file syntax of its
    own beyond handing gitignore lines to pathspec.
    """

    def __init__(self, config: Config, ignore: Optional[IgnorePredicate] = None):
        self.config = config
        self.root = Path(config.codebase_dir).resolve()
        self.ignore = ignore
        self._create_exclude_spec()

    def _create_exclude_spec(self) -> None:
        patterns: List[str] = []
        for exclude_dir in self.config.exclude_dirs:
            patterns.append(f"{exclude_dir}/")
            patterns.append(f"**/{exclude_dir}/")
        patterns.extend(COMMON_EXCLUDE_PATTERNS)
        patterns.extend(self.config.exclude_patterns)
        self._add_gitignore_patterns(self.root, patterns)
        self.exclude_spec = pathspec.PathSpec.from_lines("gitwildmatch", patterns)

    def _add_gitignore_patterns(self, directory: Path, patterns: List[str]) -> None:
        """Add patterns from .gitignore files at the root and one level down."""
        gitignore_path = directory / ".gitignore"
        if gitignore_path.exists():
            try:
                with open(gitignore_path, "r", encoding="utf-8", errors="ignore") as f:
                    for line in f:
                        line = line.strip()
                        if line and not line.startswith("#"):
                            if directory != self.root:
                                relative_dir = directory.relative_to(self.root).as_posix()
                                negate = line.startswith("!")
                                body = line[1:] if negate else line
                                body = f"{relative_dir}/{body.lstrip('/')}"
                                line = f"!{body}" if negate else body
                            patterns.append(line)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read {gitignore_path}: {e}")

        if directory != self.root:
            return
        try:
            for subdir in sorted(directory.iterdir()):
                if subdir.is_dir() and subdir.name not in {".git", "node_modules"}:
                    self._add_gitignore_patterns(subdir, patterns)
        except OSError as e:
            logger.warning(f"Could not list {directory}: {e}")

    def is_excluded(self, relative_path: str, is_dir: bool = False) -> bool:
        candidate = f"{relative_path}/" if is_dir else relative_path
        if self.exclude_spec.match_file(candidate):
            return True
        return bool(self.ignore and self.ignore(relative_path))

    def _is_text_file(self, file_path: Path) -> bool:
        """Check if a file is likely a text file (no NUL in its first 8 KiB)."""
        try:
            with open(file_path, "rb") as f:
                head = f.read(8192)
        except OSError:
            return False
        return b"\x00" not in head

    def _should_include_file(self, file_path: Path, relative_path: str) -> bool:
        try:
            if file_path.stat().st_size > self.config.indexing.max_file_size:
                logger.debug(f"Skipping {relative_path}: larger than max_file_size")
                return False
        except OSError:
            return False

        if self.config.file_extensions:
            extension = file_path.suffix.lstrip(".").lower()
            if extension not in self.config.file_extensions:
                return False

        if self.is_excluded(relative_path):
            return False

        return self._is_text_file(file_path)

    def find_files(self) -> Iterator[str]:
        """Yield relative POSIX paths of indexable files in sorted order."""
        if not self.root.exists():
            raise ValueError(f"Codebase directory does not exist: {self.root}")
        if not self.root.is_dir():
            raise ValueError(f"Codebase path is not a directory: {self.root}")

        for root, dirs, files in os.walk(self.root):
            root_path = Path(root)
            relative_root = root_path.relative_to(self.root)

            kept_dirs = []
            for dir_name in sorted(dirs):
                relative_dir = (relative_root / dir_name).as_posix()
                if not self.is_excluded(relative_dir, is_dir=True):
                    kept_dirs.append(dir_name)
            dirs[:] = kept_dirs

            for file_name in sorted(files):
                file_path = root_path / file_name
                if file_path.is_symlink() and not file_path.is_file():
                    continue
                relative_path = (relative_root / file_name).as_posix()
                if self._should_include_file(file_path, relative_path):
                    yield relative_path
