"""
Language detection for indexed files.

Maps file extensions (and a few well-known file names) to language names.
The names double as tree-sitter-language-pack grammar names, so the
boundary detector can look a parser up directly from the result.
"""

from pathlib import Path
from typing import Dict, Optional

EXTENSION_LANGUAGES: Dict[str, str] = {
    "py": "python",
    "pyi": "python",
    "pyw": "python",
    "js": "javascript",
    "jsx": "javascript",
    "mjs": "javascript",
    "cjs": "javascript",
    "ts": "typescript",
    "mts": "typescript",
    "cts": "typescript",
    "tsx": "tsx",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "kt": "kotlin",
    "kts": "kotlin",
    "c": "c",
    "h": "c",
    "cpp": "cpp",
    "cc": "cpp",
    "cxx": "cpp",
    "hpp": "cpp",
    "hh": "cpp",
    "hxx": "cpp",
    "cs": "csharp",
    "rb": "ruby",
    "rake": "ruby",
    "php": "php",
    "swift": "swift",
    "scala": "scala",
    "lua": "lua",
    "sh": "bash",
    "bash": "bash",
    "md": "markdown",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "sql": "sql",
    "html": "html",
    "htm": "html",
    "css": "css",
    "txt": "text",
}

FILENAME_LANGUAGES: Dict[str, str] = {
    "Makefile": "make",
    "Dockerfile": "dockerfile",
    "Rakefile": "ruby",
    "Gemfile": "ruby",
}

SHEBANG_LANGUAGES: Dict[str, str] = {
    "python": "python",
    "node": "javascript",
    "bash": "bash",
    "sh": "bash",
    "ruby": "ruby",
}


def detect_language(path: str, content: Optional[str] = None) -> str:
    """Best-effort language name for a file, "unknown" when nothing matches.

    Extension wins; the shebang line is only consulted for files without a
    known extension.
    """
    p = Path(path)
    if p.name in FILENAME_LANGUAGES:
        return FILENAME_LANGUAGES[p.name]

    ext = p.suffix.lstrip(".").lower()
    if ext in EXTENSION_LANGUAGES:
        return EXTENSION_LANGUAGES[ext]

    if content and content.startswith("#!"):
        first_line = content.split("\n", 1)[0]
        interpreter = first_line.rsplit("/", 1)[-1].split()
        if interpreter:
            name = interpreter[-1] if interpreter[0] == "env" else interpreter[0]
            for prefix, language in SHEBANG_LANGUAGES.items():
                if name.startswith(prefix):
                    return language

    return "unknown"
