"""Tests for language detection."""

import pytest

from code_seek.indexing.languages import detect_language


class TestDetectLanguage:
    @pytest.mark.parametrize(
        "path,language",
        [
            ("src/app.py", "python"),
            ("web/App.TSX", "tsx"),
            ("lib/util.js", "javascript"),
            ("main.go", "go"),
            ("include/list.h", "c"),
            ("docs/readme.md", "markdown"),
            ("Makefile", "make"),
        ],
    )
    def test_by_extension_or_name(self, path, language):
        assert detect_language(path) == language

    def test_shebang_used_without_extension(self):
        assert detect_language("bin/tool", "#!/usr/bin/env python3\nprint(1)\n") == "python"
        assert detect_language("bin/run", "#!/bin/bash\necho hi\n") == "bash"

    def test_extension_wins_over_shebang(self):
        assert detect_language("script.rb", "#!/usr/bin/env python\n") == "ruby"

    def test_unknown(self):
        assert detect_language("data.bin") == "unknown"
        assert detect_language("LICENSE", "MIT License") == "unknown"
