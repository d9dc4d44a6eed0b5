"""
Shared pytest fixtures for Code Seek tests.

Provides a small sample codebase, configuration factories and embedding
providers that record or fail on demand.
"""

import textwrap
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from code_seek.config import Config, EmbeddingConfig, IndexingConfig
from code_seek.errors import ProviderError
from code_seek.services.code_seek_service import CodeSeekService
from code_seek.services.embedding_provider import EmbeddingProvider
from code_seek.services.hashing_provider import HashingEmbeddingProvider

TEST_DIMENSIONS = 64

APP_PY = textwrap.dedent(
    '''\
    import os


    def load_settings(path):
        """Read settings from a file."""
        with open(path) as f:
            return f.read()


    def compute_total(items):
        total = 0
        for item in items:
            total += item.price
        return total


    class ShoppingCart:
        def __init__(self):
            self.items = []

        def add(self, item):
            self.items.append(item)
    '''
)

UTIL_JS = textwrap.dedent(
    """\
    function formatPrice(value) {
      return "$" + value.toFixed(2);
    }

    function parseQuery(text) {
      return text.split("&");
    }
    """
)

NOTES_TXT = textwrap.dedent(
    """\
    Shopping cart notes.
    The total is computed from item prices.

    Remember to format the price for display.
    """
)


class RecordingProvider(EmbeddingProvider):
    """Hashing embeddings that records every batch and can fail on demand."""

    def __init__(
        self,
        dimensions: int = TEST_DIMENSIONS,
        model: str = "test-model",
        fail_when: Optional[Callable[[Sequence[str]], bool]] = None,
    ):
        self.inner = HashingEmbeddingProvider(
            EmbeddingConfig(model=model, dimensions=dimensions)
        )
        self.fail_when = fail_when
        self.batches: List[List[str]] = []

    @property
    def embedded_texts(self) -> List[str]:
        return [text for batch in self.batches for text in batch]

    def reset(self) -> None:
        self.batches.clear()

    def get_embeddings_batch(self, texts):
        texts = list(texts)
        if self.fail_when is not None and self.fail_when(texts):
            raise ProviderError("simulated provider outage")
        self.batches.append(texts)
        return self.inner.get_embeddings_batch(texts)

    def get_provider_name(self) -> str:
        return "recording"

    def get_current_model(self) -> str:
        return self.inner.get_current_model()

    def get_dimensions(self) -> int:
        return self.inner.get_dimensions()


def write_files(root: Path, files: dict) -> None:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


@pytest.fixture
def sample_repo(tmp_path: Path) -> Path:
    """A tiny codebase with Python, JavaScript and plain text files."""
    root = tmp_path / "repo"
    write_files(
        root,
        {
            "src/app.py": APP_PY,
            "src/util.js": UTIL_JS,
            "docs/notes.txt": NOTES_TXT,
        },
    )
    return root


@pytest.fixture
def make_config() -> Callable[..., Config]:
    """Factory for configs rooted at a directory.

    mtime trust is off by default so that rewrites within one timestamp
    tick are still detected.
    """

    def _make(root: Path, **indexing) -> Config:
        indexing.setdefault("trust_mtime", False)
        return Config(
            codebase_dir=root,
            indexing=IndexingConfig(**indexing),
            embedding=EmbeddingConfig(dimensions=TEST_DIMENSIONS, batch_size=4),
        )

    return _make


@pytest.fixture
def provider() -> RecordingProvider:
    return RecordingProvider()


@pytest.fixture
def service(sample_repo: Path, make_config, provider: RecordingProvider) -> CodeSeekService:
    return CodeSeekService(make_config(sample_repo), embedding_provider=provider)


@pytest.fixture
def provider_factory() -> Callable[..., RecordingProvider]:
    """Build extra providers, e.g. a failing one or one for another model."""
    return RecordingProvider
