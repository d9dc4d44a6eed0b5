"""Exception taxonomy for the indexing and search core."""

from pathlib import Path
from typing import Optional, Union


class CodeSeekError(Exception):
    """Base class for all errors raised by code_seek."""


class ParseFailure(CodeSeekError):
    """A structural parser could not chunk one file.

    Non-fatal: the boundary detector catches it and falls back to a
    whole-file chunk.
    """

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Failed to parse {self.path}: {reason}")


class ProviderError(CodeSeekError):
    """The embedding provider failed for a batch."""


class StoreCorruption(CodeSeekError):
    """Persisted index data failed a checksum or structure check."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = str(path)
        self.reason = reason
        super().__init__(f"Corrupt index data at {self.path}: {reason}")


class ConcurrencyConflict(CodeSeekError):
    """Another indexing pass is already running."""

    def __init__(self, message: str, owner_pid: Optional[int] = None):
        self.owner_pid = owner_pid
        super().__init__(message)


class IndexingCancelled(CodeSeekError):
    """The caller cancelled an indexing pass before it committed."""


class DimensionMismatch(CodeSeekError, ValueError):
    """A vector does not match the active model's dimensionality."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Vector dimension {actual} does not match active model dimension {expected}"
        )


class InvalidQuery(CodeSeekError, ValueError):
    """A search request is malformed."""


class StaleSnapshot(CodeSeekError):
    """A snapshot's indexed text was collected after a newer version was published."""

    def __init__(self, version: int, published: int):
        self.version = version
        self.published = published
        super().__init__(
            f"Index version {version} was retired; version {published} is published"
        )
