"""Configuration management for Code Seek."""

import json
import logging
from pathlib import Path
from typing import List, Optional, Any

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".code-seek"


class IndexingConfig(BaseModel):
    """Configuration for chunking and file scanning."""

    chunk_size: int = Field(
        default=2000,
        description="Maximum characters in one chunk before it is split into parts",
    )
    max_file_size: int = Field(
        default=1048576, description="Maximum file size to index in bytes"
    )
    use_semantic_chunking: bool = Field(
        default=True,
        description="Use tree-sitter structural chunking for supported languages",
    )
    trust_mtime: bool = Field(
        default=True,
        description="Reuse the previous file hash when mtime and size are unchanged",
    )

    @field_validator("chunk_size", "max_file_size")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


class EmbeddingConfig(BaseModel):
    """Configuration for embedding generation.

    Retry and backoff belong to the provider; the indexer only batches.
    """

    model: str = Field(
        default="nomic-embed-text-v1.5",
        description="Model name reported by the bundled offline provider",
    )
    dimensions: int = Field(
        default=384, description="Vector size of the bundled offline provider"
    )
    batch_size: int = Field(
        default=32,
        description="Maximum number of chunk texts sent to the provider in one call",
    )
    parallel_requests: int = Field(
        default=1, description="Number of batches submitted to the provider concurrently"
    )

    @field_validator("dimensions", "batch_size", "parallel_requests")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


class SearchConfig(BaseModel):
    """Configuration for ranking and result limits."""

    rrf_k: float = Field(
        default=60.0, description="Reciprocal Rank Fusion smoothing constant"
    )
    default_limit: int = Field(default=10, description="Default number of results")
    semantic_threshold: Optional[float] = Field(
        default=None, description="Minimum cosine similarity for semantic results"
    )
    candidate_pool: int = Field(
        default=100,
        description="Depth of each ranked list gathered before hybrid fusion",
    )

    @field_validator("rrf_k")
    @classmethod
    def rrf_k_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rrf_k must be positive")
        return v

    @field_validator("default_limit", "candidate_pool")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


class StorageConfig(BaseModel):
    """Configuration for the persisted index."""

    index_dir: Path = Field(
        default=Path(CONFIG_DIR_NAME) / "index",
        description="Index directory, relative to the codebase unless absolute",
    )
    auto_refresh: bool = Field(
        default=True,
        description=(
            "Pick up versions published by other processes before each query; "
            "when off, a loaded version is kept until another process collects it"
        ),
    )


class Config(BaseModel):
    """Main configuration for Code Seek."""

    codebase_dir: Path = Field(default=Path("."), description="Directory to index")
    file_extensions: List[str] = Field(
        default_factory=list,
        description="File extensions to index; empty means every text file",
    )
    exclude_dirs: List[str] = Field(
        default=[
            "node_modules",
            "venv",
            ".venv",
            "__pycache__",
            ".git",
            "dist",
            "build",
            "target",
            ".idea",
            ".vscode",
            ".mypy_cache",
            ".pytest_cache",
            CONFIG_DIR_NAME,
        ],
        description="Directories to exclude from indexing",
    )
    exclude_patterns: List[str] = Field(
        default_factory=list,
        description="Additional gitwildmatch patterns to exclude",
    )

    indexing: IndexingConfig = Field(default_factory=IndexingConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @field_validator("codebase_dir", mode="before")
    @classmethod
    def convert_path(cls, v: Any) -> Path:
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v)
        if isinstance(v, Path):
            return v
        raise ValueError(f"Expected str or Path, got {type(v)}")

    @field_validator("file_extensions")
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        """Remove dots from file extensions."""
        return [ext.lstrip(".").lower() for ext in v]

    def resolved_index_dir(self) -> Path:
        """Absolute index directory for this codebase."""
        index_dir = self.storage.index_dir
        if index_dir.is_absolute():
            return index_dir
        return (self.codebase_dir / index_dir).resolve()


class ConfigManager:
    """Manages configuration loading and saving."""

    DEFAULT_CONFIG_PATH = Path(CONFIG_DIR_NAME) / "config.json"

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self._config: Optional[Config] = None

    @classmethod
    def for_codebase(cls, codebase_dir: Path) -> "ConfigManager":
        return cls(Path(codebase_dir) / CONFIG_DIR_NAME / "config.json")

    def load(self) -> Config:
        """Load configuration from file or create a default one."""
        codebase_root = self.config_path.parent.parent
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)

                if "codebase_dir" in data:
                    data["codebase_dir"] = str(
                        self._resolve_relative_path(data["codebase_dir"])
                    )
                else:
                    data["codebase_dir"] = str(codebase_root.resolve())

                self._config = Config(**data)
            except Exception as e:
                raise ValueError(f"Failed to load config from {self.config_path}: {e}")
        else:
            logger.debug(f"No config at {self.config_path}, using defaults")
            self._config = Config(codebase_dir=codebase_root.resolve())

        return self._config

    def save(self, config: Optional[Config] = None) -> None:
        """Save configuration with the codebase path relative to the config."""
        if config is None:
            config = self._config

        if config is None:
            raise ValueError("No configuration to save")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = config.model_dump(mode="json")
        config_dict["codebase_dir"] = self._make_relative_to_config(config.codebase_dir)

        with open(self.config_path, "w") as f:
            json.dump(config_dict, f, indent=2, sort_keys=True)
        self._config = config

    def get_config(self) -> Config:
        """Get current configuration, loading if necessary."""
        if self._config is None:
            self.load()
        if self._config is None:
            raise RuntimeError("Failed to load configuration")
        return self._config

    def update_config(self, **kwargs: Any) -> Config:
        """Update configuration with new values."""
        config = self.get_config()

        config_dict = config.model_dump()
        config_dict.update(kwargs)

        new_config = Config(**config_dict)
        self._config = new_config
        self.save()
        return new_config

    def _make_relative_to_config(self, path: Path) -> str:
        """Convert an absolute path to a path relative to the config's project root."""
        if not path.is_absolute() or str(path) == ".":
            return str(path)

        config_root = self.config_path.parent.parent.resolve()
        try:
            relative_path = path.resolve().relative_to(config_root)
            return str(relative_path) if str(relative_path) != "." else "."
        except ValueError:
            return str(path)

    def _resolve_relative_path(self, path_str: str) -> Path:
        """Resolve a stored path against the config's project root."""
        path = Path(path_str)
        if path.is_absolute():
            return path
        return (self.config_path.parent.parent / path).resolve()
