"""Abstract base class for embedding providers."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence


class EmbeddingProvider(ABC):
    """Turns chunk texts into fixed-dimension vectors.

    Implementations raise ``ProviderError`` for a failed batch. Retry and
    backoff are the provider's concern; the indexer never retries.
    """

    @abstractmethod
    def get_embeddings_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """Generate embeddings for multiple texts in batch.

        Args:
            texts: Texts to embed

        Returns:
            One embedding vector per input text, in input order

        Raises:
            ProviderError: If the batch could not be embedded
        """

    def get_embedding(self, text: str) -> List[float]:
        """Generate embedding for a single text, such as a query."""
        return self.get_embeddings_batch([text])[0]

    @abstractmethod
    def get_provider_name(self) -> str:
        """Get the name of this embedding provider."""

    @abstractmethod
    def get_current_model(self) -> str:
        """Get the current active model name."""

    @abstractmethod
    def get_dimensions(self) -> int:
        """Vector size produced by the current model."""

    def get_model_fingerprint(self) -> str:
        """Identifier tying stored vectors to the exact model producing them."""
        return f"{self.get_provider_name()}:{self.get_current_model()}:{self.get_dimensions()}"

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "provider": self.get_provider_name(),
            "model": self.get_current_model(),
            "dimensions": self.get_dimensions(),
            "fingerprint": self.get_model_fingerprint(),
        }
