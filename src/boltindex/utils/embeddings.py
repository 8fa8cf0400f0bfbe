from typing import Callable, List, Optional
from fastembed import TextEmbedding

from boltindex.config import settings
from boltindex.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_EMBEDDING_MODEL = "BAAI/bge-small-en-v1.5"

# Factory used to create or return the embedding service singleton. This indirection
# allows tests to swap in fakes without loading a model at import time.
_embedding_service_factory: Callable[[Optional[str]], "EmbeddingService"]


class EmbeddingService:
    """
    Local text encoder backed by FastEmbed.

    One instance per model name; the ONNX model is loaded once and shared.
    This is the semantic-aspect text encoder: encode(text) -> vector.
    """
    _instances = {}

    def __new__(cls, model: Optional[str] = None):
        embedding_model = model or settings.embedding_model or DEFAULT_EMBEDDING_MODEL

        if embedding_model not in cls._instances:
            instance = super().__new__(cls)
            instance._initialize(embedding_model)
            cls._instances[embedding_model] = instance

        return cls._instances[embedding_model]

    def _initialize(self, model: str):
        self.model = model
        self.embeddings = TextEmbedding(model_name=model)
        self._dimensions: Optional[int] = None
        logger.info("embedding_service_initialized", model=model)

    def encode(self, text: str) -> List[float]:
        """Text encoder interface used by the embedding generator."""
        return self.embed_query(text)

    def embed_query(self, text: str) -> List[float]:
        """Embed a single query string."""
        # FastEmbed returns a generator, convert to list
        return list(self.embeddings.embed([text]))[0].tolist()

    def get_dimensions(self) -> int:
        """Get the dimensionality of embeddings produced by this model."""
        if self._dimensions is None:
            # Embed a sample string once and remember the length
            self._dimensions = len(self.embed_query("test"))
        return self._dimensions


def set_embedding_service_factory(factory: Callable[[Optional[str]], "EmbeddingService"]):
    """Override the factory used to create EmbeddingService instances."""
    global _embedding_service_factory
    _embedding_service_factory = factory


def reset_embedding_service_singleton():
    """Reset the singleton instance (useful for tests)."""
    EmbeddingService._instances = {}


def reset_embedding_service_factory():
    """Reset the embedding service factory to the default singleton creator."""
    set_embedding_service_factory(EmbeddingService)


def get_embedding_service(embedding_model: Optional[str] = None) -> EmbeddingService:
    """Get the embedding service via the current factory."""
    return _embedding_service_factory(embedding_model)


# Initialize the default factory
reset_embedding_service_factory()
