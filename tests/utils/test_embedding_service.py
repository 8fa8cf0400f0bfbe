"""
Unit tests for EmbeddingService.

Tests singleton pattern, the text-encoder interface and dimension probing.
"""
import pytest
import numpy as np
from unittest.mock import MagicMock, patch
from boltindex.utils.embeddings import (
    DEFAULT_EMBEDDING_MODEL,
    EmbeddingService,
    get_embedding_service,
    reset_embedding_service_factory,
    reset_embedding_service_singleton,
    set_embedding_service_factory,
)


@pytest.fixture(autouse=True)
def reset_embedding_service_state():
    """Ensure the singleton and factory are clean between tests."""
    reset_embedding_service_singleton()
    reset_embedding_service_factory()
    yield
    reset_embedding_service_singleton()
    reset_embedding_service_factory()


@pytest.fixture
def mock_text_embedding():
    with patch("boltindex.utils.embeddings.TextEmbedding") as mock:
        yield mock


class TestEmbeddingService:
    """Test suite for EmbeddingService."""

    def test_singleton_pattern_same_model(self, mock_text_embedding):
        service1 = EmbeddingService()
        service2 = EmbeddingService(DEFAULT_EMBEDDING_MODEL)

        assert service1 is service2
        assert mock_text_embedding.call_count == 1

    def test_different_models_create_distinct_instances(self, mock_text_embedding):
        default_service = EmbeddingService()
        other_service = EmbeddingService("BAAI/bge-base-en-v1.5")

        assert default_service is not other_service
        mock_text_embedding.assert_called_with(model_name="BAAI/bge-base-en-v1.5")

    def test_initialization_with_default_model(self, mock_text_embedding):
        EmbeddingService()

        mock_text_embedding.assert_called_once_with(model_name="BAAI/bge-small-en-v1.5")

    def test_encode_is_embed_query(self, mock_text_embedding):
        mock_embedder = MagicMock()
        mock_embedder.embed.return_value = [np.array([0.1, 0.2, 0.3])]
        mock_text_embedding.return_value = mock_embedder

        service = EmbeddingService()
        result = service.encode("a description")

        assert result == [0.1, 0.2, 0.3]
        mock_embedder.embed.assert_called_once_with(["a description"])

    def test_get_dimensions_computed_once(self, mock_text_embedding):
        mock_embedder = MagicMock()
        mock_embedder.embed.side_effect = lambda texts: [np.zeros(384) for _ in texts]
        mock_text_embedding.return_value = mock_embedder

        service = EmbeddingService()

        assert service.get_dimensions() == 384
        assert service.get_dimensions() == 384
        assert mock_embedder.embed.call_count == 1


class TestEmbeddingServiceFactory:

    def test_factory_override(self):
        fake = MagicMock()
        set_embedding_service_factory(lambda model: fake)

        assert get_embedding_service() is fake

    def test_default_factory_returns_singleton(self, mock_text_embedding):
        assert get_embedding_service() is get_embedding_service()
        assert mock_text_embedding.call_count == 1
