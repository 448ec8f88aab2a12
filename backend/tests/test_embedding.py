"""Unit tests for the embeddings singleton and batching."""

import threading

import pytest

from kbrag.core.exceptions import ConfigurationError, EmbeddingServiceError
from kbrag.features.rag import embedding as embedding_module
from kbrag.features.rag.embedding import embed_text, embed_texts, get_embeddings_model


class TestSingleton:
    def test_model_created_once_across_threads(self, monkeypatch):
        created = []

        def factory():
            created.append(1)
            return object()

        monkeypatch.setattr(embedding_module, "_embeddings_model", None)
        monkeypatch.setattr(embedding_module, "create_embeddings", factory)

        results = []
        threads = [threading.Thread(target=lambda: results.append(get_embeddings_model())) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(created) == 1
        assert len({id(r) for r in results}) == 1

    def test_missing_key_is_configuration_error(self, monkeypatch, configure):
        configure(LLM_API_KEY="")
        monkeypatch.setattr(embedding_module, "_embeddings_model", None)
        with pytest.raises(ConfigurationError):
            get_embeddings_model()


class TestBatching:
    def test_batches_by_configured_size(self, embeddings, configure):
        configure(EMBEDDING_BATCH_SIZE="2")
        vectors = embed_texts(["a", "b", "c", "d", "e"])
        assert len(vectors) == 5
        assert [len(batch) for batch in embeddings.document_calls] == [2, 2, 1]

    def test_vectors_truncated_to_dimensions(self, embeddings, configure):
        configure(EMBEDDING_DIMENSIONS="16")
        assert len(embed_text("hello")) == 16

    def test_backend_failure_wrapped(self, embeddings):
        embeddings.fail = True
        with pytest.raises(EmbeddingServiceError):
            embed_texts(["a"])
