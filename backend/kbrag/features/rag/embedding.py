"""
RAG feature: Embedding utility functions.
Wraps the provider's embedding model behind a process-wide singleton.
"""

import logging
import threading

from kbrag.config import get_settings
from kbrag.core.exceptions import EmbeddingServiceError
from kbrag.core.llm_provider import create_embeddings

logger = logging.getLogger(__name__)

# Singleton embedding model (lazy, init-once)
_embeddings_model = None
_embeddings_lock = threading.Lock()

# Inputs beyond this are truncated before embedding
MAX_EMBED_CHARS = 8000


def get_embeddings_model():
    """Get or create the shared embeddings model instance."""
    global _embeddings_model
    if _embeddings_model is None:
        with _embeddings_lock:
            if _embeddings_model is None:
                _embeddings_model = create_embeddings()
    return _embeddings_model


def reset_embeddings_model() -> None:
    """Drop the cached model (used after settings change and in tests)."""
    global _embeddings_model
    with _embeddings_lock:
        _embeddings_model = None


def embed_text(text: str) -> list[float]:
    """Generate embedding vector for a single text string.

    Raises:
        EmbeddingServiceError: If the service call fails or returns no vector.
    """
    settings = get_settings()
    model = get_embeddings_model()
    try:
        vector = model.embed_query(text[:MAX_EMBED_CHARS])
    except Exception as e:
        raise EmbeddingServiceError("Failed to embed text", detail=str(e)) from e
    if not vector:
        raise EmbeddingServiceError("Embedding response missing vector")
    return list(vector)[:settings.EMBEDDING_DIMENSIONS]


def embed_texts(texts: list[str]) -> list[list[float]]:
    """Generate embedding vectors for multiple texts, in configured batch sizes.

    Returns:
        One vector per input, in input order.
    """
    settings = get_settings()
    model = get_embeddings_model()
    dim = settings.EMBEDDING_DIMENSIONS
    batch_size = max(1, settings.EMBEDDING_BATCH_SIZE)

    vectors: list[list[float]] = []
    for i in range(0, len(texts), batch_size):
        batch = [t[:MAX_EMBED_CHARS] for t in texts[i:i + batch_size]]
        try:
            batch_vectors = model.embed_documents(batch)
        except Exception as e:
            raise EmbeddingServiceError(
                f"Failed to embed batch {i // batch_size + 1}", detail=str(e)
            ) from e
        vectors.extend(list(v)[:dim] for v in batch_vectors)

    if len(vectors) != len(texts):
        raise EmbeddingServiceError(
            "Mismatch between number of chunks and generated vectors",
            detail=f"{len(texts)} texts, {len(vectors)} vectors",
        )
    return vectors
