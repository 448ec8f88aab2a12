"""
Provider-agnostic LLM factory.

Switch provider by changing env vars, no code changes needed:
  LLM_PROVIDER=openai | gemini
  RAG_MODEL=gpt-4.1 | gemini-2.0-flash
  LLM_API_KEY=your-key
"""

from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel

from kbrag.config import get_settings
from kbrag.core.exceptions import ConfigurationError


def is_ai_configured() -> bool:
    """True when an API key for the embedding/completion backend is present."""
    return bool(get_settings().LLM_API_KEY)


def _require_api_key() -> str:
    settings = get_settings()
    if not settings.LLM_API_KEY:
        raise ConfigurationError(
            "Missing LLM_API_KEY",
            detail="Embedding and completion services need an API key.",
        )
    return settings.LLM_API_KEY


def create_llm(model: str, temperature: float, max_tokens: int) -> BaseChatModel:
    """Create a chat model for answer synthesis.

    Raises:
        ConfigurationError: If no API key is configured.
        ValueError: If provider is not supported.
    """
    settings = get_settings()
    api_key = _require_api_key()

    match settings.LLM_PROVIDER:
        case "openai":
            from langchain_openai import ChatOpenAI

            return ChatOpenAI(
                model=model,
                api_key=api_key,
                temperature=temperature,
                max_tokens=max_tokens,
            )

        case "gemini":
            from langchain_google_genai import ChatGoogleGenerativeAI

            return ChatGoogleGenerativeAI(
                model=model,
                google_api_key=api_key,
                temperature=temperature,
                max_output_tokens=max_tokens,
            )

        case _:
            raise ValueError(
                f"Unknown LLM provider: '{settings.LLM_PROVIDER}'. "
                f"Supported: openai, gemini"
            )


def create_embeddings() -> Embeddings:
    """Create an embedding model based on env configuration."""
    settings = get_settings()
    api_key = _require_api_key()

    match settings.EMBEDDING_PROVIDER:
        case "openai":
            from langchain_openai import OpenAIEmbeddings

            return OpenAIEmbeddings(
                model=settings.EMBEDDING_MODEL,
                api_key=api_key,
            )

        case "gemini":
            from langchain_google_genai import GoogleGenerativeAIEmbeddings

            return GoogleGenerativeAIEmbeddings(
                model=f"models/{settings.EMBEDDING_MODEL}",
                google_api_key=api_key,
            )

        case _:
            raise ValueError(
                f"Unknown embedding provider: '{settings.EMBEDDING_PROVIDER}'. "
                f"Supported: openai, gemini"
            )
