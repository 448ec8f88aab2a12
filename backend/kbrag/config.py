"""
Application configuration using Pydantic Settings.
All config is loaded from environment variables / .env file.
"""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    # ── App ──────────────────────────────────────────────
    APP_NAME: str = "kbrag"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"  # comma-separated

    # ── Supabase ─────────────────────────────────────────
    SUPABASE_URL: str = ""
    SUPABASE_KEY: str = ""  # anon/public key
    SUPABASE_SERVICE_KEY: str = ""  # service_role key (worker + storage admin ops)

    # ── Security ─────────────────────────────────────────
    JWT_SECRET_KEY: str = ""
    JWT_ALGORITHM: str = "HS256"

    # ── LLM (Provider-Agnostic) ──────────────────────────
    LLM_PROVIDER: str = "openai"  # openai | gemini
    LLM_API_KEY: str = ""
    RAG_MODEL: str = "gpt-4.1"
    RAG_ALLOWED_MODELS: str = "gpt-4.1,gpt-4.1-mini,gpt-4o,gpt-4o-mini"  # comma-separated
    RAG_MAX_TOKENS: int = 400

    # ── Embedding ────────────────────────────────────────
    EMBEDDING_PROVIDER: str = "openai"
    EMBEDDING_MODEL: str = "text-embedding-3-small"
    EMBEDDING_DIMENSIONS: int = 1536
    EMBEDDING_BATCH_SIZE: int = 15  # Small batches to respect rate limits

    # ── Platform limits ──────────────────────────────────
    SERVERLESS: bool = False  # Hard per-invocation execution time limit
    FETCH_TIMEOUT_SECONDS: float = 20.0
    SERVERLESS_FETCH_TIMEOUT_SECONDS: float = 8.0
    SERVERLESS_MAX_FILES: int = 10
    SERVERLESS_MAX_LINKS: int = 1

    # ── RAG defaults (scope overrides live in rag_settings) ──
    RAG_BUCKET: str = "school-ai"
    RAG_MODE: str = "hybrid"  # strict | hybrid | open
    RAG_TOP_K: int = 12
    RAG_THRESHOLD: float = 0.7
    RAG_TEMPERATURE: float = 0.2
    RAG_CHUNK_SIZE: int = 1200
    RAG_CHUNK_OVERLAP: int = 150

    # ── Queue worker ─────────────────────────────────────
    WORKER_ENABLED: bool = True
    WORKER_URL: str = ""  # Defaults to {PUBLIC_BASE_URL}/api/rag/worker/run
    PUBLIC_BASE_URL: str = "http://localhost:8000"
    WORKER_WAKE_TIMEOUT_SECONDS: float = 3.0
    WORKER_POLL_SECONDS: int = 30
    WORKER_BATCH_LIMIT: int = 3

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore",
    }

    @property
    def fetch_timeout(self) -> float:
        """Fetch deadline for one source, tighter under a serverless time limit."""
        if self.SERVERLESS:
            return self.SERVERLESS_FETCH_TIMEOUT_SECONDS
        return self.FETCH_TIMEOUT_SECONDS

    @property
    def allowed_models(self) -> list[str]:
        return list(dict.fromkeys(m.strip() for m in self.RAG_ALLOWED_MODELS.split(",") if m.strip()))

    @property
    def worker_url(self) -> str:
        if self.WORKER_URL:
            return self.WORKER_URL
        return self.PUBLIC_BASE_URL.rstrip("/") + "/api/rag/worker/run"


@lru_cache
def get_settings() -> Settings:
    """Cached settings instance (singleton)."""
    return Settings()
