"""
RAG feature: Retrieval and grounded answering.

ask(scope, question):
  1. Resolve RagConfig: request > scope override > global default > hardcoded.
  2. No AI backend → recent chunks as contexts, literal passthrough answer.
  3. Embed question → threshold-filtered similarity search in the scope.
     Zero matches (or a failed embedding/search) → most recent chunks.
  4. Mode-dependent system instruction, allow-listed model, capped tokens.
  5. Persist the question/answer pair as a scoped transcript.
"""

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Callable

from langchain_core.messages import HumanMessage, SystemMessage
from supabase import Client

from kbrag.config import Settings, get_settings
from kbrag.core.exceptions import EmbeddingServiceError, IndexStoreError, ValidationError
from kbrag.core.llm_provider import create_llm, is_ai_configured
from kbrag.features.rag.embedding import embed_text
from kbrag.features.rag.index_store import ChunkStore
from kbrag.features.rag.prompts import (
    AI_UNAVAILABLE_ANSWER,
    NO_CONTENT_ANSWER,
    build_system_prompt,
    build_user_message,
    format_contexts,
)
from kbrag.features.rag.schemas import AskResult, RagMode

logger = logging.getLogger(__name__)

SETTINGS_TABLE = "rag_settings"
CHATS_TABLE = "rag_chats"

DEFAULT_MODEL = "gpt-4.1"
PASSTHROUGH_MAX_CHARS = 1200


@dataclass(frozen=True)
class RagConfig:
    mode: RagMode = RagMode.HYBRID
    k: int = 12
    threshold: float = 0.7
    model: str = DEFAULT_MODEL
    temperature: float = 0.2
    instructions: str = ""


HARDCODED_CONFIG = RagConfig()


def _coerce(name: str, value: Any) -> Any:
    """Validated value for one config field, or None to defer to the lower layer."""
    if value is None:
        return None
    try:
        match name:
            case "mode":
                return value if isinstance(value, RagMode) else RagMode(str(value).lower())
            case "k":
                return max(1, int(value))
            case "threshold":
                return max(0.0, min(1.0, float(value)))
            case "temperature":
                return max(0.0, min(2.0, float(value)))
            case "model" | "instructions":
                return str(value).strip() or None
    except (TypeError, ValueError):
        return None
    return None


def _apply_layer(config: RagConfig, layer: dict | None) -> RagConfig:
    if not layer:
        return config
    changes = {}
    for f in fields(RagConfig):
        value = _coerce(f.name, layer.get(f.name))
        if value is not None:
            changes[f.name] = value
    return replace(config, **changes)


def global_layer(settings: Settings) -> dict:
    return {
        "mode": settings.RAG_MODE,
        "k": settings.RAG_TOP_K,
        "threshold": settings.RAG_THRESHOLD,
        "model": settings.RAG_MODEL,
        "temperature": settings.RAG_TEMPERATURE,
    }


def resolve_config(
    scope_override: dict | None = None,
    request_override: dict | None = None,
    settings: Settings | None = None,
) -> RagConfig:
    """Layer request > scope override > global default > hardcoded default."""
    settings = settings or get_settings()
    config = _apply_layer(HARDCODED_CONFIG, global_layer(settings))
    config = _apply_layer(config, scope_override)
    return _apply_layer(config, request_override)


def select_model(requested: str | None, allowed: list[str], default: str = DEFAULT_MODEL) -> str:
    """Requested model if allow-listed, else the default.

    A default outside a non-empty allow-list is replaced by the first
    allowed model.
    """
    if requested and requested in allowed:
        return requested
    if allowed and default not in allowed:
        default = allowed[0]
    if requested:
        logger.warning(f"Model '{requested}' not allowed, using {default}")
    return default


def _message_text(content) -> str:
    if isinstance(content, list):
        return "\n".join(
            part["text"] if isinstance(part, dict) else str(part)
            for part in content
            if isinstance(part, str) or (isinstance(part, dict) and "text" in part)
        ).strip()
    return str(content or "").strip()


def _passthrough_answer(contexts: list[dict]) -> str:
    snippet = "\n\n---\n\n".join(c.get("content", "") for c in contexts)[:PASSTHROUGH_MAX_CHARS]
    return snippet or AI_UNAVAILABLE_ANSWER


class RetrievalService:
    """Answers questions from a scope's indexed chunks."""

    def __init__(
        self,
        db: Client,
        chunks: ChunkStore | None = None,
        llm_factory: Callable = create_llm,
        ai_configured: Callable[[], bool] = is_ai_configured,
    ):
        self.db = db
        self.chunks = chunks or ChunkStore(db)
        self.llm_factory = llm_factory
        self.ai_configured = ai_configured

    def load_scope_override(self, scope_id: str) -> dict:
        """Scope's rag_settings row as a config layer (config json + instructions)."""
        try:
            res = (
                self.db.table(SETTINGS_TABLE)
                .select("config, instructions")
                .eq("scope_id", scope_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.warning(f"Could not load RAG settings for {scope_id}: {e}")
            return {}
        if not res.data:
            return {}
        row = res.data[0]
        layer = dict(row.get("config") or {}) if isinstance(row.get("config"), dict) else {}
        if row.get("instructions"):
            layer["instructions"] = row["instructions"]
        return layer

    def ask(
        self,
        scope_id: str,
        question: str,
        user_id: str | None = None,
        overrides: dict | None = None,
    ) -> AskResult:
        if not scope_id or not (question or "").strip():
            raise ValidationError("scope_id and question required")

        settings = get_settings()
        config = resolve_config(self.load_scope_override(scope_id), overrides, settings)

        if not self.ai_configured():
            contexts = self.chunks.recent(scope_id, config.k)
            answer = _passthrough_answer(contexts) if contexts else NO_CONTENT_ANSWER
            result = AskResult(
                answer=answer,
                contexts=contexts,
                mode=config.mode,
                fallback="no_ai" if contexts else "empty",
            )
            self._save_transcript(scope_id, user_id, question, result.answer)
            return result

        contexts, fallback = self._retrieve(scope_id, question, config)
        if not contexts:
            result = AskResult(answer=NO_CONTENT_ANSWER, contexts=[], mode=config.mode, fallback="empty")
            self._save_transcript(scope_id, user_id, question, result.answer)
            return result

        model = select_model(config.model, settings.allowed_models, settings.RAG_MODEL)
        messages = [
            SystemMessage(content=build_system_prompt(config.mode, config.instructions)),
            HumanMessage(content=build_user_message(format_contexts(contexts), question)),
        ]
        try:
            llm = self.llm_factory(model, config.temperature, settings.RAG_MAX_TOKENS)
            response = llm.invoke(messages)
            answer = _message_text(response.content)
        except Exception as e:
            logger.error(f"Completion failed for {scope_id} ({model}): {e}", exc_info=True)
            answer, fallback = _passthrough_answer(contexts), "no_ai"

        result = AskResult(
            answer=answer or _passthrough_answer(contexts),
            contexts=contexts,
            mode=config.mode,
            model=model,
            fallback=fallback,
        )
        self._save_transcript(scope_id, user_id, question, result.answer)
        return result

    def _retrieve(self, scope_id: str, question: str, config: RagConfig) -> tuple[list[dict], str | None]:
        """Similarity matches, or recent chunks when there are none."""
        matches: list[dict] = []
        try:
            vector = embed_text(question)
            matches = self.chunks.match(scope_id, vector, config.k, config.threshold)
        except (EmbeddingServiceError, IndexStoreError) as e:
            logger.warning(f"Similarity search unavailable for {scope_id}, using recent chunks: {e.message}")

        if matches:
            return [{k: v for k, v in m.items() if k != "embedding"} for m in matches], None

        recent = self.chunks.recent(scope_id, config.k)
        return recent, "recent" if recent else "empty"

    def _save_transcript(self, scope_id: str, user_id: str | None, question: str, answer: str) -> None:
        try:
            self.db.table(CHATS_TABLE).insert([
                {"scope_id": scope_id, "role": "user", "content": question, "user_id": user_id},
                {"scope_id": scope_id, "role": "assistant", "content": answer, "user_id": user_id},
            ]).execute()
        except Exception as e:
            logger.warning(f"Could not store transcript for {scope_id}: {e}")
