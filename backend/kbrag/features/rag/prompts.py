"""
RAG feature: System instructions and context formatting.
"""

from kbrag.features.rag.schemas import RagMode

MODE_INSTRUCTIONS = {
    RagMode.STRICT: (
        "Answer only from the provided context. "
        "Do not supplement with outside knowledge; if the context does not "
        "contain the answer, say so."
    ),
    RagMode.HYBRID: (
        "Prefer the provided context; if it is incomplete, you may supplement "
        "with general best practices and next steps, and say which parts are not "
        "from the documents."
    ),
    RagMode.OPEN: (
        "Be a helpful assistant; use the context when it is relevant, it is optional."
    ),
}

ANSWER_STYLE = (
    "Synthesize an answer using relevant snippets (from multiple documents if needed). "
    "Cite inline as [file:chunk] and include a short Sources list. "
    "Keep answers concise and student-friendly."
)

NO_CONTENT_ANSWER = (
    "No documents have been indexed for this organization yet, so there is "
    "nothing to answer from."
)

AI_UNAVAILABLE_ANSWER = (
    "I found documents for this organization, but the AI service is temporarily unavailable."
)


def build_system_prompt(mode: RagMode, guidelines: str = "") -> str:
    """System instruction whose strictness matches the retrieval mode."""
    parts = []
    if guidelines.strip():
        parts.append(f"Guidelines: {guidelines.strip()}\n")
    parts.append(MODE_INSTRUCTIONS[mode])
    parts.append(ANSWER_STYLE)
    return " ".join(parts).strip()


def format_contexts(contexts: list[dict]) -> str:
    return "\n\n---\n\n".join(
        f"Source: {c.get('source_path')} [{c.get('chunk_index')}]\n{c.get('content', '')}"
        for c in contexts
    )


def build_user_message(context_text: str, question: str) -> str:
    return f"Context:\n{context_text}\n\nQuestion: {question}"
