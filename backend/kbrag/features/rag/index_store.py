"""
RAG feature: Chunk index on Supabase (pgvector).

Table `rag_chunks` (unique on scope_id, source_path, chunk_index) plus the
`match_rag_chunks` RPC for threshold-filtered cosine similarity search.
"""

import logging
from collections import Counter
from typing import Sequence

from supabase import Client

from kbrag.core.exceptions import IndexStoreError
from kbrag.features.rag.chunker import TextChunk
from kbrag.features.rag.schemas import DocumentChunk

logger = logging.getLogger(__name__)

CHUNKS_TABLE = "rag_chunks"
MATCH_RPC = "match_rag_chunks"
INSERT_BATCH_SIZE = 50

CONTEXT_COLUMNS = "source_path, chunk_index, content, created_at"


class ChunkStore:
    """Chunk persistence and similarity search scoped to an organization."""

    def __init__(self, db: Client):
        self.db = db

    def replace_source(
        self,
        scope_id: str,
        source_path: str,
        chunks: Sequence[TextChunk],
        vectors: Sequence[list[float]],
    ) -> int:
        """Idempotently replace every chunk of one source.

        Existing rows are deleted first, so retried or duplicate queue items
        never leave duplicates or orphans behind.

        Returns:
            Number of chunk rows written.
        """
        if len(chunks) != len(vectors):
            raise IndexStoreError(
                "Chunk/vector count mismatch",
                detail=f"{len(chunks)} chunks, {len(vectors)} vectors",
            )

        self.delete_source(scope_id, source_path)

        rows = [
            DocumentChunk(
                scope_id=scope_id,
                source_path=source_path,
                chunk_index=position,
                content=chunk.text,
                embedding=vector,
            ).model_dump(exclude_none=True)
            for position, (chunk, vector) in enumerate(zip(chunks, vectors))
        ]
        try:
            for i in range(0, len(rows), INSERT_BATCH_SIZE):
                self.db.table(CHUNKS_TABLE).insert(rows[i:i + INSERT_BATCH_SIZE]).execute()
        except Exception as e:
            raise IndexStoreError(f"Failed to store chunks for {source_path}", detail=str(e)) from e

        logger.info(f"Stored {len(rows)} chunks for {scope_id}:{source_path}")
        return len(rows)

    def delete_source(self, scope_id: str, source_path: str) -> int:
        """Delete all chunks of one source. Returns the number of rows removed."""
        try:
            res = (
                self.db.table(CHUNKS_TABLE)
                .delete()
                .eq("scope_id", scope_id)
                .eq("source_path", source_path)
                .execute()
            )
        except Exception as e:
            raise IndexStoreError(f"Failed to delete chunks for {source_path}", detail=str(e)) from e
        return len(res.data or [])

    def match(self, scope_id: str, vector: list[float], k: int, threshold: float) -> list[dict]:
        """Similarity search restricted to one scope, best match first."""
        try:
            res = self.db.rpc(
                MATCH_RPC,
                {
                    "query_embedding": vector,
                    "in_scope_id": scope_id,
                    "match_count": max(1, int(k)),
                    "similarity_threshold": max(0.0, min(1.0, float(threshold))),
                },
            ).execute()
        except Exception as e:
            raise IndexStoreError("Similarity search failed", detail=str(e)) from e
        return res.data or []

    def recent(self, scope_id: str, k: int) -> list[dict]:
        """The k most recently ingested chunks of a scope."""
        try:
            res = (
                self.db.table(CHUNKS_TABLE)
                .select(CONTEXT_COLUMNS)
                .eq("scope_id", scope_id)
                .order("created_at", desc=True)
                .limit(max(1, int(k)))
                .execute()
            )
        except Exception as e:
            raise IndexStoreError("Failed to load recent chunks", detail=str(e)) from e
        return res.data or []

    def count_by_source(self, scope_id: str, paths: list[str]) -> dict[str, int]:
        if not paths:
            return {}
        try:
            res = (
                self.db.table(CHUNKS_TABLE)
                .select("source_path")
                .eq("scope_id", scope_id)
                .in_("source_path", paths)
                .execute()
            )
        except Exception as e:
            raise IndexStoreError("Failed to count chunks", detail=str(e)) from e
        return dict(Counter(row["source_path"] for row in res.data or []))
