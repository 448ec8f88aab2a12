"""
RAG feature: Per-source indexing pipeline.

normalize → chunk → embed → store, for one source at a time. Used by both the
foreground request path and the background queue worker.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from supabase import Client

from kbrag.config import get_settings
from kbrag.core.exceptions import AppBaseError, ConfigurationError
from kbrag.features.rag.chunker import chunk_text
from kbrag.features.rag.embedding import embed_texts
from kbrag.features.rag.index_store import ChunkStore
from kbrag.features.rag.jobs import JobStore
from kbrag.features.rag.normalizer import ContentNormalizer
from kbrag.features.rag.schemas import (
    ItemStatus,
    JobType,
    LinkStatus,
    QueueItem,
    SourceDescriptor,
)

logger = logging.getLogger(__name__)

LINKS_TABLE = "rag_links"


@dataclass
class IndexOutcome:
    source_path: str
    chunks: int = 0
    empty: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class IngestionPipeline:
    """Indexes single sources and settles their queue items."""

    def __init__(
        self,
        db: Client,
        normalizer: ContentNormalizer | None = None,
        chunks: ChunkStore | None = None,
        jobs: JobStore | None = None,
    ):
        self.db = db
        self.normalizer = normalizer or ContentNormalizer(db)
        self.chunks = chunks or ChunkStore(db)
        self.jobs = jobs or JobStore(db)

    def index_source(
        self, scope_id: str, source: SourceDescriptor, timeout: float | None = None
    ) -> IndexOutcome:
        """Index one source, replacing any chunks it already has.

        Raises:
            AppBaseError subclasses for fetch, embedding and store failures.
        """
        settings = get_settings()
        content = self.normalizer.normalize(source, timeout=timeout)
        if content.is_empty:
            logger.warning(f"No parsable text for {source.source_path} (kind={content.kind.value})")
            return IndexOutcome(source.source_path, empty=True)

        # Files keep fixed windows; links get boundary-aware splitting with overlap
        if source.kind == JobType.LINK:
            pieces = chunk_text(
                content.text,
                max_chars=settings.RAG_CHUNK_SIZE,
                overlap=settings.RAG_CHUNK_OVERLAP,
                strategy="recursive",
            )
        else:
            pieces = chunk_text(content.text, max_chars=settings.RAG_CHUNK_SIZE)

        vectors = embed_texts([p.text for p in pieces])
        written = self.chunks.replace_source(scope_id, source.source_path, pieces, vectors)
        return IndexOutcome(source.source_path, chunks=written)

    def process_item(self, item: QueueItem, timeout: float | None = None) -> IndexOutcome:
        """Run one claimed item to a terminal state.

        A source failure is recorded on the item and never propagates to
        siblings.

        Raises:
            ConfigurationError: Credentials are missing; the item and its job fail.
            IndexStoreError: A status write failed.
        """
        source = item.source
        if source.kind == JobType.LINK:
            self._set_link_status(item.scope_id, source.url, LinkStatus.INDEXING)

        try:
            outcome = self.index_source(item.scope_id, source, timeout=timeout)
        except ConfigurationError as e:
            self.jobs.settle_item(item.id, ItemStatus.ERROR, f"ConfigurationError: {e.message}")
            if item.job_id:
                self.jobs.fail_job(item.job_id)
            raise
        except AppBaseError as e:
            message = f"{type(e).__name__}: {e.message}"
            logger.warning(f"Indexing failed for {source.source_path}: {message} ({e.detail})")
            outcome = IndexOutcome(source.source_path, error=message)
        except Exception as e:
            logger.error(f"Unexpected error indexing {source.source_path}: {e}", exc_info=True)
            outcome = IndexOutcome(source.source_path, error=str(e) or type(e).__name__)

        status = ItemStatus.DONE if outcome.ok else ItemStatus.ERROR
        self.jobs.settle_item(item.id, status, outcome.error)

        if source.kind == JobType.LINK:
            link_status = LinkStatus.INDEXED if outcome.ok and not outcome.empty else LinkStatus.ERROR
            self._set_link_status(item.scope_id, source.url, link_status)

        if item.job_id:
            self.jobs.refresh_progress(item.job_id)
        return outcome

    def _set_link_status(self, scope_id: str, url: str, status: LinkStatus) -> None:
        try:
            (
                self.db.table(LINKS_TABLE)
                .update({
                    "status": status.value,
                    "last_crawled_at": datetime.now(timezone.utc).isoformat(),
                })
                .eq("scope_id", scope_id)
                .eq("url", url)
                .execute()
            )
        except Exception as e:
            logger.warning(f"Could not update link status for {url}: {e}")
