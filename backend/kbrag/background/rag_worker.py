"""
Background queue worker for RAG ingestion.

Runs in any number of processes at once (HTTP wake signal, polling loop).
Every candidate item is claimed with a conditional update first; a lost
claim just means another worker owns it.
"""

import logging

from supabase import Client

from kbrag.config import get_settings
from kbrag.core.database import get_supabase_client
from kbrag.core.exceptions import IndexStoreError
from kbrag.features.rag.embedding import get_embeddings_model
from kbrag.features.rag.jobs import JobStore
from kbrag.features.rag.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


def run_queue_worker(
    limit: int | None = None,
    db: Client | None = None,
    pipeline: IngestionPipeline | None = None,
) -> dict[str, int]:
    """Claim and process up to `limit` queued items.

    Returns:
        Counts of claimed, done and failed items.

    Raises:
        ConfigurationError: No embedding backend is configured.
    """
    settings = get_settings()
    db = db or get_supabase_client()
    jobs = pipeline.jobs if pipeline else JobStore(db)
    pipeline = pipeline or IngestionPipeline(db, jobs=jobs)

    stats = {"claimed": 0, "done": 0, "error": 0}
    candidates = jobs.next_queued(limit or settings.WORKER_BATCH_LIMIT)
    if candidates:
        # Missing credentials leave the queue untouched for a later run
        get_embeddings_model()

    for candidate in candidates:
        try:
            item = jobs.claim_item(candidate.id)
            if item is None:
                continue
            stats["claimed"] += 1
            if item.job_id:
                jobs.mark_job_running(item.job_id)
            outcome = pipeline.process_item(item)
        except IndexStoreError as e:
            stats["error"] += 1
            logger.error(f"Queue item {candidate.id} not recorded: {e.message} ({e.detail})")
            continue

        if outcome.ok:
            stats["done"] += 1
        else:
            stats["error"] += 1

    if stats["claimed"]:
        logger.info(
            f"Queue worker processed {stats['claimed']} item(s): "
            f"{stats['done']} done, {stats['error']} failed"
        )
    return stats
