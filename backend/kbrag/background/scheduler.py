"""
Background scheduler for the RAG queue worker.

The polling job is what guarantees queued items get processed; the HTTP
wake signal sent at submission time only shortens the wait.
"""

import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from kbrag.background.rag_worker import run_queue_worker
from kbrag.config import get_settings

logger = logging.getLogger(__name__)

# Singleton scheduler instance
scheduler = AsyncIOScheduler()

POLL_JOB_ID = "rag_queue_poll"


async def poll_queue():
    """Callback for APScheduler: drain one batch of the ingestion queue."""
    try:
        await asyncio.to_thread(run_queue_worker)
    except Exception as e:
        logger.error(f"Queue poll failed: {e}", exc_info=True)


def init_scheduler():
    """Register the queue poll job and start the scheduler.

    Called during FastAPI lifespan startup.
    """
    settings = get_settings()
    if not settings.WORKER_ENABLED:
        logger.info("Queue worker disabled (WORKER_ENABLED=false)")
        return

    scheduler.add_job(
        poll_queue,
        "interval",
        seconds=max(1, settings.WORKER_POLL_SECONDS),
        id=POLL_JOB_ID,
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started: polling ingestion queue every {settings.WORKER_POLL_SECONDS}s")


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler shut down.")
