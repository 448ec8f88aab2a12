"""
RAG feature: Ingestion orchestration.

Decides per submission between two paths that share only persisted state:
  - background: job `queued`, one queue item per source, a best-effort wake
    signal to the worker, immediate "accepted" response. The worker's own
    polling loop is what guarantees the items get processed.
  - foreground: every item is claimed, indexed and settled inside the
    request; one failing source never stops the others.
"""

import logging
from typing import Callable, Sequence

import httpx
from supabase import Client

from kbrag.config import get_settings
from kbrag.core.exceptions import AppBaseError, IndexStoreError, ValidationError
from kbrag.features.rag.embedding import get_embeddings_model
from kbrag.features.rag.jobs import JobStore
from kbrag.features.rag.normalizer import validate_link
from kbrag.features.rag.pipeline import LINKS_TABLE, IngestionPipeline
from kbrag.features.rag.schemas import (
    JobProgress,
    JobStatus,
    JobType,
    SourceDescriptor,
    SourceLink,
    SubmitResult,
)

logger = logging.getLogger(__name__)

MAX_STORAGE_LIST = 1000
MIN_LINK_TIMEOUT_MS = 3000
MAX_LINK_TIMEOUT_MS = 15000


async def notify_worker(limit: int | None = None) -> bool:
    """Wake the queue worker. Latency optimization only; never raises.

    Returns:
        True if the worker acknowledged the request.
    """
    settings = get_settings()
    params = {"limit": limit or settings.WORKER_BATCH_LIMIT}
    headers = {}
    if settings.SUPABASE_SERVICE_KEY:
        headers["Authorization"] = f"Bearer {settings.SUPABASE_SERVICE_KEY}"
    try:
        async with httpx.AsyncClient(timeout=settings.WORKER_WAKE_TIMEOUT_SECONDS) as client:
            response = await client.get(settings.worker_url, params=params, headers=headers)
            response.raise_for_status()
        return True
    except httpx.HTTPError as e:
        logger.warning(f"Worker wake signal failed (non-critical): {e!r}")
        return False


def _scoped_path(scope_id: str, path: str) -> str:
    path = str(path).lstrip("/")
    return path if path.startswith(f"{scope_id}/") else f"{scope_id}/{path}"


class IngestionService:
    """submit_ingestion and the batch entry points built on it."""

    def __init__(
        self,
        db: Client,
        pipeline: IngestionPipeline | None = None,
        jobs: JobStore | None = None,
        notifier: Callable[[], None] | None = None,
    ):
        self.db = db
        self.jobs = jobs or JobStore(db)
        self.pipeline = pipeline or IngestionPipeline(db, jobs=self.jobs)
        self.notifier = notifier

    def should_queue(self, background_preferred: bool | None) -> bool:
        """Queue only under a hard execution-time limit; default yes there."""
        if not get_settings().SERVERLESS:
            return False
        return background_preferred is not False

    def submit_ingestion(
        self,
        scope_id: str,
        sources: Sequence[SourceDescriptor],
        job_type: JobType,
        background_preferred: bool | None = None,
        meta: dict | None = None,
        timeout: float | None = None,
    ) -> SubmitResult:
        """Create a job for a batch of sources and either queue or run it.

        Raises:
            ValidationError: Missing scope.
            ConfigurationError: No embedding backend is configured.
            IndexStoreError: The job record could not be created.
        """
        if not scope_id:
            raise ValidationError("scope_id required")
        if self.should_queue(background_preferred):
            return self._submit_background(scope_id, sources, job_type, meta)
        return self._run_foreground(scope_id, sources, job_type, meta, timeout)

    def _submit_background(
        self,
        scope_id: str,
        sources: Sequence[SourceDescriptor],
        job_type: JobType,
        meta: dict | None,
    ) -> SubmitResult:
        # Missing credentials fail before any job exists
        get_embeddings_model()
        job = self.jobs.create_job(scope_id, job_type, len(sources), JobStatus.QUEUED, meta)
        try:
            self.jobs.enqueue(job, sources)
        except AppBaseError:
            self._abandon_job(job.id)
            raise
        logger.info(f"Queued job {job.id}: {len(sources)} {job_type.value} source(s) for {scope_id}")
        self._wake_worker()
        return SubmitResult(queued=True, job_id=job.id, total=len(sources))

    def _run_foreground(
        self,
        scope_id: str,
        sources: Sequence[SourceDescriptor],
        job_type: JobType,
        meta: dict | None,
        timeout: float | None,
    ) -> SubmitResult:
        # Missing credentials fail before any job exists
        get_embeddings_model()
        job = self.jobs.create_job(scope_id, job_type, len(sources), JobStatus.RUNNING, meta)
        try:
            items = self.jobs.enqueue(job, sources)
        except AppBaseError:
            self._abandon_job(job.id)
            raise

        processed = 0
        indexed = 0
        lost_writes = 0
        for item in items:
            try:
                claimed = self.jobs.claim_item(item.id)
                if claimed is None:
                    # Picked up by a background worker in the meantime
                    continue
                outcome = self.pipeline.process_item(claimed, timeout=timeout)
            except IndexStoreError as e:
                lost_writes += 1
                logger.error(f"Foreground job {job.id}: item {item.id} not recorded: {e.message} ({e.detail})")
                continue
            processed += 1
            indexed += outcome.chunks

        try:
            progress = self.jobs.refresh_progress(job.id)
        except IndexStoreError:
            self._abandon_job(job.id)
            raise
        if lost_writes and progress.status != JobStatus.COMPLETED:
            # Unsettled items can never complete the job
            self._abandon_job(job.id)
            progress = progress.model_copy(update={"status": JobStatus.ERROR})
        logger.info(
            f"Foreground job {job.id} {progress.status.value}: "
            f"{progress.processed_count}/{progress.total_count} sources, {indexed} chunks"
        )
        return SubmitResult(
            queued=False,
            job_id=job.id,
            total=len(sources),
            processed=processed,
            indexed_chunks=indexed,
        )

    def _abandon_job(self, job_id: str) -> None:
        try:
            self.jobs.fail_job(job_id)
        except IndexStoreError as e:
            logger.error(f"Could not mark job {job_id} as failed: {e.detail}")

    def _wake_worker(self) -> None:
        if self.notifier is None:
            return
        try:
            self.notifier()
        except Exception as e:
            logger.warning(f"Could not schedule worker wake signal: {e}")

    # ── Batch entry points ───────────────────────────────

    def index_scope_files(
        self,
        scope_id: str,
        bucket: str | None = None,
        max_files: int | None = None,
        path: str | None = None,
        background_preferred: bool | None = None,
    ) -> SubmitResult:
        """Index the files stored under a scope's prefix, or one given path."""
        settings = get_settings()
        bucket = bucket or settings.RAG_BUCKET

        if path:
            targets = [SourceDescriptor.file(bucket, _scoped_path(scope_id, path))]
        else:
            files = self.db.storage.from_(bucket).list(scope_id, {"limit": MAX_STORAGE_LIST})
            targets = [
                SourceDescriptor.file(
                    bucket,
                    f"{scope_id}/{f['name']}",
                    (f.get("metadata") or {}).get("mimetype"),
                )
                for f in files or []
                if f.get("name") and not f["name"].startswith(".") and f.get("metadata")
            ]

        default_limit = settings.SERVERLESS_MAX_FILES if settings.SERVERLESS else len(targets)
        limit = max_files if max_files and max_files > 0 else default_limit
        targets = targets[:limit]

        meta = {"bucket": bucket}
        if path:
            meta["path"] = path
        return self.submit_ingestion(
            scope_id, targets, JobType.FILE, background_preferred, meta=meta
        )

    def index_links(
        self,
        scope_id: str,
        urls: list[str] | None = None,
        max_links: int | None = None,
        timeout_ms: int | None = None,
        background_preferred: bool | None = None,
    ) -> SubmitResult:
        """Index the given URLs, or the links stored for the scope."""
        settings = get_settings()
        if urls:
            candidates = [str(u).strip() for u in urls if str(u or "").strip()]
        else:
            res = (
                self.db.table(LINKS_TABLE)
                .select("url, status, created_at")
                .eq("scope_id", scope_id)
                .order("created_at", desc=True)
                .execute()
            )
            candidates = [row["url"] for row in res.data or []]

        default_limit = settings.SERVERLESS_MAX_LINKS if settings.SERVERLESS else len(candidates)
        limit = max_links if max_links and max_links > 0 else default_limit

        sources = []
        for url in candidates:
            try:
                sources.append(SourceDescriptor.link(validate_link(url)))
            except ValidationError as e:
                logger.warning(f"Skipping link {url}: {e.message}")
        sources = sources[:limit]

        default_ms = settings.SERVERLESS_FETCH_TIMEOUT_SECONDS * 1000 if settings.SERVERLESS else MAX_LINK_TIMEOUT_MS
        per_link_ms = max(MIN_LINK_TIMEOUT_MS, min(MAX_LINK_TIMEOUT_MS, timeout_ms or default_ms))

        return self.submit_ingestion(
            scope_id,
            sources,
            JobType.LINK,
            background_preferred,
            timeout=per_link_ms / 1000,
        )

    def enqueue_file(self, scope_id: str, path: str, bucket: str | None = None) -> SubmitResult:
        """Always queue a single file, regardless of platform limits."""
        bucket = bucket or get_settings().RAG_BUCKET
        full_path = _scoped_path(scope_id, path)
        source = SourceDescriptor.file(bucket, full_path)
        return self._submit_background(
            scope_id, [source], JobType.FILE, {"path": full_path, "bucket": bucket}
        )

    def enqueue_link(self, scope_id: str, url: str) -> SubmitResult:
        """Always queue a single link, resetting its tracking row to pending."""
        url = validate_link(url)
        self.db.table(LINKS_TABLE).delete().eq("scope_id", scope_id).eq("url", url).execute()
        self.db.table(LINKS_TABLE).insert(
            SourceLink(scope_id=scope_id, url=url).model_dump(mode="json", exclude_none=True)
        ).execute()
        return self._submit_background(
            scope_id, [SourceDescriptor.link(url)], JobType.LINK, {"url": url}
        )

    # ── Status ───────────────────────────────────────────

    def get_job_status(self, job_id: str) -> JobProgress:
        return self.jobs.get_progress(job_id)

    def queue_summary(self, scope_id: str) -> dict[str, int]:
        return self.jobs.queue_summary(scope_id)
