"""
RAG feature: Ingestion job & queue persistence.

Tables `rag_jobs` and `rag_queue` are the single source of truth shared by
the foreground request path and background workers in other processes.

State machines:
  job:  queued → running → completed | error
  item: queued → running → done | error

Claiming an item is a conditional update restricted to rows that are still
`queued`; Postgres applies it atomically per row, so of several concurrent
workers exactly one gets the row back.
"""

import logging
from datetime import datetime, timezone
from typing import Sequence

from supabase import Client

from kbrag.core.exceptions import IndexStoreError, NotFoundError
from kbrag.features.rag.schemas import (
    IngestionJob,
    ItemStatus,
    JobProgress,
    JobStatus,
    JobType,
    QueueItem,
    SourceDescriptor,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "rag_jobs"
QUEUE_TABLE = "rag_queue"

SETTLED_STATUSES = [ItemStatus.DONE.value, ItemStatus.ERROR.value]
OPEN_JOB_STATUSES = [JobStatus.QUEUED.value, JobStatus.RUNNING.value]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _execute(query, action: str):
    """Run a status read/write, surfacing store failures as IndexStoreError."""
    try:
        return query.execute()
    except Exception as e:
        raise IndexStoreError(f"Failed to {action}", detail=str(e)) from e


class JobStore:
    """Job/QueueItem records and their state transitions."""

    def __init__(self, db: Client):
        self.db = db

    # ── Jobs ─────────────────────────────────────────────

    def create_job(
        self,
        scope_id: str,
        job_type: JobType,
        total: int,
        status: JobStatus = JobStatus.QUEUED,
        meta: dict | None = None,
    ) -> IngestionJob:
        """Insert a job record.

        Raises:
            IndexStoreError: The job could not be created; the submission aborts.
        """
        row = {
            "scope_id": scope_id,
            "job_type": job_type.value,
            "status": status.value,
            "processed_count": 0,
            "total_count": total,
            "meta": meta or {},
        }
        try:
            res = self.db.table(JOBS_TABLE).insert(row).execute()
        except Exception as e:
            raise IndexStoreError("Failed to create ingestion job", detail=str(e)) from e
        if not res.data:
            raise IndexStoreError("Failed to create ingestion job", detail="insert returned no row")
        return IngestionJob.model_validate(res.data[0])

    def get_job(self, job_id: str) -> IngestionJob:
        res = _execute(
            self.db.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1),
            f"load job {job_id}",
        )
        if not res.data:
            raise NotFoundError("Job not found", detail=job_id)
        return IngestionJob.model_validate(res.data[0])

    def get_progress(self, job_id: str) -> JobProgress:
        job = self.get_job(job_id)
        return JobProgress(
            status=job.status,
            processed_count=job.processed_count,
            total_count=job.total_count,
        )

    def latest_job(self, scope_id: str, job_type: JobType | None = None) -> dict | None:
        query = (
            self.db.table(JOBS_TABLE)
            .select("id, job_type, status, processed_count, total_count, created_at, finished_at")
            .eq("scope_id", scope_id)
        )
        if job_type:
            query = query.eq("job_type", job_type.value)
        res = _execute(query.order("created_at", desc=True).limit(1), f"load latest job of {scope_id}")
        return res.data[0] if res.data else None

    def mark_job_running(self, job_id: str) -> None:
        """queued → running; a job already past `queued` is left alone."""
        _execute(
            self.db.table(JOBS_TABLE)
            .update({"status": JobStatus.RUNNING.value})
            .eq("id", job_id)
            .eq("status", JobStatus.QUEUED.value),
            f"mark job {job_id} running",
        )

    def fail_job(self, job_id: str) -> None:
        _execute(
            self.db.table(JOBS_TABLE)
            .update({"status": JobStatus.ERROR.value, "finished_at": _now()})
            .eq("id", job_id)
            .in_("status", OPEN_JOB_STATUSES),
            f"fail job {job_id}",
        )

    def refresh_progress(self, job_id: str) -> JobProgress:
        """Recompute processed_count from settled items and finalize when all settled.

        Counting settled rows instead of incrementing keeps the value correct
        when several workers settle items of the same job concurrently.
        """
        job = self.get_job(job_id)
        res = _execute(
            self.db.table(QUEUE_TABLE)
            .select("id", count="exact")
            .eq("job_id", job_id)
            .in_("status", SETTLED_STATUSES),
            f"count settled items of job {job_id}",
        )
        settled = res.count if res.count is not None else len(res.data or [])
        processed = min(settled, job.total_count)

        update: dict = {"processed_count": processed}
        status = job.status
        if processed >= job.total_count and job.status.value in OPEN_JOB_STATUSES:
            update["status"] = JobStatus.COMPLETED.value
            update["finished_at"] = _now()
            status = JobStatus.COMPLETED
        _execute(
            self.db.table(JOBS_TABLE)
            .update(update)
            .eq("id", job_id)
            .in_("status", OPEN_JOB_STATUSES),
            f"update progress of job {job_id}",
        )
        if status == JobStatus.COMPLETED and job.status != JobStatus.COMPLETED:
            logger.info(f"Job {job_id} completed ({processed}/{job.total_count})")
        return JobProgress(status=status, processed_count=processed, total_count=job.total_count)

    # ── Queue items ──────────────────────────────────────

    def enqueue(self, job: IngestionJob, sources: Sequence[SourceDescriptor]) -> list[QueueItem]:
        if not sources:
            return []
        rows = [
            {
                "job_id": job.id,
                "scope_id": job.scope_id,
                "item_type": source.kind.value,
                "payload": source.to_payload(),
                "status": ItemStatus.QUEUED.value,
            }
            for source in sources
        ]
        try:
            res = self.db.table(QUEUE_TABLE).insert(rows).execute()
        except Exception as e:
            raise IndexStoreError("Failed to enqueue sources", detail=str(e)) from e
        return [QueueItem.model_validate(r) for r in res.data or []]

    def next_queued(self, limit: int) -> list[QueueItem]:
        """Oldest queued items. Candidates only; each must still be claimed."""
        res = _execute(
            self.db.table(QUEUE_TABLE)
            .select("*")
            .eq("status", ItemStatus.QUEUED.value)
            .order("created_at")
            .limit(max(1, limit)),
            "list queued items",
        )
        return [QueueItem.model_validate(r) for r in res.data or []]

    def claim_item(self, item_id: str) -> QueueItem | None:
        """Atomically move one item queued → running.

        Returns:
            The claimed item, or None when another worker got there first.
        """
        res = _execute(
            self.db.table(QUEUE_TABLE)
            .update({"status": ItemStatus.RUNNING.value, "updated_at": _now()})
            .eq("id", item_id)
            .eq("status", ItemStatus.QUEUED.value),
            f"claim item {item_id}",
        )
        if not res.data:
            return None
        return QueueItem.model_validate(res.data[0])

    def settle_item(self, item_id: str, status: ItemStatus, error: str | None = None) -> None:
        """running → done | error."""
        _execute(
            self.db.table(QUEUE_TABLE)
            .update({"status": status.value, "error": error, "updated_at": _now()})
            .eq("id", item_id)
            .eq("status", ItemStatus.RUNNING.value),
            f"settle item {item_id}",
        )

    def queue_summary(self, scope_id: str) -> dict[str, int]:
        res = _execute(
            self.db.table(QUEUE_TABLE).select("status").eq("scope_id", scope_id),
            f"summarize queue of {scope_id}",
        )
        summary = {s.value: 0 for s in ItemStatus}
        for row in res.data or []:
            if row.get("status") in summary:
                summary[row["status"]] += 1
        return summary
