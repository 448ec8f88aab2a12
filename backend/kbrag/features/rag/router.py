"""
RAG feature: API routes for ingestion, job status, sources and questions.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Response, status
from supabase import Client

from kbrag.background.rag_worker import run_queue_worker
from kbrag.core.dependencies import get_current_user_id, get_db, require_worker_token
from kbrag.features.rag.orchestrator import IngestionService, notify_worker
from kbrag.features.rag.retrieval import RetrievalService
from kbrag.features.rag.schemas import (
    AskRequest,
    DeleteFileRequest,
    EnqueueFileRequest,
    EnqueueLinkRequest,
    IndexLinksRequest,
    IndexSchoolRequest,
    LinkDeleteRequest,
    LinksBulkUpsertRequest,
    SignedUploadRequest,
    SubmitResult,
)
from kbrag.features.rag.sources import SourceService

router = APIRouter()

QUEUED_HEADER = "X-Background-Queued"


def _ingestion(db: Client, background_tasks: BackgroundTasks) -> IngestionService:
    # Wake signal goes out after the response is sent
    return IngestionService(db, notifier=lambda: background_tasks.add_task(notify_worker))


def _submission_response(result: SubmitResult, response: Response) -> dict:
    if result.queued:
        response.status_code = status.HTTP_202_ACCEPTED
        response.headers[QUEUED_HEADER] = "1"
    return result.model_dump()


# ── Ingestion ────────────────────────────────────────────

@router.post("/index-school")
def index_school(
    data: IndexSchoolRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    """Index every stored file of a scope (or one path).

    Queued under a serverless time limit: 202 + X-Background-Queued.
    """
    result = _ingestion(db, background_tasks).index_scope_files(
        data.scope_id,
        bucket=data.bucket,
        max_files=data.max_files,
        path=data.path,
        background_preferred=data.start_background,
    )
    return _submission_response(result, response)


@router.post("/index-links")
def index_links(
    data: IndexLinksRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    """Index the given links, or every link tracked for the scope."""
    result = _ingestion(db, background_tasks).index_links(
        data.scope_id,
        urls=data.urls,
        max_links=data.max_links,
        timeout_ms=data.timeout_ms,
        background_preferred=data.start_background,
    )
    return _submission_response(result, response)


@router.post("/enqueue/file")
def enqueue_file(
    data: EnqueueFileRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    result = _ingestion(db, background_tasks).enqueue_file(data.scope_id, data.path, data.bucket)
    return _submission_response(result, response)


@router.post("/enqueue/link")
def enqueue_link(
    data: EnqueueLinkRequest,
    response: Response,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    result = _ingestion(db, background_tasks).enqueue_link(data.scope_id, data.url)
    return _submission_response(result, response)


@router.get("/jobs/{job_id}")
def get_job_status(
    job_id: str,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    """Progress of one ingestion job."""
    progress = IngestionService(db).get_job_status(job_id)
    return progress.model_dump()


@router.get("/queue/summary")
def queue_summary(
    scope_id: str = Query(..., alias="schoolId", min_length=1),
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    return {"summary": IngestionService(db).queue_summary(scope_id)}


@router.get("/worker/run", dependencies=[Depends(require_worker_token)])
def run_worker(
    limit: int = Query(3, ge=1, le=50),
    db: Client = Depends(get_db),
):
    """Process a batch of queued items. Called by the wake signal and cron."""
    return run_queue_worker(limit, db=db)


# ── Retrieval ────────────────────────────────────────────

@router.post("/ask")
def ask(
    data: AskRequest,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    """Answer a question grounded in the scope's indexed content."""
    result = RetrievalService(db).ask(
        data.scope_id,
        data.question,
        user_id=user_id,
        overrides=data.overrides(),
    )
    return result.model_dump()


# ── Sources ──────────────────────────────────────────────

@router.post("/delete-file")
def delete_file(
    data: DeleteFileRequest,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    """Remove a source and every chunk indexed from it."""
    return SourceService(db).delete_source(data.scope_id, data.file_name, data.bucket)


@router.get("/list-files")
def list_files(
    scope_id: str = Query(..., alias="schoolId", min_length=1),
    bucket: str | None = None,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    return SourceService(db).list_files(scope_id, bucket)


@router.post("/signed-upload")
def signed_upload(
    data: SignedUploadRequest,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    return SourceService(db).create_signed_upload(data.scope_id, data.filename, data.bucket)


@router.get("/links/list")
def list_links(
    scope_id: str = Query(..., alias="schoolId", min_length=1),
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    return SourceService(db).list_links(scope_id)


@router.post("/links/bulk-upsert")
def bulk_upsert_links(
    data: LinksBulkUpsertRequest,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    saved = SourceService(db).bulk_upsert_links(data.scope_id, data.urls)
    return {"saved": saved}


@router.post("/links/delete")
def delete_link(
    data: LinkDeleteRequest,
    user_id: str = Depends(get_current_user_id),
    db: Client = Depends(get_db),
):
    """Remove a tracked link together with its indexed chunks."""
    return SourceService(db).delete_source(data.scope_id, data.url)
