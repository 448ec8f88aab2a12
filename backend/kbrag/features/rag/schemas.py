"""
RAG feature: Schemas for records, requests and responses.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


# ── Status enums ─────────────────────────────────────────

class JobType(str, Enum):
    FILE = "file"
    LINK = "link"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ItemStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


class LinkStatus(str, Enum):
    PENDING = "pending"
    INDEXING = "indexing"
    INDEXED = "indexed"
    ERROR = "error"


class RagMode(str, Enum):
    STRICT = "strict"
    HYBRID = "hybrid"
    OPEN = "open"


# ── Records ──────────────────────────────────────────────

class SourceDescriptor(BaseModel):
    """Where one source's bytes come from: a storage object or a web link."""
    kind: JobType
    bucket: Optional[str] = None
    path: Optional[str] = None
    url: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def source_path(self) -> str:
        """Key the source's chunks are stored under."""
        return self.url if self.kind == JobType.LINK else self.path

    @classmethod
    def file(cls, bucket: str, path: str, content_type: str | None = None) -> "SourceDescriptor":
        return cls(kind=JobType.FILE, bucket=bucket, path=path, content_type=content_type)

    @classmethod
    def link(cls, url: str) -> "SourceDescriptor":
        return cls(kind=JobType.LINK, url=url)

    def to_payload(self) -> dict:
        if self.kind == JobType.LINK:
            return {"url": self.url}
        payload = {"path": self.path, "bucket": self.bucket}
        if self.content_type:
            payload["content_type"] = self.content_type
        return payload

    @classmethod
    def from_item(cls, item_type: str, payload: dict) -> "SourceDescriptor":
        if item_type == JobType.LINK.value:
            return cls.link(payload["url"])
        return cls.file(payload.get("bucket"), payload["path"], payload.get("content_type"))


class IngestionJob(BaseModel):
    id: str
    scope_id: str
    job_type: JobType
    status: JobStatus
    processed_count: int = 0
    total_count: int = 0
    meta: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class QueueItem(BaseModel):
    id: str
    job_id: Optional[str] = None
    scope_id: str
    item_type: JobType
    payload: dict[str, Any]
    status: ItemStatus
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def source(self) -> SourceDescriptor:
        return SourceDescriptor.from_item(self.item_type.value, self.payload)


class SourceLink(BaseModel):
    scope_id: str
    url: str
    title: Optional[str] = None
    status: LinkStatus = LinkStatus.PENDING
    last_crawled_at: Optional[datetime] = None


class DocumentChunk(BaseModel):
    scope_id: str
    source_path: str
    chunk_index: int
    content: str
    embedding: Optional[list[float]] = None
    created_at: Optional[datetime] = None


# ── Service results ──────────────────────────────────────

class SubmitResult(BaseModel):
    queued: bool
    job_id: Optional[str] = None
    total: int
    processed: int = 0
    indexed_chunks: int = 0


class JobProgress(BaseModel):
    status: JobStatus
    processed_count: int
    total_count: int


class AskResult(BaseModel):
    answer: str
    contexts: list[dict[str, Any]]
    mode: RagMode
    model: Optional[str] = None
    fallback: Optional[str] = None  # "recent" | "no_ai" | "empty" when degraded


# ── Requests ─────────────────────────────────────────────

class IndexSchoolRequest(BaseModel):
    """Index every file under a scope's storage prefix (or one path)."""
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    bucket: Optional[str] = None
    max_files: Optional[int] = Field(None, gt=0, alias="maxFiles")
    path: Optional[str] = None
    start_background: Optional[bool] = Field(None, alias="startBackground")

    model_config = ConfigDict(populate_by_name=True)


class IndexLinksRequest(BaseModel):
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    urls: Optional[list[str]] = None
    max_links: Optional[int] = Field(None, gt=0, alias="maxLinks")
    timeout_ms: Optional[int] = Field(None, alias="timeoutMs")
    start_background: Optional[bool] = Field(None, alias="startBackground")

    model_config = ConfigDict(populate_by_name=True)


class EnqueueFileRequest(BaseModel):
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    path: str = Field(..., min_length=1)
    bucket: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class EnqueueLinkRequest(BaseModel):
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    url: str = Field(..., min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class AskRequest(BaseModel):
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    question: str = Field(..., min_length=1)
    mode: Optional[RagMode] = None
    k: Optional[int] = Field(None, gt=0)
    threshold: Optional[float] = Field(None, ge=0, le=1)
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)

    model_config = ConfigDict(populate_by_name=True)

    def overrides(self) -> dict:
        return self.model_dump(
            mode="json",
            include={"mode", "k", "threshold", "model", "temperature"},
            exclude_none=True,
        )


class DeleteFileRequest(BaseModel):
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    file_name: str = Field(..., min_length=1, alias="fileName")
    bucket: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class SignedUploadRequest(BaseModel):
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    filename: str = Field(..., min_length=1)
    bucket: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class LinksBulkUpsertRequest(BaseModel):
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    urls: list[str]

    model_config = ConfigDict(populate_by_name=True)


class LinkDeleteRequest(BaseModel):
    scope_id: str = Field(..., min_length=1, alias="schoolId")
    url: str = Field(..., min_length=1)

    model_config = ConfigDict(populate_by_name=True)
