"""
RAG feature: Source management.

Stored files (Supabase Storage, `{scope_id}/...` prefix) and tracked web
links (`rag_links`), plus removal of a source together with its chunks.
"""

import logging
import re
import secrets
import time
import unicodedata

from supabase import Client

from kbrag.config import get_settings
from kbrag.core.exceptions import IndexStoreError, ValidationError
from kbrag.features.rag.index_store import ChunkStore
from kbrag.features.rag.jobs import JobStore
from kbrag.features.rag.pipeline import LINKS_TABLE
from kbrag.features.rag.schemas import JobType, SourceLink

logger = logging.getLogger(__name__)

LIST_DEPTH = 2


def sanitize_filename(filename: str) -> tuple[str, str]:
    """Split into an ASCII, dash-separated base name and a lower-case extension."""
    name = unicodedata.normalize("NFKD", filename or "").encode("ascii", "ignore").decode("ascii")
    name = name.strip().rsplit("/", 1)[-1]
    if "." in name:
        base, ext = name.rsplit(".", 1)
    else:
        base, ext = name, ""
    base = re.sub(r"[^a-z0-9]+", "-", base.lower()).strip("-")[:60] or "document"
    ext = re.sub(r"[^a-z0-9]", "", ext.lower()) or "bin"
    return base, ext


def _is_link(source_path: str) -> bool:
    return source_path.startswith(("http://", "https://"))


class SourceService:
    """File and link sources of a scope."""

    def __init__(self, db: Client, chunks: ChunkStore | None = None, jobs: JobStore | None = None):
        self.db = db
        self.chunks = chunks or ChunkStore(db)
        self.jobs = jobs or JobStore(db)

    def _bucket(self, bucket: str | None):
        return self.db.storage.from_(bucket or get_settings().RAG_BUCKET)

    # ── Files ────────────────────────────────────────────

    def delete_source(self, scope_id: str, source_path: str, bucket: str | None = None) -> dict:
        """Remove a source and every chunk indexed from it.

        Files are removed from storage; links lose their tracking row.

        Raises:
            ValidationError: Missing scope or path.
            IndexStoreError: Storage or chunk deletion failed.
        """
        if not scope_id or not source_path:
            raise ValidationError("scope_id and source path required")

        if _is_link(source_path):
            removed = self.chunks.delete_source(scope_id, source_path)
            self.delete_link(scope_id, source_path)
        else:
            full_path = source_path if source_path.startswith(f"{scope_id}/") else f"{scope_id}/{source_path.lstrip('/')}"
            try:
                self._bucket(bucket).remove([full_path])
            except Exception as e:
                raise IndexStoreError(f"Failed to remove {full_path} from storage", detail=str(e)) from e
            removed = self.chunks.delete_source(scope_id, full_path)

        logger.info(f"Deleted source {source_path} for {scope_id} ({removed} chunks)")
        return {"deleted": True, "chunks": removed}

    def list_files(self, scope_id: str, bucket: str | None = None) -> dict:
        """Files under the scope prefix, annotated with their index status."""
        storage = self._bucket(bucket)
        files = self._collect_files(storage, scope_id.strip("/"), LIST_DEPTH)

        try:
            counts = self.chunks.count_by_source(scope_id, [f["path"] for f in files])
        except IndexStoreError as e:
            logger.warning(f"Chunk annotation failed for {scope_id}: {e.detail}")
            counts = {}
        for f in files:
            n = counts.get(f["path"], 0)
            f["chunks"] = n
            f["indexed"] = n > 0

        return {"files": files, "job": self.jobs.latest_job(scope_id, JobType.FILE)}

    def _collect_files(self, storage, base_path: str, depth: int) -> list[dict]:
        results = []
        entries = storage.list(base_path, {"limit": 1000, "sortBy": {"column": "name", "order": "asc"}})
        for entry in entries or []:
            name = entry.get("name") or ""
            current = f"{base_path}/{name}"
            # Folders come back without object metadata
            is_folder = not isinstance((entry.get("metadata") or {}).get("size"), int)
            if is_folder:
                if depth > 0:
                    results.extend(self._collect_files(storage, current, depth - 1))
                continue
            if name.startswith("."):
                continue
            results.append({
                "name": name,
                "path": current,
                "url": storage.get_public_url(current),
                "size": entry["metadata"]["size"],
                "created_at": entry.get("created_at"),
                "updated_at": entry.get("updated_at"),
            })
        return results

    def create_signed_upload(self, scope_id: str, filename: str, bucket: str | None = None) -> dict:
        """Signed upload URL for a sanitized, unique path under the scope."""
        if not scope_id or not filename:
            raise ValidationError("scope_id and filename required")
        base, ext = sanitize_filename(filename)
        unique = f"{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        path = f"{scope_id}/{base}__{unique}.{ext}"
        data = self._bucket(bucket).create_signed_upload_url(path)
        return {
            "path": path,
            "token": data.get("token"),
            "signed_url": data.get("signed_url") or data.get("signedUrl"),
        }

    # ── Links ────────────────────────────────────────────

    def list_links(self, scope_id: str) -> dict:
        res = (
            self.db.table(LINKS_TABLE)
            .select("id, url, title, status, last_crawled_at, created_at")
            .eq("scope_id", scope_id)
            .order("created_at", desc=True)
            .execute()
        )
        return {"links": res.data or [], "job": self.jobs.latest_job(scope_id, JobType.LINK)}

    def bulk_upsert_links(self, scope_id: str, urls: list[str]) -> int:
        """Replace the scope's link set. Returns the number saved."""
        unique = list(dict.fromkeys(u.strip() for u in urls if u and u.strip()))
        self.db.table(LINKS_TABLE).delete().eq("scope_id", scope_id).execute()
        if unique:
            rows = [
                SourceLink(scope_id=scope_id, url=u).model_dump(mode="json", exclude_none=True)
                for u in unique
            ]
            self.db.table(LINKS_TABLE).insert(rows).execute()
        return len(unique)

    def delete_link(self, scope_id: str, url: str) -> None:
        self.db.table(LINKS_TABLE).delete().eq("scope_id", scope_id).eq("url", url).execute()
