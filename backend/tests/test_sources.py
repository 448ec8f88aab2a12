"""Tests for source management: deletion, listing, uploads and tracked links."""

import re

import pytest

from kbrag.core.exceptions import ValidationError
from kbrag.features.rag.retrieval import RetrievalService
from kbrag.features.rag.sources import SourceService, sanitize_filename


@pytest.fixture
def sources(db) -> SourceService:
    return SourceService(db)


class TestSanitizeFilename:
    def test_ascii_dash_separated(self):
        assert sanitize_filename("My Report (final).PDF") == ("my-report-final", "pdf")

    def test_strips_diacritics(self):
        base, ext = sanitize_filename("Đề cương môn học.docx")
        assert re.fullmatch(r"[a-z0-9-]+", base)
        assert ext == "docx"

    def test_missing_extension(self):
        assert sanitize_filename("README") == ("readme", "bin")


class TestDeleteSource:
    def test_delete_file_removes_object_and_chunks(self, db, ingestion, sources, llm_factory):
        db.storage.put("school-ai", "s1/handbook.txt", "h" * 4000)
        ingestion.index_scope_files("s1")
        assert len(db.rows("rag_chunks")) == 4

        result = sources.delete_source("s1", "handbook.txt")

        assert result == {"deleted": True, "chunks": 4}
        assert db.rows("rag_chunks") == []
        assert "s1/handbook.txt" not in db.storage.objects["school-ai"]

        answer = RetrievalService(db, llm_factory=llm_factory, ai_configured=lambda: True).ask(
            "s1", "What does the handbook say?"
        )
        assert answer.contexts == []

    def test_delete_link_removes_row_and_chunks(self, db, web, ingestion, sources):
        db.table("rag_links").insert({"scope_id": "s1", "url": "https://example.com/news", "status": "pending"}).execute()
        web["https://example.com/news"] = (200, "text/plain", "Campus news for the week")
        ingestion.index_links("s1")
        assert db.rows("rag_chunks")

        result = sources.delete_source("s1", "https://example.com/news")

        assert result["chunks"] == 1
        assert db.rows("rag_chunks") == []
        assert db.rows("rag_links") == []

    def test_delete_leaves_other_scopes(self, db, ingestion, sources):
        db.storage.put("school-ai", "s1/a.txt", "one")
        db.storage.put("school-ai", "s2/a.txt", "two")
        ingestion.index_scope_files("s1")
        ingestion.index_scope_files("s2")

        sources.delete_source("s1", "s1/a.txt")

        assert [r["scope_id"] for r in db.rows("rag_chunks")] == ["s2"]

    def test_requires_path(self, sources):
        with pytest.raises(ValidationError):
            sources.delete_source("s1", "")


class TestListFiles:
    def test_annotates_index_status_and_latest_job(self, db, ingestion, sources):
        db.storage.put("school-ai", "s1/indexed.txt", "indexed body")
        ingestion.index_scope_files("s1")
        db.storage.put("school-ai", "s1/new.txt", "not yet")
        db.storage.put("school-ai", "s1/policies/nested.txt", "nested")

        listing = sources.list_files("s1")

        by_path = {f["path"]: f for f in listing["files"]}
        assert set(by_path) == {"s1/indexed.txt", "s1/new.txt", "s1/policies/nested.txt"}
        assert by_path["s1/indexed.txt"]["indexed"] is True
        assert by_path["s1/indexed.txt"]["chunks"] == 1
        assert by_path["s1/new.txt"]["indexed"] is False
        assert listing["job"]["status"] == "completed"


class TestSignedUpload:
    def test_path_is_unique_and_scoped(self, sources):
        first = sources.create_signed_upload("s1", "My Report.pdf")
        second = sources.create_signed_upload("s1", "My Report.pdf")

        assert re.fullmatch(r"s1/my-report__\d+_[0-9a-f]{8}\.pdf", first["path"])
        assert first["path"] != second["path"]
        assert first["token"] == "tok"
        assert first["signed_url"]


class TestLinks:
    def test_bulk_upsert_dedupes_and_replaces(self, db, sources):
        sources.bulk_upsert_links("s1", ["https://old.example.com"])
        saved = sources.bulk_upsert_links("s1", [
            "https://a.example.com", "https://a.example.com", " https://b.example.com ", "",
        ])

        assert saved == 2
        listing = sources.list_links("s1")
        assert {l["url"] for l in listing["links"]} == {"https://a.example.com", "https://b.example.com"}
        assert all(l["status"] == "pending" for l in listing["links"])

    def test_delete_link(self, db, sources):
        sources.bulk_upsert_links("s1", ["https://a.example.com", "https://b.example.com"])
        sources.delete_link("s1", "https://a.example.com")
        assert [l["url"] for l in sources.list_links("s1")["links"]] == ["https://b.example.com"]
