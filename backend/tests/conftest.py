"""Shared pytest fixtures: in-memory Supabase, fake AI models, mocked HTTP."""

from __future__ import annotations

import copy
import math
import re
import uuid
import zlib
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest
from langchain_core.messages import AIMessage

from kbrag.config import get_settings
from kbrag.features.rag import embedding as embedding_module
from kbrag.features.rag.jobs import JobStore
from kbrag.features.rag.normalizer import ContentNormalizer
from kbrag.features.rag.orchestrator import IngestionService
from kbrag.features.rag.pipeline import IngestionPipeline

STORAGE_HOST = "storage.test"

_EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


# -- In-memory Supabase --

class FakeQuery:
    """Subset of the postgrest query builder used by the services."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table_name = table
        self.op = "select"
        self.columns = "*"
        self.count_mode = None
        self.payload = None
        self.filters = []
        self.order_by = None
        self.limit_n = None

    def select(self, columns: str = "*", count: str | None = None):
        self.op, self.columns, self.count_mode = "select", columns, count
        return self

    def insert(self, rows):
        self.op, self.payload = "insert", rows
        return self

    def update(self, values: dict):
        self.op, self.payload = "update", values
        return self

    def delete(self):
        self.op = "delete"
        return self

    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column, desc: bool = False):
        self.order_by = (column, desc)
        return self

    def limit(self, n: int):
        self.limit_n = n
        return self

    def _matches(self, row) -> bool:
        return all(f(row) for f in self.filters)

    def _project(self, row: dict) -> dict:
        if self.columns.strip() == "*":
            return copy.deepcopy(row)
        cols = [c.strip() for c in self.columns.split(",")]
        return {c: copy.deepcopy(row.get(c)) for c in cols}

    def execute(self):
        if (self.table_name, self.op) in self.db.fail_on:
            raise RuntimeError(f"{self.op} on {self.table_name} failed")

        rows = self.db.tables.setdefault(self.table_name, [])

        if self.op == "insert":
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for row in payload:
                row = copy.deepcopy(row)
                row.setdefault("id", str(uuid.uuid4()))
                row.setdefault("created_at", self.db.next_timestamp())
                rows.append(row)
                inserted.append(copy.deepcopy(row))
            return SimpleNamespace(data=inserted, count=None)

        matched = [r for r in rows if self._matches(r)]

        if self.op == "update":
            for row in matched:
                row.update(copy.deepcopy(self.payload))
            return SimpleNamespace(data=[copy.deepcopy(r) for r in matched], count=None)

        if self.op == "delete":
            self.db.tables[self.table_name] = [r for r in rows if not self._matches(r)]
            return SimpleNamespace(data=[copy.deepcopy(r) for r in matched], count=None)

        if self.order_by:
            column, desc = self.order_by
            matched = sorted(matched, key=lambda r: r.get(column) or "", reverse=desc)
        count = len(matched) if self.count_mode else None
        if self.limit_n is not None:
            matched = matched[:self.limit_n]
        return SimpleNamespace(data=[self._project(r) for r in matched], count=count)


class FakeBucket:
    def __init__(self, storage: "FakeStorage", name: str):
        self.storage = storage
        self.name = name

    @property
    def objects(self) -> dict:
        return self.storage.objects.setdefault(self.name, {})

    def list(self, path: str = "", options: dict | None = None):
        prefix = path.strip("/") + "/" if path.strip("/") else ""
        files, folders = [], []
        for key, obj in sorted(self.objects.items()):
            if not key.startswith(prefix):
                continue
            rest = key[len(prefix):]
            if "/" in rest:
                folder = rest.split("/", 1)[0]
                if folder not in folders:
                    folders.append(folder)
                continue
            files.append({
                "name": rest,
                "metadata": {"size": len(obj["content"]), "mimetype": obj["content_type"]},
                "created_at": "2025-01-01T00:00:00+00:00",
                "updated_at": "2025-01-01T00:00:00+00:00",
            })
        return [{"name": f, "metadata": None} for f in folders] + files

    def remove(self, paths: list[str]):
        removed = []
        for path in paths:
            if self.objects.pop(path, None) is not None:
                removed.append({"name": path})
        return removed

    def get_public_url(self, path: str) -> str:
        return f"https://{STORAGE_HOST}/{self.name}/{path}"

    def create_signed_upload_url(self, path: str) -> dict:
        return {
            "signed_url": f"https://{STORAGE_HOST}/upload/{self.name}/{path}?token=tok",
            "token": "tok",
            "path": path,
        }


class FakeStorage:
    def __init__(self):
        self.objects: dict[str, dict[str, dict]] = {}

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self, bucket)

    def put(self, bucket: str, path: str, content: bytes | str, content_type: str = "text/plain"):
        if isinstance(content, str):
            content = content.encode("utf-8")
        self.objects.setdefault(bucket, {})[path] = {"content": content, "content_type": content_type}


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    na = math.sqrt(sum(x * x for x in a))
    nb = math.sqrt(sum(y * y for y in b))
    if not na or not nb:
        return 0.0
    return dot / (na * nb)


class FakeSupabase:
    """In-memory stand-in for the supabase Client (tables, rpc, storage)."""

    def __init__(self):
        self.tables: dict[str, list[dict]] = {}
        self.storage = FakeStorage()
        self.fail_on: set[tuple[str, str]] = set()
        self.rpc_calls: list[tuple[str, dict]] = []
        self._clock = 0

    def next_timestamp(self) -> str:
        self._clock += 1
        return (_EPOCH + timedelta(seconds=self._clock)).isoformat()

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, name: str) -> list[dict]:
        return self.tables.get(name, [])

    def rpc(self, name: str, params: dict):
        self.rpc_calls.append((name, params))
        if ("rpc", name) in self.fail_on:
            raise RuntimeError(f"rpc {name} failed")
        return SimpleNamespace(execute=lambda: SimpleNamespace(data=self._match(params), count=None))

    def _match(self, params: dict) -> list[dict]:
        scored = []
        for row in self.rows("rag_chunks"):
            if row["scope_id"] != params["in_scope_id"]:
                continue
            similarity = _cosine(params["query_embedding"], row["embedding"])
            if similarity >= params["similarity_threshold"]:
                scored.append({
                    "source_path": row["source_path"],
                    "chunk_index": row["chunk_index"],
                    "content": row["content"],
                    "similarity": similarity,
                })
        scored.sort(key=lambda r: r["similarity"], reverse=True)
        return scored[:params["match_count"]]


# -- Fake AI models --

class FakeEmbeddings:
    """Deterministic bag-of-words vectors (crc32 buckets)."""

    DIM = 64

    def __init__(self):
        self.document_calls: list[list[str]] = []
        self.fail = False

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self.DIM
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            vec[zlib.crc32(word.encode()) % self.DIM] += 1.0
        if not any(vec):
            vec[0] = 1.0
        return vec

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if self.fail:
            raise RuntimeError("embedding backend down")
        self.document_calls.append(list(texts))
        return [self._vector(t) for t in texts]

    def embed_query(self, text: str) -> list[float]:
        if self.fail:
            raise RuntimeError("embedding backend down")
        return self._vector(text)


class FakeChatModel:
    def __init__(self, reply: str = "Grounded answer [a.txt:0]"):
        self.reply = reply
        self.calls: list[list] = []

    def invoke(self, messages):
        self.calls.append(messages)
        return AIMessage(content=self.reply)


class FakeLLMFactory:
    """Records create_llm arguments and hands out one FakeChatModel."""

    def __init__(self):
        self.model = FakeChatModel()
        self.calls: list[tuple[str, float, int]] = []

    def __call__(self, model: str, temperature: float, max_tokens: int):
        self.calls.append((model, temperature, max_tokens))
        return self.model


# -- Fixtures --

@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    """Known environment for every test; settings cache rebuilt around it."""
    env = {
        "SUPABASE_URL": "https://db.test",
        "SUPABASE_SERVICE_KEY": "service-key",
        "JWT_SECRET_KEY": "jwt-test-secret",
        "LLM_API_KEY": "test-key",
        "SERVERLESS": "false",
        "WORKER_ENABLED": "false",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def configure(monkeypatch):
    """Override settings from a test: configure(SERVERLESS="true")."""

    def _configure(**values):
        for key, value in values.items():
            monkeypatch.setenv(key, str(value))
        get_settings.cache_clear()
        return get_settings()

    return _configure


@pytest.fixture
def db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def embeddings(monkeypatch) -> FakeEmbeddings:
    fake = FakeEmbeddings()
    monkeypatch.setattr(embedding_module, "_embeddings_model", fake)
    return fake


@pytest.fixture
def llm_factory() -> FakeLLMFactory:
    return FakeLLMFactory()


@pytest.fixture
def web() -> dict:
    """URL → (status, content-type, body) served by the mock transport."""
    return {}


@pytest.fixture
def http_client(db, web):
    """httpx client routing storage URLs to FakeStorage and others to `web`."""

    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if request.url.host == STORAGE_HOST:
            bucket, _, path = request.url.path.lstrip("/").partition("/")
            obj = db.storage.objects.get(bucket, {}).get(path)
            if obj is None:
                return httpx.Response(404, text="not found")
            return httpx.Response(200, content=obj["content"], headers={"content-type": obj["content_type"]})
        if url not in web:
            return httpx.Response(404, text="not found")
        entry = web[url]
        if isinstance(entry, Exception):
            raise entry
        code, content_type, body = entry
        return httpx.Response(code, text=body, headers={"content-type": content_type})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def html_loader():
    """Structured loader that always defers to the raw fetch."""

    def _loader(url: str, timeout: float) -> str:
        raise RuntimeError("loader unavailable in tests")

    return _loader


@pytest.fixture
def normalizer(db, http_client, html_loader) -> ContentNormalizer:
    return ContentNormalizer(db, http_client=http_client, html_loader=html_loader, timeout=5)


@pytest.fixture
def pipeline(db, normalizer, embeddings) -> IngestionPipeline:
    return IngestionPipeline(db, normalizer=normalizer, jobs=JobStore(db))


@pytest.fixture
def wake_calls() -> list:
    return []


@pytest.fixture
def ingestion(db, pipeline, wake_calls) -> IngestionService:
    return IngestionService(db, pipeline=pipeline, jobs=pipeline.jobs, notifier=lambda: wake_calls.append(1))
