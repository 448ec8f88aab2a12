"""
RAG feature: Content normalizer.

Turns a source descriptor (storage object or web link) into plain text:
  1. Resolve a fetchable locator (public storage URL, or the link itself).
  2. Fetch with an explicit deadline (httpx timeout).
  3. Resolve the content kind: declared content-type → extension → text.
  4. Extract: PDF via PyPDFLoader, HTML via WebBaseLoader / BeautifulSoup,
     text and markdown pass through.
  5. Strip NUL bytes and surrounding whitespace.

An empty result is a normal "nothing to index" outcome. Transport problems
raise FetchTimeoutError / ExtractionError instead.
"""

import logging
import os
import re
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from kbrag.config import get_settings
from kbrag.core.exceptions import ExtractionError, FetchTimeoutError, ValidationError
from kbrag.features.rag.schemas import JobType, SourceDescriptor

logger = logging.getLogger(__name__)


class ContentKind(str, Enum):
    PDF = "pdf"
    HTML = "html"
    TEXT = "text"


EXTENSION_KINDS = {
    "pdf": ContentKind.PDF,
    "html": ContentKind.HTML,
    "htm": ContentKind.HTML,
    "txt": ContentKind.TEXT,
    "md": ContentKind.TEXT,
    "csv": ContentKind.TEXT,
    "json": ContentKind.TEXT,
}

USER_AGENT = "Mozilla/5.0 (compatible; kbrag-indexer/0.1)"

# Shared fetch client (lazy, init-once); pooled across normalizers and threads
_http_client: httpx.Client | None = None
_http_client_lock = threading.Lock()


def get_http_client() -> httpx.Client:
    """Get or create the process-wide fetch client."""
    global _http_client
    if _http_client is None:
        with _http_client_lock:
            if _http_client is None:
                _http_client = httpx.Client(
                    follow_redirects=True,
                    headers={"User-Agent": USER_AGENT},
                )
    return _http_client


def close_http_client() -> None:
    """Close the shared client (application shutdown)."""
    global _http_client
    with _http_client_lock:
        if _http_client is not None:
            _http_client.close()
            _http_client = None


@dataclass
class NormalizedContent:
    text: str
    kind: ContentKind
    locator: str

    @property
    def is_empty(self) -> bool:
        return not self.text


# ── Content kind resolution ──────────────────────────────

def _kind_from_content_type(content_type: str | None) -> ContentKind | None:
    ct = (content_type or "").split(";", 1)[0].strip().lower()
    if not ct:
        return None
    if "pdf" in ct:
        return ContentKind.PDF
    if "html" in ct:  # text/html, application/xhtml+xml
        return ContentKind.HTML
    if ct.startswith("text/") or ct in ("application/json", "application/csv"):
        return ContentKind.TEXT
    return None


def _kind_from_filename(filename: str | None) -> ContentKind | None:
    name = (filename or "").lower().rsplit("/", 1)[-1]
    if "." not in name:
        return None
    return EXTENSION_KINDS.get(name.rsplit(".", 1)[1])


def resolve_content_kind(content_type: str | None, filename: str | None) -> ContentKind:
    """Priority-ordered resolver: declared type, then extension, then raw text.

    Declared types that say nothing about the content (e.g.
    application/octet-stream) fall through to the extension.
    """
    return (
        _kind_from_content_type(content_type)
        or _kind_from_filename(filename)
        or ContentKind.TEXT
    )


# ── Link validation ──────────────────────────────────────

def is_private_hostname(hostname: str | None) -> bool:
    h = (hostname or "").lower()
    if not h:
        return True
    if h == "localhost" or h.endswith(".localhost") or h.endswith(".local"):
        return True
    if h in ("127.0.0.1", "0.0.0.0", "::1"):
        return True
    if h.startswith(("10.", "192.168.", "169.254.", "127.")):
        return True
    m = re.match(r"^172\.(\d+)\.", h)
    return bool(m and 16 <= int(m.group(1)) <= 31)


def validate_link(url: str) -> str:
    """Accept public http(s) URLs only.

    Raises:
        ValidationError: For other schemes or private/loopback hosts.
    """
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise ValidationError("Only http/https URLs are allowed", detail=url)
    if is_private_hostname(parsed.hostname):
        raise ValidationError("Blocked URL host", detail=url)
    return url


def clean_text(text: str | None) -> str:
    return (text or "").replace("\x00", " ").strip()


# ── Extractors ───────────────────────────────────────────

def extract_pdf_text(content: bytes) -> str:
    """Extract text from PDF bytes using PyPDFLoader.

    Use temp files since the loader requires a file path. Falls back to a
    naive UTF-8 decode when the PDF cannot be parsed.
    """
    from langchain_community.document_loaders import PyPDFLoader

    with tempfile.NamedTemporaryFile(delete=False, suffix=".pdf") as temp_file:
        temp_file.write(content)
        temp_path = temp_file.name

    try:
        docs = PyPDFLoader(temp_path).load()
        return "\n\n".join(doc.page_content for doc in docs)
    except Exception as e:
        logger.warning(f"PDF extraction failed, falling back to raw text: {e}")
        return content.decode("utf-8", errors="ignore")
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def extract_html_text(html: str) -> str:
    """Visible body text of an HTML document, whitespace collapsed."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    root = soup.body or soup
    return re.sub(r"\s+", " ", root.get_text(" ")).strip()


def load_html_with_loader(url: str, timeout: float) -> str:
    """Structured HTML loading through LangChain's WebBaseLoader."""
    from langchain_community.document_loaders import WebBaseLoader

    loader = WebBaseLoader(
        url,
        requests_kwargs={"timeout": timeout},
        header_template={"User-Agent": USER_AGENT},
        raise_for_status=True,
    )
    docs = loader.load()
    return "\n\n".join(doc.page_content for doc in docs)


class ContentNormalizer:
    """Fetches a source and extracts plain text under a bounded deadline."""

    def __init__(
        self,
        db=None,
        http_client: httpx.Client | None = None,
        html_loader: Callable[[str, float], str] | None = None,
        timeout: float | None = None,
    ):
        self.db = db
        self.timeout = timeout or get_settings().fetch_timeout
        self._client = http_client or get_http_client()
        self._html_loader = html_loader or load_html_with_loader

    def resolve_locator(self, source: SourceDescriptor) -> str:
        if source.kind == JobType.LINK:
            return validate_link(source.url)
        if not source.path:
            raise ValidationError("File source requires a path")
        if self.db is None:
            raise ValidationError("File sources need a storage client", detail=source.path)
        bucket = source.bucket or get_settings().RAG_BUCKET
        url = self.db.storage.from_(bucket).get_public_url(source.path)
        if not url:
            raise ExtractionError("Could not resolve storage URL", detail=source.path)
        return url

    def fetch(self, url: str, timeout: float | None = None) -> httpx.Response:
        """GET with an explicit deadline.

        Raises:
            FetchTimeoutError: Deadline exceeded.
            ExtractionError: Transport failure or non-2xx response.
        """
        deadline = timeout or self.timeout
        try:
            response = self._client.get(url, timeout=deadline)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(url, deadline) from e
        except httpx.HTTPStatusError as e:
            raise ExtractionError(
                f"Fetch failed with HTTP {e.response.status_code}", detail=url
            ) from e
        except httpx.HTTPError as e:
            raise ExtractionError("Fetch failed", detail=f"{url}: {e}") from e
        return response

    def normalize(self, source: SourceDescriptor, timeout: float | None = None) -> NormalizedContent:
        deadline = timeout or self.timeout
        locator = self.resolve_locator(source)

        if source.kind == JobType.LINK:
            text = self._load_link(locator, deadline)
            if text:
                return NormalizedContent(clean_text(text), ContentKind.HTML, locator)

        response = self.fetch(locator, deadline)
        declared = source.content_type or response.headers.get("content-type")
        filename = source.path or urlparse(locator).path
        kind = resolve_content_kind(declared, filename)
        text = self._extract(response, kind)
        return NormalizedContent(clean_text(text), kind, locator)

    def _load_link(self, url: str, timeout: float) -> str:
        """Prefer the structured loader; an empty string means raw-fetch fallback."""
        try:
            return clean_text(self._html_loader(url, timeout))
        except Exception as e:
            logger.warning(f"HTML loader failed for {url}, falling back to raw fetch: {e}")
            return ""

    def _extract(self, response: httpx.Response, kind: ContentKind) -> str:
        if kind == ContentKind.PDF:
            return extract_pdf_text(response.content)
        if kind == ContentKind.HTML:
            try:
                return extract_html_text(response.text)
            except Exception as e:
                logger.warning(f"HTML parsing failed, using raw text: {e}")
                return response.text
        return response.text
