"""
RAG feature: Text chunking.

Two strategies:
  - fixed:     naive slicing into max_chars windows, no overlap.
  - recursive: boundary-aware splitting (paragraph → line → sentence → word
               → char) with overlap, via RecursiveCharacterTextSplitter.
"""

from dataclasses import dataclass
from typing import Literal

from langchain_text_splitters import RecursiveCharacterTextSplitter

DEFAULT_CHUNK_SIZE = 1200
DEFAULT_CHUNK_OVERLAP = 150

SEPARATORS = ["\n\n", "\n", ". ", "? ", "! ", " ", ""]

Strategy = Literal["fixed", "recursive"]


@dataclass(frozen=True)
class TextChunk:
    index: int
    text: str


def chunk_text(
    text: str,
    max_chars: int = DEFAULT_CHUNK_SIZE,
    overlap: int = 0,
    strategy: Strategy = "fixed",
) -> list[TextChunk]:
    """Split text into ordered, non-empty chunks no longer than max_chars.

    Chunk indexes are contiguous 0..n-1 in source order.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if not text:
        return []

    if strategy == "recursive":
        splitter = RecursiveCharacterTextSplitter(
            chunk_size=max_chars,
            chunk_overlap=max(0, min(overlap, max_chars - 1)),
            separators=SEPARATORS,
            keep_separator="end",
        )
        pieces = splitter.split_text(text)
    else:
        pieces = [text[i:i + max_chars] for i in range(0, len(text), max_chars)]

    pieces = [p for p in pieces if p.strip()]
    return [TextChunk(index=i, text=p) for i, p in enumerate(pieces)]
