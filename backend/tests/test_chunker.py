"""Unit tests for text chunking."""

import pytest

from kbrag.features.rag.chunker import chunk_text


class TestFixedChunking:
    def test_splits_into_max_char_windows(self):
        chunks = chunk_text("a" * 3000, max_chars=1200)
        assert [len(c.text) for c in chunks] == [1200, 1200, 600]
        assert [c.index for c in chunks] == [0, 1, 2]

    def test_concatenation_restores_text(self):
        text = "".join(chr(97 + i % 26) for i in range(2500))
        chunks = chunk_text(text, max_chars=1000)
        assert "".join(c.text for c in chunks) == text

    def test_empty_text_has_no_chunks(self):
        assert chunk_text("") == []

    def test_whitespace_only_pieces_are_dropped(self):
        chunks = chunk_text("a" * 1200 + " " * 1200, max_chars=1200)
        assert len(chunks) == 1
        assert chunks[0].index == 0

    def test_short_text_is_single_chunk(self):
        chunks = chunk_text("Office hours are 9 to 5.")
        assert len(chunks) == 1
        assert chunks[0].text == "Office hours are 9 to 5."

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            chunk_text("abc", max_chars=0)


class TestRecursiveChunking:
    def test_respects_max_chars(self):
        text = " ".join(f"Sentence number {i} talks about enrollment." for i in range(200))
        chunks = chunk_text(text, max_chars=300, overlap=50, strategy="recursive")
        assert len(chunks) > 1
        assert all(len(c.text) <= 300 for c in chunks)
        assert [c.index for c in chunks] == list(range(len(chunks)))

    def test_prefers_paragraph_boundaries(self):
        first = "First paragraph about tuition. " * 5
        second = "Second paragraph about housing. " * 5
        chunks = chunk_text(f"{first}\n\n{second}", max_chars=200, strategy="recursive")
        assert chunks[0].text.startswith("First paragraph")
        assert any(c.text.startswith("Second paragraph") for c in chunks)

    def test_consecutive_chunks_overlap(self):
        text = " ".join(f"word{i}" for i in range(400))
        chunks = chunk_text(text, max_chars=200, overlap=60, strategy="recursive")
        last_word = chunks[0].text.split()[-1]
        assert last_word in chunks[1].text
