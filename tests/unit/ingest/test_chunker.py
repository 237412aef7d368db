"""Tests for the token-bounded whitespace chunker."""

from __future__ import annotations

import pytest

from anvil.errors import ChunkingError, ErrorKind
from anvil.ingest.chunker import Chunker, approx_tokens, chunk_text


def _words(text: str) -> int:
    return len(text.split())


SOURCE = """fn main() {
    let greeting = "hello";
    println!("{greeting}, world");
}

  // trailing comment with   irregular    spacing
"""


def test_approx_tokens():
    assert approx_tokens("") == 1
    assert approx_tokens("abcd" * 10) == 10


@pytest.mark.parametrize("max_tokens", [1, 2, 3, 5, 100])
def test_chunks_reconstruct_content(max_tokens):
    chunks = chunk_text(SOURCE, max_tokens, _words)
    assert "".join(chunks) == SOURCE


@pytest.mark.parametrize("max_tokens", [1, 2, 4])
def test_chunks_respect_bound(max_tokens):
    for chunk in chunk_text(SOURCE, max_tokens, _words):
        assert _words(chunk) <= max_tokens


def test_no_empty_or_whitespace_chunks():
    chunks = chunk_text("  a   b\n\n\tc  ", 1, _words)
    assert chunks == ["  a   ", "b\n\n\t", "c  "]
    assert all(c.strip() for c in chunks)


def test_whitespace_only_content_has_no_chunks():
    assert chunk_text("", 10) == []
    assert chunk_text(" \n\t  ", 10) == []


def test_oversized_token_becomes_own_chunk():
    long_token = "x" * 400  # 100 approx tokens
    chunks = chunk_text(f"short {long_token} tail", 10)
    assert chunks == ["short ", f"{long_token} ", "tail"]


def test_bytes_are_decoded_as_utf8():
    assert chunk_text("héllo wörld".encode(), 100) == ["héllo wörld"]


def test_invalid_utf8_raises_chunking_error():
    with pytest.raises(ChunkingError) as exc_info:
        chunk_text(b"ok \xff\xfe broken", 10)
    assert exc_info.value.kind is ErrorKind.CHUNKING_ERROR
    assert "UTF-8" in exc_info.value.message


def test_non_text_content_raises_chunking_error():
    with pytest.raises(ChunkingError):
        chunk_text(12345, 10)  # type: ignore[arg-type]


def test_max_tokens_must_be_positive():
    with pytest.raises(ValueError):
        chunk_text("abc", 0)
    with pytest.raises(ValueError):
        Chunker(0)


def test_chunker_uses_configured_counter():
    chunker = Chunker(2, _words)
    assert chunker.chunk("a b c d e") == ["a b ", "c d ", "e"]
