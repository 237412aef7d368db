"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence

import pytest

from anvil.db.connection import Database
from anvil.db.schema import initialize
from anvil.rag.store import VectorStore

DIMENSIONS = 8

_WORD_RE = re.compile(r"\w+")


def embed_text(text: str, dimensions: int = DIMENSIONS) -> list[float]:
    """Deterministic bag-of-words vector; the last component is a constant bias."""
    vector = [0.0] * dimensions
    for word in _WORD_RE.findall(text.lower()):
        digest = hashlib.md5(word.encode("utf-8")).digest()
        vector[digest[0] % (dimensions - 1)] += 1.0
    vector[-1] = 1.0
    return vector


class FakeEmbedder:
    """Async embedder recording every batch it was asked to embed."""

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        self.dimensions = dimensions
        self.calls: list[list[str]] = []

    async def embed(self, batch: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(batch))
        return [embed_text(t, self.dimensions) for t in batch]

    async def embed_one(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]

    @property
    def embedded(self) -> list[str]:
        return [t for batch in self.calls for t in batch]


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".anvil.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(tmp_db):
    """Cosine store over tmp_db with DIMENSIONS-dimensional vectors."""
    return VectorStore(tmp_db, DIMENSIONS, "cosine")


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vec():
    """The deterministic text -> vector function the fake embedder uses."""
    return embed_text
