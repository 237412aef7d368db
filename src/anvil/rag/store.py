"""Vector store: checksum-keyed chunks and messages with similarity search.

Writes are insert-only and idempotent on the content checksum. Each new
row is announced to the :class:`~anvil.rag.indexer.IndexBuilder`, which
copies it into the sqlite-vec ANN table in the background.

A query never waits on the builder. Without a filter it merges the ANN
hits with an exact scan over the rows not yet indexed (the "tail"), so
every committed row is visible immediately. A tag or session filter, or
the ``dot`` metric (which vec0 cannot index), uses the exact scan alone.
"""

from __future__ import annotations

import hashlib
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from anvil.db.models import Chunk, ChunkMetadata, Message, Session
from anvil.db.repository import Repository
from anvil.db.vectors import (
    VEC_CHUNKS,
    VEC_MESSAGES,
    check_dimensions,
    distance_function,
    ensure_vec_index,
    normalize_distance,
)
from anvil.errors import StoreUnavailable

if TYPE_CHECKING:
    from anvil.rag.indexer import IndexBuilder

log = structlog.get_logger(__name__)


def content_checksum(content: str) -> str:
    """SHA-256 hex digest of *content* encoded as UTF-8."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class UpsertResult:
    chunk: Chunk
    created: bool


@dataclass
class StoreStats:
    chunks: int
    sources: int
    tags: int
    messages: int
    unindexed_chunks: int
    unindexed_messages: int
    metric: str
    dimensions: int
    ann: bool


class VectorStore:
    """Owner of the database connection for chunk and message retrieval.

    Args:
        conn: Open connection with sqlite-vec loaded and migrations applied.
        dimensions: Embedding dimensions; fixed per database.
        metric: ``l2`` (squared Euclidean), ``cosine`` (1 - similarity) or
            ``dot`` (negative inner product). Fixed per database.
        indexer: Background index builder notified of new rows. Optional;
            without one, rows stay in the tail scan until indexed elsewhere.

    Raises:
        ConfigError: If the database was created with other settings.
        StoreUnavailable: If the database cannot be read.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        dimensions: int,
        metric: str = "cosine",
        *,
        indexer: IndexBuilder | None = None,
    ) -> None:
        self._repo = Repository(conn)
        self.dimensions = dimensions
        self.metric = metric
        self.indexer = indexer
        with self._guard("open"):
            self._ann_chunks = ensure_vec_index(conn, VEC_CHUNKS, dimensions, metric)
            self._ann_messages = ensure_vec_index(conn, VEC_MESSAGES, dimensions, metric)
        self._distance_fn = distance_function(metric)

    @property
    def repository(self) -> Repository:
        return self._repo

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def upsert(
        self,
        content: str,
        embedding: Sequence[float],
        metadata: ChunkMetadata | None = None,
    ) -> UpsertResult:
        """Store a chunk unless one with the same content checksum exists.

        An existing chunk is returned unchanged (``created=False``); its
        metadata and tags are not touched, but ``metadata.source_path`` is
        recorded as another file producing it. Use :meth:`tag` to add tags.

        Raises:
            ValueError: If *embedding* has the wrong dimension or is not finite.
        """
        check_dimensions(embedding, self.dimensions)
        meta = metadata or ChunkMetadata()
        checksum = content_checksum(content)
        with self._guard("upsert"):
            new_id = self._repo.insert_chunk(
                content, checksum, embedding, meta.source_path, meta.page_number
            )
            if new_id is None:
                existing = self._repo.get_chunk_by_checksum(checksum)
                if existing is None:
                    raise StoreUnavailable(f"Chunk {checksum[:12]} vanished during upsert")
                if meta.source_path is not None and existing.id is not None:
                    self._repo.link_source(meta.source_path, [existing.id])
                return UpsertResult(chunk=existing, created=False)
            if meta.tags:
                self._repo.link_tags(new_id, self._repo.ensure_tags(meta.tags))
            chunk = self._repo.get_chunk(new_id)
        self._announce(VEC_CHUNKS, [new_id])
        return UpsertResult(chunk=chunk, created=True)

    def tag(self, chunk_id: int, tags: Iterable[str]) -> list[str] | None:
        """Attach *tags* to an existing chunk. Returns its tags, or None if missing."""
        with self._guard("tag"):
            if self._repo.get_chunk(chunk_id) is None:
                return None
            self._repo.link_tags(chunk_id, self._repo.ensure_tags(tags))
            return self._repo.tags_for_chunks([chunk_id]).get(chunk_id, [])

    def query_similar(
        self,
        query_embedding: Sequence[float],
        k: int,
        tag_filter: Iterable[str] | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Return up to *k* ``(chunk, distance)`` pairs, closest first.

        With *tag_filter*, only chunks carrying at least one of the tags are
        considered. An empty filter is the same as no filter.
        """
        check_dimensions(query_embedding, self.dimensions)
        if k < 1:
            return []
        tags = sorted(set(tag_filter)) if tag_filter else []
        with self._guard("query_similar"):
            if tags or not self._ann_chunks:
                hits = self._repo.scan_chunks(query_embedding, self._distance_fn, k, tags=tags)
            else:
                hits = _merge(
                    self._repo.search_index(VEC_CHUNKS, query_embedding, k),
                    self._repo.scan_chunks(
                        query_embedding, self._distance_fn, k, unindexed_only=True
                    ),
                    k,
                )
            chunks = self._repo.get_chunks(i for i, _ in hits)
        return [
            (chunks[i], normalize_distance(self.metric, d)) for i, d in hits if i in chunks
        ]

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        with self._guard("get_chunk"):
            return self._repo.get_chunk(chunk_id)

    def get_chunk_by_checksum(self, checksum: str) -> Chunk | None:
        with self._guard("get_chunk_by_checksum"):
            return self._repo.get_chunk_by_checksum(checksum)

    def existing_checksums(self, checksums: Iterable[str]) -> set[str]:
        with self._guard("existing_checksums"):
            return self._repo.existing_checksums(checksums)

    def delete_by_source(self, source: str) -> int:
        """Remove file *source* (or the chunk whose checksum is *source*).

        Chunks of the file that another file also produces are kept and
        reassigned to it. Tag links go with deleted chunks; tags left without
        chunks are removed. Returns the number of chunks deleted.
        """
        with self._guard("delete_by_source"):
            by_checksum = list(self._repo.chunk_ids_for_checksums([source]))
            claimed = self._repo.stale_chunk_ids(source, ())
            orphans = self._repo.release_source(source, claimed)
            deleted = self._repo.delete_chunks(list(dict.fromkeys([*by_checksum, *orphans])))
            if deleted:
                self._repo.delete_unreferenced_tags()
        return deleted

    def prune_source(self, source_path: str, keep_checksums: Iterable[str]) -> int:
        """Make *keep_checksums* the full set of chunks *source_path* produces.

        Stored chunks among *keep_checksums* are recorded under the file.
        Chunks the file no longer produces are deleted unless another file
        still does. Returns the number of chunks deleted.
        """
        keep = set(keep_checksums)
        with self._guard("prune_source"):
            self._repo.link_source(source_path, self._repo.chunk_ids_for_checksums(keep))
            orphans = self._repo.release_source(
                source_path, self._repo.stale_chunk_ids(source_path, keep)
            )
            deleted = self._repo.delete_chunks(orphans)
            if deleted:
                self._repo.delete_unreferenced_tags()
        return deleted

    def list_sources(self) -> list[tuple[str, int]]:
        with self._guard("list_sources"):
            return self._repo.list_sources()

    def list_tags(self) -> list[str]:
        with self._guard("list_tags"):
            return self._repo.list_tags()

    def stats(self) -> StoreStats:
        with self._guard("stats"):
            return StoreStats(
                chunks=self._repo.count_chunks(),
                sources=len(self._repo.list_sources()),
                tags=len(self._repo.list_tags()),
                messages=self._repo.count_messages(),
                unindexed_chunks=self._repo.count_unindexed(VEC_CHUNKS),
                unindexed_messages=self._repo.count_unindexed(VEC_MESSAGES),
                metric=self.metric,
                dimensions=self.dimensions,
                ann=self._ann_chunks,
            )

    # ------------------------------------------------------------------
    # Sessions and messages
    # ------------------------------------------------------------------

    def add_session(self, session: Session) -> None:
        with self._guard("add_session"):
            self._repo.add_session(session)

    def get_session(self, session_id: str) -> Session | None:
        with self._guard("get_session"):
            return self._repo.get_session(session_id)

    def list_sessions(self) -> list[Session]:
        with self._guard("list_sessions"):
            return self._repo.list_sessions()

    def update_summary(self, session_id: str, summary: str) -> None:
        with self._guard("update_summary"):
            self._repo.update_summary(session_id, summary)

    def delete_session(self, session_id: str) -> None:
        with self._guard("delete_session"):
            self._repo.delete_session(session_id)

    def list_messages(self, session_id: str) -> list[Message]:
        with self._guard("list_messages"):
            return self._repo.list_messages(session_id)

    def add_messages(self, session_id: str, messages: Sequence[Message]) -> list[int]:
        """Persist *messages* of *session_id* in one transaction.

        Raises:
            ValueError: If a message belongs to another session or carries an
                embedding of the wrong dimension.
        """
        for m in messages:
            if m.session_id != session_id:
                raise ValueError(
                    f"message {m.id} belongs to session {m.session_id}, not {session_id}"
                )
            if m.embedding is not None:
                check_dimensions(m.embedding, self.dimensions)
        with self._guard("add_messages"):
            rowids = self._repo.add_messages(messages)
        self._announce(
            VEC_MESSAGES, [r for r, m in zip(rowids, messages) if m.embedding is not None]
        )
        return rowids

    def query_similar_messages(
        self,
        query_embedding: Sequence[float],
        k: int,
        session_id: str | None = None,
    ) -> list[tuple[Message, float]]:
        """Return up to *k* embedded messages closest to *query_embedding*."""
        check_dimensions(query_embedding, self.dimensions)
        if k < 1:
            return []
        with self._guard("query_similar_messages"):
            if session_id is not None or not self._ann_messages:
                hits = self._repo.scan_messages(
                    query_embedding, self._distance_fn, k, session_id=session_id
                )
            else:
                hits = _merge(
                    self._repo.search_index(VEC_MESSAGES, query_embedding, k),
                    self._repo.scan_messages(
                        query_embedding, self._distance_fn, k, unindexed_only=True
                    ),
                    k,
                )
            messages = self._repo.get_messages_by_rowid([r for r, _ in hits])
        return [
            (messages[r], normalize_distance(self.metric, d)) for r, d in hits if r in messages
        ]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _announce(self, table: str, keys: Sequence[int]) -> None:
        # A stopped builder re-reads the backlog from the database on start().
        if self.indexer is not None and self.indexer.running and keys:
            self.indexer.notify(table, keys)

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as exc:
            log.warning("store.error", operation=operation, error=str(exc))
            raise StoreUnavailable(f"Vector store '{operation}' failed: {exc}") from exc


def _merge(
    ann: list[tuple[int, float]], tail: list[tuple[int, float]], k: int
) -> list[tuple[int, float]]:
    """Union of two hit lists keyed by id, best distance kept, top *k*."""
    best: dict[int, float] = {}
    for key, distance in (*ann, *tail):
        if distance is None:
            continue
        if key not in best or distance < best[key]:
            best[key] = distance
    return sorted(best.items(), key=lambda item: (item[1], item[0]))[:k]
