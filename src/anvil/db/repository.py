"""Repository pattern for all Anvil database operations.

Single interface for: chunks, tags, sessions, messages, exact vector scans,
and vec0 index bookkeeping. Vec tables are created by ensure_vec_index();
the repository handles read + write.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Sequence

from anvil.db.models import Chunk, Message, Session
from anvil.db.vectors import VEC_CHUNKS, VEC_MESSAGES, deserialize, serialize

# vec0 table -> (base table, key column holding the vec0 rowid)
_INDEX_SOURCES: dict[str, tuple[str, str]] = {
    VEC_CHUNKS: ("chunks", "id"),
    VEC_MESSAGES: ("messages", "seq"),
}


class Repository:
    """Data access layer for all Anvil database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see anvil.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def insert_chunk(
        self,
        content: str,
        checksum: str,
        embedding: Sequence[float],
        source_path: str | None = None,
        page_number: int | None = None,
    ) -> int | None:
        """Insert a chunk unless its checksum exists. Returns the new id or None."""
        cur = self._conn.execute(
            """
            INSERT INTO chunks (content, source_checksum, source_path, page_number, embedding)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(source_checksum) DO NOTHING
            """,
            (content, checksum, source_path, page_number, serialize(embedding)),
        )
        new_id = cur.lastrowid if cur.rowcount == 1 else None
        if new_id is not None and source_path is not None:
            self._conn.execute(
                "INSERT OR IGNORE INTO chunk_sources (chunk_id, source_path) VALUES (?, ?)",
                (new_id, source_path),
            )
        self._conn.commit()
        return new_id

    def get_chunk(self, chunk_id: int) -> Chunk | None:
        """Return a chunk (with its tags) by id, or None if not found."""
        return self.get_chunks([chunk_id]).get(chunk_id)

    def get_chunk_by_checksum(self, checksum: str) -> Chunk | None:
        row = self._conn.execute(
            "SELECT id FROM chunks WHERE source_checksum = ?", (checksum,)
        ).fetchone()
        return self.get_chunk(row["id"]) if row else None

    def get_chunks(self, chunk_ids: Iterable[int]) -> dict[int, Chunk]:
        """Return ``{id: Chunk}`` for every id that still exists."""
        ids = list(dict.fromkeys(chunk_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = self._conn.execute(
            f"""
            SELECT id, content, source_checksum, source_path, page_number, embedding, created_at
            FROM chunks WHERE id IN ({placeholders})
            """,
            ids,
        ).fetchall()
        tags = self.tags_for_chunks(ids)
        return {r["id"]: _row_to_chunk(r, tags.get(r["id"], [])) for r in rows}

    def existing_checksums(self, checksums: Iterable[str]) -> set[str]:
        """Return the subset of *checksums* already stored."""
        return set(self.chunk_ids_for_checksums(checksums).values())

    def chunk_ids_for_checksums(self, checksums: Iterable[str]) -> dict[int, str]:
        """Return ``{id: checksum}`` for the stored chunks among *checksums*."""
        wanted = list(dict.fromkeys(checksums))
        found: dict[int, str] = {}
        # Stay well under SQLITE_MAX_VARIABLE_NUMBER.
        for start in range(0, len(wanted), 500):
            batch = wanted[start : start + 500]
            placeholders = ",".join("?" * len(batch))
            rows = self._conn.execute(
                f"SELECT id, source_checksum FROM chunks WHERE source_checksum IN ({placeholders})",
                batch,
            ).fetchall()
            found.update((r["id"], r["source_checksum"]) for r in rows)
        return found

    def stale_chunk_ids(self, source_path: str, keep_checksums: Iterable[str]) -> list[int]:
        """Ids of chunks *source_path* produces whose checksum is not in *keep_checksums*."""
        keep = set(keep_checksums)
        rows = self._conn.execute(
            """
            SELECT c.id, c.source_checksum FROM chunks c
            JOIN chunk_sources cs ON cs.chunk_id = c.id
            WHERE cs.source_path = ? ORDER BY c.id
            """,
            (source_path,),
        ).fetchall()
        return [r["id"] for r in rows if r["source_checksum"] not in keep]

    def link_source(self, source_path: str, chunk_ids: Iterable[int]) -> None:
        """Record that file *source_path* produces the chunks *chunk_ids*."""
        self._conn.executemany(
            "INSERT OR IGNORE INTO chunk_sources (chunk_id, source_path) VALUES (?, ?)",
            [(i, source_path) for i in chunk_ids],
        )
        self._conn.commit()

    def release_source(self, source_path: str, chunk_ids: Sequence[int]) -> list[int]:
        """Drop *source_path*'s claim on *chunk_ids*.

        Chunks still produced by another file are handed to one of those files
        (``chunks.source_path``). Returns the ids no file produces any more;
        the caller deletes them.
        """
        if not chunk_ids:
            return []
        ids = list(chunk_ids)
        placeholders = ",".join("?" * len(ids))
        self._conn.execute(
            f"DELETE FROM chunk_sources WHERE source_path = ? AND chunk_id IN ({placeholders})",
            [source_path, *ids],
        )
        self._conn.execute(
            f"""
            UPDATE chunks SET source_path = (
                SELECT MIN(cs.source_path) FROM chunk_sources cs WHERE cs.chunk_id = chunks.id
            )
            WHERE source_path = ? AND id IN ({placeholders})
            """,
            [source_path, *ids],
        )
        rows = self._conn.execute(
            f"""
            SELECT id FROM chunks
            WHERE id IN ({placeholders})
              AND id NOT IN (SELECT chunk_id FROM chunk_sources)
            ORDER BY id
            """,
            ids,
        ).fetchall()
        self._conn.commit()
        return [r[0] for r in rows]

    def delete_chunks(self, chunk_ids: Sequence[int]) -> int:
        """Delete chunks, their tag links (cascade) and their vec rows."""
        if not chunk_ids:
            return 0
        placeholders = ",".join("?" * len(chunk_ids))
        if self._has_table(VEC_CHUNKS):
            self._conn.execute(
                f"DELETE FROM {VEC_CHUNKS} WHERE rowid IN ({placeholders})", list(chunk_ids)
            )
        cur = self._conn.execute(
            f"DELETE FROM chunks WHERE id IN ({placeholders})", list(chunk_ids)
        )
        self._conn.commit()
        return cur.rowcount

    def list_sources(self) -> list[tuple[str, int]]:
        """Return ``[(source_path, chunk_count), ...]`` ordered by path."""
        rows = self._conn.execute(
            """
            SELECT source_path, COUNT(*) AS n FROM chunk_sources
            GROUP BY source_path ORDER BY source_path
            """
        ).fetchall()
        return [(r["source_path"], r["n"]) for r in rows]

    def count_chunks(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def ensure_tags(self, names: Iterable[str]) -> list[int]:
        """Create missing tags and return the ids of *names* in order."""
        ids: list[int] = []
        for name in dict.fromkeys(names):
            self._conn.execute(
                "INSERT INTO tags (name) VALUES (?) ON CONFLICT(name) DO NOTHING", (name,)
            )
            ids.append(
                self._conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()[0]
            )
        self._conn.commit()
        return ids

    def link_tags(self, chunk_id: int, tag_ids: Iterable[int]) -> None:
        self._conn.executemany(
            "INSERT OR IGNORE INTO chunk_tags (chunk_id, tag_id) VALUES (?, ?)",
            [(chunk_id, t) for t in tag_ids],
        )
        self._conn.commit()

    def tags_for_chunks(self, chunk_ids: Sequence[int]) -> dict[int, list[str]]:
        if not chunk_ids:
            return {}
        placeholders = ",".join("?" * len(chunk_ids))
        rows = self._conn.execute(
            f"""
            SELECT ct.chunk_id, t.name FROM chunk_tags ct JOIN tags t ON t.id = ct.tag_id
            WHERE ct.chunk_id IN ({placeholders}) ORDER BY t.name
            """,
            list(chunk_ids),
        ).fetchall()
        result: dict[int, list[str]] = {}
        for r in rows:
            result.setdefault(r["chunk_id"], []).append(r["name"])
        return result

    def list_tags(self) -> list[str]:
        return [r[0] for r in self._conn.execute("SELECT name FROM tags ORDER BY name")]

    def delete_unreferenced_tags(self) -> int:
        cur = self._conn.execute(
            "DELETE FROM tags WHERE id NOT IN (SELECT DISTINCT tag_id FROM chunk_tags)"
        )
        self._conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Vector search — exact scan + vec0 ANN
    # ------------------------------------------------------------------

    def scan_chunks(
        self,
        embedding: Sequence[float],
        distance_fn: str,
        limit: int,
        *,
        unindexed_only: bool = False,
        tags: Sequence[str] | None = None,
    ) -> list[tuple[int, float]]:
        """Exact distance scan over chunks. Returns ``[(id, raw_distance)]`` best-first."""
        where: list[str] = []
        params: list[object] = [serialize(embedding)]
        if unindexed_only:
            where.append("c.indexed = 0")
        if tags:
            placeholders = ",".join("?" * len(tags))
            where.append(
                f"""c.id IN (
                    SELECT ct.chunk_id FROM chunk_tags ct JOIN tags t ON t.id = ct.tag_id
                    WHERE t.name IN ({placeholders}))"""
            )
            params.extend(tags)
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        params.append(limit)
        rows = self._conn.execute(
            f"""
            SELECT c.id AS id, {distance_fn}(c.embedding, ?) AS distance
            FROM chunks c {clause}
            ORDER BY distance LIMIT ?
            """,
            params,
        ).fetchall()
        return [(r["id"], r["distance"]) for r in rows]

    def search_index(
        self, table: str, embedding: Sequence[float], limit: int
    ) -> list[tuple[int, float]]:
        """Nearest-neighbour search on a vec0 table. Returns ``[(rowid, raw_distance)]``."""
        rows = self._conn.execute(
            f"SELECT rowid, distance FROM {table} "
            "WHERE embedding MATCH ? AND k = ? ORDER BY distance",
            (serialize(embedding), limit),
        ).fetchall()
        return [(r["rowid"], r["distance"]) for r in rows]

    # ------------------------------------------------------------------
    # Index bookkeeping (used by the background index builder)
    # ------------------------------------------------------------------

    def pending_index_rows(self, table: str) -> list[int]:
        """Keys of rows with an embedding that are not yet copied into *table*."""
        base, key = _INDEX_SOURCES[table]
        rows = self._conn.execute(
            f"SELECT {key} FROM {base} WHERE indexed = 0 AND embedding IS NOT NULL ORDER BY {key}"
        ).fetchall()
        return [r[0] for r in rows]

    def index_rows(self, table: str, keys: Sequence[int]) -> int:
        """Copy embeddings of *keys* into the vec0 *table* and mark them indexed.

        Rows deleted since they were queued, or already indexed, are skipped.
        Returns the number of rows indexed.
        """
        if not keys:
            return 0
        base, key = _INDEX_SOURCES[table]
        placeholders = ",".join("?" * len(keys))
        rows = self._conn.execute(
            f"""
            SELECT {key} AS k, embedding FROM {base}
            WHERE {key} IN ({placeholders}) AND indexed = 0 AND embedding IS NOT NULL
            """,
            list(keys),
        ).fetchall()
        try:
            for r in rows:
                self._conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (r["k"],))
                self._conn.execute(
                    f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
                    (r["k"], r["embedding"]),
                )
                self._conn.execute(f"UPDATE {base} SET indexed = 1 WHERE {key} = ?", (r["k"],))
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return len(rows)

    def count_unindexed(self, table: str) -> int:
        base, _ = _INDEX_SOURCES[table]
        return self._conn.execute(
            f"SELECT COUNT(*) FROM {base} WHERE indexed = 0 AND embedding IS NOT NULL"
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def add_session(self, session: Session) -> None:
        self._conn.execute(
            "INSERT INTO sessions (id, config, summary) VALUES (?, ?, ?)",
            (session.id, json.dumps(session.config), session.summary),
        )
        self._conn.commit()

    def get_session(self, session_id: str) -> Session | None:
        row = self._conn.execute(
            "SELECT id, started_at, config, summary FROM sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return _row_to_session(row) if row else None

    def list_sessions(self) -> list[Session]:
        rows = self._conn.execute(
            "SELECT id, started_at, config, summary FROM sessions ORDER BY started_at, rowid"
        ).fetchall()
        return [_row_to_session(r) for r in rows]

    def update_summary(self, session_id: str, summary: str) -> None:
        self._conn.execute(
            "UPDATE sessions SET summary = ? WHERE id = ?", (summary, session_id)
        )
        self._conn.commit()

    def delete_session(self, session_id: str) -> None:
        """Delete a session; its messages go with it (ON DELETE CASCADE)."""
        if self._has_table(VEC_MESSAGES):
            self._conn.execute(
                f"""DELETE FROM {VEC_MESSAGES} WHERE rowid IN
                    (SELECT rowid FROM messages WHERE session_id = ?)""",
                (session_id,),
            )
        self._conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def add_messages(self, messages: Sequence[Message]) -> list[int]:
        """Insert *messages* in one transaction. Returns their rowids.

        Either every message is stored or none is.
        """
        rowids: list[int] = []
        try:
            for m in messages:
                cur = self._conn.execute(
                    """
                    INSERT INTO messages (id, session_id, role, content, embedding)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        m.id,
                        m.session_id,
                        m.role,
                        json.dumps(m.content),
                        serialize(m.embedding) if m.embedding is not None else None,
                    ),
                )
                rowids.append(cur.lastrowid)
            self._conn.commit()
        except sqlite3.Error:
            self._conn.rollback()
            raise
        return rowids

    def list_messages(self, session_id: str) -> list[Message]:
        """Messages of *session_id* in arrival order."""
        rows = self._conn.execute(
            """
            SELECT id, session_id, role, content, embedding, created_at
            FROM messages WHERE session_id = ? ORDER BY rowid
            """,
            (session_id,),
        ).fetchall()
        return [_row_to_message(r) for r in rows]

    def get_messages_by_rowid(self, rowids: Sequence[int]) -> dict[int, Message]:
        if not rowids:
            return {}
        placeholders = ",".join("?" * len(rowids))
        rows = self._conn.execute(
            f"""
            SELECT rowid, id, session_id, role, content, embedding, created_at
            FROM messages WHERE rowid IN ({placeholders})
            """,
            list(rowids),
        ).fetchall()
        return {r["rowid"]: _row_to_message(r) for r in rows}

    def scan_messages(
        self,
        embedding: Sequence[float],
        distance_fn: str,
        limit: int,
        *,
        unindexed_only: bool = False,
        session_id: str | None = None,
    ) -> list[tuple[int, float]]:
        """Exact distance scan over embedded messages. Returns ``[(rowid, raw_distance)]``."""
        where = ["embedding IS NOT NULL"]
        params: list[object] = [serialize(embedding)]
        if unindexed_only:
            where.append("indexed = 0")
        if session_id is not None:
            where.append("session_id = ?")
            params.append(session_id)
        params.append(limit)
        rows = self._conn.execute(
            f"""
            SELECT rowid, {distance_fn}(embedding, ?) AS distance FROM messages
            WHERE {' AND '.join(where)}
            ORDER BY distance LIMIT ?
            """,
            params,
        ).fetchall()
        return [(r["rowid"], r["distance"]) for r in rows]

    def count_messages(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _has_table(self, name: str) -> bool:
        return (
            self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,)
            ).fetchone()
            is not None
        )


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_chunk(row: sqlite3.Row, tags: list[str]) -> Chunk:
    return Chunk(
        id=row["id"],
        content=row["content"],
        source_checksum=row["source_checksum"],
        source_path=row["source_path"],
        page_number=row["page_number"],
        embedding=deserialize(row["embedding"]),
        created_at=row["created_at"],
        tags=tags,
    )


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        started_at=row["started_at"],
        config=json.loads(row["config"]),
        summary=row["summary"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=json.loads(row["content"]),
        embedding=deserialize(row["embedding"]) if row["embedding"] is not None else None,
        created_at=row["created_at"],
    )
