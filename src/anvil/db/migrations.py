"""Forward-only migration runner for Anvil's database schema.

Vec tables (vec_chunks, vec_messages) are NOT migration-managed — their
dimension and metric come from configuration, see ensure_vec_index().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS vector_indexes (
    name        TEXT PRIMARY KEY,
    dimensions  INTEGER NOT NULL,
    metric      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    content         TEXT NOT NULL,
    source_checksum TEXT NOT NULL UNIQUE,
    source_path     TEXT,
    page_number     INTEGER,
    embedding       BLOB NOT NULL,
    indexed         INTEGER NOT NULL DEFAULT 0,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS chunks_source_path_idx ON chunks(source_path);
CREATE INDEX IF NOT EXISTS chunks_unindexed_idx ON chunks(indexed) WHERE indexed = 0;

CREATE TABLE IF NOT EXISTS tags (
    id      INTEGER PRIMARY KEY AUTOINCREMENT,
    name    TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS chunk_tags (
    chunk_id    INTEGER NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    tag_id      INTEGER NOT NULL REFERENCES tags(id) ON DELETE CASCADE,
    PRIMARY KEY (chunk_id, tag_id)
);
"""

_V2_SQL = """
CREATE TABLE IF NOT EXISTS sessions (
    id          TEXT PRIMARY KEY,
    started_at  DATETIME NOT NULL DEFAULT (datetime('now')),
    config      TEXT NOT NULL DEFAULT '{}',
    summary     TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    id          TEXT NOT NULL UNIQUE,
    session_id  TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    role        TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant', 'tool')),
    content     TEXT NOT NULL,
    embedding   BLOB,
    indexed     INTEGER NOT NULL DEFAULT 0,
    created_at  DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS messages_session_idx ON messages(session_id);
"""

_V3_SQL = """
CREATE TABLE IF NOT EXISTS chunk_sources (
    chunk_id    INTEGER NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    source_path TEXT NOT NULL,
    PRIMARY KEY (chunk_id, source_path)
);

CREATE INDEX IF NOT EXISTS chunk_sources_path_idx ON chunk_sources(source_path);

INSERT OR IGNORE INTO chunk_sources (chunk_id, source_path)
    SELECT id, source_path FROM chunks WHERE source_path IS NOT NULL;
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
    (3, _V3_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
