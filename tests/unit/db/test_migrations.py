"""Tests for the forward-only migration runner."""

from __future__ import annotations

import sqlite3

import pytest

from anvil.db.connection import Database
from anvil.db.migrations import MIGRATIONS, run_migrations
from anvil.db.schema import CURRENT_VERSION, initialize


def _tables(conn) -> set[str]:
    return {
        r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    }


def test_initialize_creates_all_tables(tmp_db):
    assert {
        "schema_version",
        "vector_indexes",
        "chunks",
        "tags",
        "chunk_tags",
        "chunk_sources",
        "sessions",
        "messages",
    } <= _tables(tmp_db)


def test_current_version_is_last_migration(tmp_db):
    version = tmp_db.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    assert version == CURRENT_VERSION == MIGRATIONS[-1][0]


def test_run_migrations_is_idempotent(tmp_db):
    run_migrations(tmp_db)
    initialize(tmp_db)
    rows = tmp_db.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert rows == len(MIGRATIONS)


def test_migrations_resume_from_partial_version(tmp_path):
    conn = Database(tmp_path / "partial.db").connect()
    try:
        conn.execute(
            "CREATE TABLE schema_version (version INTEGER NOT NULL, "
            "applied_at DATETIME NOT NULL DEFAULT (datetime('now')))"
        )
        conn.executescript(MIGRATIONS[0][1])
        conn.execute("INSERT INTO schema_version (version) VALUES (1)")
        conn.commit()
        assert "messages" not in _tables(conn)

        run_migrations(conn)
        assert "messages" in _tables(conn)
    finally:
        conn.close()


def test_message_role_is_constrained(tmp_db):
    tmp_db.execute("INSERT INTO sessions (id) VALUES ('s1')")
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(
            "INSERT INTO messages (id, session_id, role, content) VALUES ('m1', 's1', 'robot', '{}')"
        )


def test_chunk_checksum_is_unique(tmp_db):
    tmp_db.execute(
        "INSERT INTO chunks (content, source_checksum, embedding) VALUES ('a', 'x', X'00')"
    )
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(
            "INSERT INTO chunks (content, source_checksum, embedding) VALUES ('b', 'x', X'00')"
        )


def test_chunk_sources_backfilled_from_chunk_paths(tmp_path):
    conn = Database(tmp_path / "v2.db").connect()
    try:
        conn.execute(
            "CREATE TABLE schema_version (version INTEGER NOT NULL, "
            "applied_at DATETIME NOT NULL DEFAULT (datetime('now')))"
        )
        for version, sql in MIGRATIONS[:2]:
            conn.executescript(sql)
            conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
        conn.execute(
            "INSERT INTO chunks (content, source_checksum, source_path, embedding) "
            "VALUES ('a', 'x', 'a.rs', X'00'), ('b', 'y', NULL, X'00')"
        )
        conn.commit()

        run_migrations(conn)
        rows = conn.execute("SELECT source_path FROM chunk_sources").fetchall()
        assert [r[0] for r in rows] == ["a.rs"]
    finally:
        conn.close()
