"""SQLite connection layer with sqlite-vec extension."""

from __future__ import annotations

import sqlite3
import struct
from pathlib import Path

import sqlite_vec


def _dot_distance(a: bytes | None, b: bytes | None) -> float | None:
    """Negative inner product of two float32 blobs (smaller = more similar)."""
    if a is None or b is None:
        return None
    n = len(a) // 4
    if len(b) // 4 != n:
        raise ValueError("vector dimension mismatch")
    xs = struct.unpack(f"<{n}f", a)
    ys = struct.unpack(f"<{n}f", b)
    return -sum(x * y for x, y in zip(xs, ys))


class Database:
    """Per-project SQLite database with sqlite-vec vector search support."""

    def __init__(self, db_path: Path | str) -> None:
        """Store the database path. Call connect() to open the connection.

        Args:
            db_path: Path to the SQLite database file (created if missing).
        """
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection, load sqlite-vec, and return the connection.

        Besides sqlite-vec's ``vec_distance_l2`` / ``vec_distance_cosine``,
        the connection gets a ``vec_distance_dot`` scalar function so the
        exact scan can serve the dot-product metric.
        """
        if self.db_path.parent and not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.create_function("vec_distance_dot", 2, _dot_distance, deterministic=True)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        """Open the database and return the connection (context manager support)."""
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        """Close the connection when leaving the context manager."""
        if self._conn:
            self._conn.close()
            self._conn = None
