"""sqlite-vec ANN index tables and vector (de)serialisation.

One vec0 table per indexed entity (``vec_chunks``, ``vec_messages``). The
dimension and distance metric are fixed the first time an index is created
and recorded in ``vector_indexes``; reopening with different settings is a
configuration error rather than a silent re-index.

Metric semantics (all: smaller = more similar):
  l2      squared Euclidean distance
  cosine  1 - cosine similarity
  dot     negative inner product (no vec0 support — exact scan only)
"""

from __future__ import annotations

import math
import sqlite3
import struct
from collections.abc import Sequence

import sqlite_vec

from anvil.errors import ConfigError

VEC_CHUNKS = "vec_chunks"
VEC_MESSAGES = "vec_messages"
INDEX_TABLES: tuple[str, ...] = (VEC_CHUNKS, VEC_MESSAGES)

# metric -> (vec0 distance_metric option, exact-scan SQL function)
_METRICS: dict[str, tuple[str | None, str]] = {
    "l2": ("l2", "vec_distance_l2"),
    "cosine": ("cosine", "vec_distance_cosine"),
    "dot": (None, "vec_distance_dot"),
}


def serialize(vector: Sequence[float]) -> bytes:
    """Pack *vector* as little-endian float32 (sqlite-vec's blob format)."""
    return sqlite_vec.serialize_float32(list(vector))


def deserialize(blob: bytes) -> list[float]:
    """Inverse of :func:`serialize`."""
    n = len(blob) // 4
    return list(struct.unpack(f"<{n}f", blob))


def supports_ann(metric: str) -> bool:
    """Return True when sqlite-vec can build a vec0 index for *metric*."""
    return _metrics(metric)[0] is not None


def distance_function(metric: str) -> str:
    """SQL function name computing *metric* between two blobs."""
    return _metrics(metric)[1]


def normalize_distance(metric: str, raw: float) -> float:
    """Map a raw sqlite-vec distance onto the documented metric scale.

    sqlite-vec reports Euclidean (not squared) distance for l2.
    """
    if metric == "l2":
        return raw * raw
    return raw


def _metrics(metric: str) -> tuple[str | None, str]:
    try:
        return _METRICS[metric]
    except KeyError:
        raise ConfigError(
            f"Unknown distance metric '{metric}' — use one of {', '.join(sorted(_METRICS))}."
        ) from None


def ensure_vec_index(
    conn: sqlite3.Connection, table: str, dimensions: int, metric: str
) -> bool:
    """Create *table* as a vec0 virtual table if it doesn't already exist.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        table: One of :data:`INDEX_TABLES`.
        dimensions: Embedding vector dimensions (e.g. 1536).
        metric: ``l2``, ``cosine`` or ``dot``.

    Returns:
        True when an ANN table backs this index; False for metrics served by
        the exact scan only.

    Raises:
        ValueError: On an unknown table name or non-positive dimensions.
        ConfigError: If the index already exists with a different dimension
            or metric.
    """
    if table not in INDEX_TABLES:
        raise ValueError(f"Invalid index table '{table}' — use one of {INDEX_TABLES}.")
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")
    vec_metric, _ = _metrics(metric)

    recorded = conn.execute(
        "SELECT dimensions, metric FROM vector_indexes WHERE name = ?", (table,)
    ).fetchone()
    if recorded is not None:
        if recorded["dimensions"] != dimensions or recorded["metric"] != metric:
            raise ConfigError(
                f"Index '{table}' was built with {recorded['dimensions']} dimensions / "
                f"'{recorded['metric']}' metric, but the configuration asks for "
                f"{dimensions} / '{metric}'. Re-create the database or restore the "
                f"original embedding settings."
            )
    else:
        conn.execute(
            "INSERT INTO vector_indexes (name, dimensions, metric) VALUES (?, ?, ?)",
            (table, dimensions, metric),
        )

    if vec_metric is not None:
        existing = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        ).fetchone()
        if existing is None:
            conn.execute(
                f"CREATE VIRTUAL TABLE {table} USING vec0("
                f"embedding float[{dimensions}] distance_metric={vec_metric})"
            )
    conn.commit()
    return vec_metric is not None


def check_dimensions(vector: Sequence[float], dimensions: int) -> None:
    """Raise ValueError unless *vector* has *dimensions* finite components."""
    if len(vector) != dimensions:
        raise ValueError(
            f"embedding has {len(vector)} dimensions, index expects {dimensions}"
        )
    if not all(math.isfinite(x) for x in vector):
        raise ValueError("embedding contains NaN or infinite components")
