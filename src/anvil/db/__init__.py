"""Anvil database layer."""

from anvil.db.connection import Database
from anvil.db.migrations import MIGRATIONS, run_migrations
from anvil.db.repository import Repository
from anvil.db.schema import initialize
from anvil.db.vectors import VEC_CHUNKS, VEC_MESSAGES, ensure_vec_index

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_index",
    "VEC_CHUNKS",
    "VEC_MESSAGES",
]
