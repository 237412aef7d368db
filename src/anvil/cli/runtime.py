"""Shared CLI wiring: config loading, database opening, component assembly.

Commands call these helpers so every one of them reports configuration
and database problems the same way (an actionable message and exit 1).
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console

from anvil.cli.errors import err_config, err_index_mismatch, err_no_api_key, err_no_db
from anvil.config import AnvilConfig, load_config
from anvil.db.connection import Database
from anvil.db.schema import initialize
from anvil.errors import ConfigError
from anvil.observability import setup_logging
from anvil.rag.indexer import IndexBuilder
from anvil.rag.llm_client import EmbeddingClient, validate_api_key
from anvil.rag.store import VectorStore

console = Console()


@dataclass
class Runtime:
    cfg: AnvilConfig
    conn: sqlite3.Connection
    store: VectorStore
    indexer: IndexBuilder

    def close(self) -> None:
        self.conn.close()


def load_cfg(project_dir: Path) -> AnvilConfig:
    """Load config for *project_dir* and configure logging; exit 1 on ConfigError."""
    try:
        cfg = load_config(project_dir.resolve())
    except ConfigError as exc:
        console.print(err_config(exc.message))
        raise typer.Exit(1) from exc
    setup_logging(cfg.logging.level, cfg.logging.format)
    return cfg


def open_db(db_path: Path) -> sqlite3.Connection:
    """Open (or create) the project database and run migrations."""
    conn = Database(db_path).connect()
    initialize(conn)
    return conn


def open_runtime(cfg: AnvilConfig, *, create: bool = False) -> Runtime:
    """Open the database and build the store with its index builder.

    Exits with code 1 when the database is missing (unless *create*) or was
    built with different index settings.
    """
    if not create and not cfg.db_path.exists():
        console.print(err_no_db(str(cfg.db_path)))
        raise typer.Exit(1)
    conn = open_db(cfg.db_path)
    try:
        indexer = IndexBuilder(
            conn,
            cfg.retrieval.distance_metric,
            cfg.embedding.dimensions,
            batch_size=cfg.retrieval.index_batch_size,
        )
        store = VectorStore(
            conn,
            cfg.embedding.dimensions,
            cfg.retrieval.distance_metric,
            indexer=indexer,
        )
    except ConfigError as exc:
        conn.close()
        console.print(err_index_mismatch(exc.message))
        raise typer.Exit(1) from exc
    return Runtime(cfg=cfg, conn=conn, store=store, indexer=indexer)


def require_api_key(model: str) -> None:
    try:
        validate_api_key(model)
    except ConfigError as exc:
        provider = model.split("/")[0] if "/" in model else "openai"
        console.print(err_no_api_key(provider))
        raise typer.Exit(1) from exc


def embedding_client(cfg: AnvilConfig) -> EmbeddingClient:
    e = cfg.embedding
    return EmbeddingClient(
        e.model,
        e.dimensions,
        batch_size=e.batch_size,
        max_attempts=e.max_attempts,
    )
