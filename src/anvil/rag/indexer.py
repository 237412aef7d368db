"""Background ANN index builder.

New chunk and message rows are written with ``indexed = 0`` and announced
here. A single worker task copies their embeddings into the vec0 tables in
batches and flips ``indexed`` to 1. Queries merge in the tail scan, so they
are correct at every point of the builder's progress.
"""

from __future__ import annotations

import asyncio
import contextlib
import sqlite3
from collections.abc import Sequence

import structlog

from anvil.db.repository import Repository
from anvil.db.vectors import INDEX_TABLES, ensure_vec_index

log = structlog.get_logger(__name__)


class IndexBuilder:
    """Owns the ``(table, rowid)`` queue and the worker that drains it.

    Args:
        conn: The store's connection.
        metric: Distance metric; ``dot`` has no ANN table, so nothing is queued.
        dimensions: Embedding dimensions.
        batch_size: Maximum rows copied per transaction.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        metric: str,
        dimensions: int,
        *,
        batch_size: int = 128,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._repo = Repository(conn)
        self.batch_size = batch_size
        self.tables = tuple(
            t for t in INDEX_TABLES if ensure_vec_index(conn, t, dimensions, metric)
        )
        self._queue: asyncio.Queue[tuple[str, int]] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify(self, table: str, keys: Sequence[int]) -> None:
        """Queue *keys* of *table* for indexing. Ignored for tables without ANN."""
        if table not in self.tables:
            return
        for key in keys:
            self._queue.put_nowait((table, key))

    async def start(self) -> None:
        """Queue the backlog of unindexed rows and spawn the worker."""
        if self.running:
            return
        for table in self.tables:
            self.notify(table, self._repo.pending_index_rows(table))
        self._task = asyncio.create_task(self._run(), name="anvil-index-builder")

    async def drain(self) -> None:
        """Wait until every queued row has been processed."""
        if not self.running:
            return
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def __aenter__(self) -> IndexBuilder:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    def index_pending(self) -> int:
        """Synchronously index every unindexed row (used by one-shot CLI runs)."""
        total = 0
        for table in self.tables:
            keys = self._repo.pending_index_rows(table)
            for start in range(0, len(keys), self.batch_size):
                total += self._repo.index_rows(table, keys[start : start + self.batch_size])
        return total

    async def _run(self) -> None:
        while True:
            batch = [await self._queue.get()]
            while len(batch) < self.batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            try:
                self._index(batch)
            finally:
                for _ in batch:
                    self._queue.task_done()
            # Let writers and queries run between batches.
            await asyncio.sleep(0)

    def _index(self, batch: list[tuple[str, int]]) -> None:
        by_table: dict[str, list[int]] = {}
        for table, key in batch:
            by_table.setdefault(table, []).append(key)
        for table, keys in by_table.items():
            try:
                n = self._repo.index_rows(table, keys)
            except sqlite3.Error as exc:
                # Rows keep indexed = 0 and stay visible to the tail scan.
                log.warning("index.failed", table=table, rows=len(keys), error=str(exc))
                continue
            log.debug("index.batch", table=table, queued=len(keys), indexed=n)
