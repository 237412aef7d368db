"""anvil ingest — chunk, embed and store files in the project database.

Directories are expanded to the files in them (--recursive for subdirs).
Binary files are skipped. Unchanged chunks are never re-embedded; chunks a
changed file no longer produces are pruned.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from anvil.cli.errors import err_embedding_unavailable, err_no_sources, err_store_unavailable
from anvil.cli.runtime import embedding_client, load_cfg, open_runtime, require_api_key
from anvil.errors import EmbeddingUnavailable, StoreUnavailable
from anvil.ingest.chunker import Chunker
from anvil.ingest.ingester import IngestReport, Ingester

console = Console()


def ingest_cmd(
    source: Annotated[
        list[Path] | None,
        typer.Option("--source", "-s", help="File or directory to ingest (repeatable)."),
    ] = None,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Tag attached to the ingested chunks (repeatable)."),
    ] = None,
    recursive: Annotated[
        bool,
        typer.Option("--recursive", "-r", help="Recurse into subdirectories (max 10 levels)."),
    ] = False,
    exclude: Annotated[
        list[str] | None,
        typer.Option("--exclude", help="Glob pattern to exclude (repeatable)."),
    ] = None,
    project: Annotated[
        Path,
        typer.Option("--project", "-p", help="Project directory holding anvil.yaml."),
    ] = Path("."),
) -> None:
    """Ingest files into the Anvil knowledge base."""
    if not source:
        console.print(err_no_sources())
        raise typer.Exit(1)

    cfg = load_cfg(project)
    require_api_key(cfg.embedding.model)
    runtime = open_runtime(cfg, create=True)
    ingester = Ingester(
        runtime.store,
        embedding_client(cfg),
        Chunker(cfg.chunking.max_tokens),
        project_root=cfg.project_root,
    )
    try:
        reports = asyncio.run(
            ingester.ingest_paths(
                list(source), tags=tag or [], recursive=recursive, exclude=exclude or []
            )
        )
        indexed = runtime.indexer.index_pending()
    except EmbeddingUnavailable as exc:
        console.print(err_embedding_unavailable(cfg.embedding.model, exc.message))
        raise typer.Exit(1) from exc
    except StoreUnavailable as exc:
        console.print(err_store_unavailable(str(cfg.db_path), exc.message))
        raise typer.Exit(1) from exc
    finally:
        runtime.close()

    _print_reports(reports)
    if indexed:
        console.print(f"[dim]{indexed} rows added to the ANN index[/]")


def _print_reports(reports: list[IngestReport]) -> None:
    if not reports:
        console.print("[yellow]No files found to ingest.[/]")
        return
    created = 0
    for r in reports:
        if r.skipped:
            console.print(f"  [yellow]↷[/] {r.source} — skipped ({r.skipped})")
            continue
        created += r.created
        pruned = f", {r.pruned} pruned" if r.pruned else ""
        console.print(f"  [green]✓[/] {r.source} — {r.chunks} chunks, {r.created} new{pruned}")
    console.print(f"\n[bold]{created}[/] new chunks from {len(reports)} file(s)")
