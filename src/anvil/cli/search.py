"""anvil search — similarity search over the knowledge base."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from anvil.cli.errors import err_embedding_unavailable, err_store_unavailable
from anvil.cli.runtime import embedding_client, load_cfg, open_runtime, require_api_key
from anvil.errors import EmbeddingUnavailable, StoreUnavailable

console = Console()


def search_cmd(
    query: Annotated[str, typer.Argument(help="Text to search for.")],
    k: Annotated[int, typer.Option("--k", "-k", min=1, help="Number of results.")] = 5,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Only chunks carrying this tag (repeatable)."),
    ] = None,
    project: Annotated[
        Path,
        typer.Option("--project", "-p", help="Project directory holding anvil.yaml."),
    ] = Path("."),
) -> None:
    """Show the chunks closest to QUERY."""
    cfg = load_cfg(project)
    require_api_key(cfg.embedding.model)
    runtime = open_runtime(cfg)
    try:
        vector = asyncio.run(embedding_client(cfg).embed_one(query))
        hits = runtime.store.query_similar(vector, k, tag or None)
    except EmbeddingUnavailable as exc:
        console.print(err_embedding_unavailable(cfg.embedding.model, exc.message))
        raise typer.Exit(1) from exc
    except StoreUnavailable as exc:
        console.print(err_store_unavailable(str(cfg.db_path), exc.message))
        raise typer.Exit(1) from exc
    finally:
        runtime.close()

    if not hits:
        console.print("[yellow]No matching chunks.[/]")
        return

    table = Table(title=f"Top {len(hits)} for: {query}", show_lines=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Distance", justify="right")
    table.add_column("Source")
    table.add_column("Tags", style="cyan")
    table.add_column("Text")
    for i, (chunk, distance) in enumerate(hits, start=1):
        text = chunk.content.strip()
        table.add_row(
            str(i),
            f"{distance:.4f}",
            chunk.source_path or chunk.source_checksum[:12],
            ", ".join(chunk.tags),
            text[:200] + ("…" if len(text) > 200 else ""),
        )
    console.print(table)
