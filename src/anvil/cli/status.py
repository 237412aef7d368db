"""anvil status — database and index overview."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from anvil.cli.errors import err_store_unavailable
from anvil.cli.runtime import load_cfg, open_runtime
from anvil.errors import StoreUnavailable

console = Console()


def status_cmd(
    project: Annotated[
        Path,
        typer.Option("--project", "-p", help="Project directory holding anvil.yaml."),
    ] = Path("."),
) -> None:
    """Show knowledge base stats and ingested sources."""
    cfg = load_cfg(project)
    runtime = open_runtime(cfg)
    try:
        stats = runtime.store.stats()
        sources = runtime.store.list_sources()
        tags = runtime.store.list_tags()
    except StoreUnavailable as exc:
        console.print(err_store_unavailable(str(cfg.db_path), exc.message))
        raise typer.Exit(1) from exc
    finally:
        runtime.close()

    console.print(
        Panel(
            f"Database:   {cfg.db_path}\n"
            f"Embedding:  {cfg.embedding.model} ({stats.dimensions} dims)\n"
            f"Metric:     {stats.metric} ({'ANN + tail scan' if stats.ann else 'exact scan'})\n"
            f"Chunks:     {stats.chunks} ({stats.unindexed_chunks} not yet indexed)\n"
            f"Messages:   {stats.messages} ({stats.unindexed_messages} not yet indexed)\n"
            f"Tags:       {', '.join(tags) if tags else '(none)'}",
            title="[bold]Knowledge Base[/]",
            expand=False,
        )
    )
    if not sources:
        console.print("[dim]No sources ingested yet.  Run:  anvil ingest --source PATH[/]")
        return
    table = Table(title="Sources")
    table.add_column("Source")
    table.add_column("Chunks", justify="right")
    for path, count in sources:
        table.add_row(path, str(count))
    console.print(table)
