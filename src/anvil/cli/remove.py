"""anvil remove — delete a source's chunks from the knowledge base.

Usage:
  anvil remove --source src/main.rs
  anvil remove --source <sha256 checksum> --yes
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from anvil.cli.errors import err_source_not_found, err_store_unavailable
from anvil.cli.runtime import load_cfg, open_runtime
from anvil.errors import StoreUnavailable

console = Console()


def remove_cmd(
    source: Annotated[
        str,
        typer.Option("--source", "-s", help="Source path or chunk checksum to remove."),
    ],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
    project: Annotated[
        Path,
        typer.Option("--project", "-p", help="Project directory holding anvil.yaml."),
    ] = Path("."),
) -> None:
    """Remove a source (or a single chunk by checksum) from the knowledge base."""
    cfg = load_cfg(project)
    runtime = open_runtime(cfg)
    try:
        count = dict(runtime.store.list_sources()).get(source, 0)
        if not count and runtime.store.get_chunk_by_checksum(source) is not None:
            count = 1
        if not count:
            console.print(err_source_not_found(source))
            raise typer.Exit(0)

        console.print(f"\nRemove source: [bold]{source}[/]  ({count} chunks)")
        if not yes and not typer.confirm("Confirm removal?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

        deleted = runtime.store.delete_by_source(source)
        console.print(f"\n[green]✓[/] Removed: {source} ({deleted} chunks)")
    except StoreUnavailable as exc:
        console.print(err_store_unavailable(str(cfg.db_path), exc.message))
        raise typer.Exit(1) from exc
    finally:
        runtime.close()
