"""anvil init — create anvil.yaml and the project database.

Creates:
  anvil.yaml     — project config (kept if it already exists)
  .anvil.db      — knowledge base with schema and vector indexes
  .anvil/        — session directory (saved patches live in .anvil/patches)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from anvil.cli.runtime import load_cfg, open_runtime
from anvil.config import write_project_config

console = Console()


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = Path("."),
) -> None:
    """Initialize an Anvil project: config file, database and session directory."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    existed = (project_dir / "anvil.yaml").exists()
    config_path = write_project_config(project_dir)
    console.print(
        f"  [dim]↷[/] {config_path.name} exists — kept"
        if existed
        else f"  [green]✓[/] {config_path.name}"
    )

    cfg = load_cfg(project_dir)
    runtime = open_runtime(cfg, create=True)
    try:
        stats = runtime.store.stats()
    finally:
        runtime.close()
    console.print(
        f"  [green]✓[/] {cfg.storage.db} "
        f"({stats.dimensions} dims, {stats.metric}, "
        f"{'ANN index' if stats.ann else 'exact scan only'})"
    )

    cfg.session_dir.mkdir(parents=True, exist_ok=True)
    console.print(f"  [green]✓[/] {cfg.storage.session_dir}/")
    console.print("\nNext:  anvil ingest --source . --recursive")
