"""anvil tools — list the tools the model may call."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from anvil.cli.errors import err_config
from anvil.cli.runtime import load_cfg
from anvil.errors import ConfigError
from anvil.tools.definitions import ParamKind
from anvil.tools.registry import build_registry

console = Console()


def tools_cmd(
    project: Annotated[
        Path,
        typer.Option("--project", "-p", help="Project directory holding anvil.yaml."),
    ] = Path("."),
) -> None:
    """Show the enabled tools and their parameters."""
    cfg = load_cfg(project)
    try:
        registry = build_registry(cfg.tools)
    except ConfigError as exc:
        console.print(err_config(exc.message))
        raise typer.Exit(1) from exc

    table = Table(title=f"Tools (timeout {cfg.tools.timeout:g}s)", show_lines=True)
    table.add_column("Tool", style="bold")
    table.add_column("Program")
    table.add_column("Parameters")
    for definition in registry:
        params = []
        for p in definition.parameters:
            line = f"{p.name}{'*' if p.required else ''} ({p.kind.value})"
            if p.kind in (ParamKind.OPTIONS, ParamKind.CHOICE) and p.allowed_values:
                line += f": {' '.join(p.allowed_values)}"
            params.append(line)
        table.add_row(
            definition.name,
            " ".join((definition.program, *definition.base_args)),
            "\n".join(params) or "[dim](none)[/]",
        )
    console.print(table)
    console.print("[dim]* required[/]")
