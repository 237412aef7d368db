"""Anvil CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from anvil.cli.ask import ask_cmd
from anvil.cli.ingest import ingest_cmd
from anvil.cli.init import init_cmd
from anvil.cli.remove import remove_cmd
from anvil.cli.search import search_cmd
from anvil.cli.sessions import sessions_cmd
from anvil.cli.status import status_cmd
from anvil.cli.tools import tools_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("anvil")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"anvil {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="anvil",
    help=(
        "Anvil — retrieval-augmented coding assistant backend.\n\n"
        "  anvil ingest  Chunk, embed and store project files.\n"
        "  anvil ask     Ask the model, with retrieved context and whitelisted tools."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Anvil — retrieval-augmented coding assistant backend."""


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("remove")(remove_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)
app.command("tools")(tools_cmd)
app.command("ask")(ask_cmd)
app.command("sessions")(sessions_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Anvil version."""
    typer.echo(f"anvil {_installed_version()}")


if __name__ == "__main__":
    app()
