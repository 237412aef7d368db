"""anvil sessions — list sessions, show one, or delete one."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from anvil.cli.errors import err_session_not_found, err_store_unavailable
from anvil.cli.runtime import load_cfg, open_runtime
from anvil.errors import StoreUnavailable
from anvil.rag.store import VectorStore

console = Console()


def sessions_cmd(
    show: Annotated[
        str | None,
        typer.Option("--show", help="Print the messages of this session."),
    ] = None,
    delete: Annotated[
        str | None,
        typer.Option("--delete", help="Delete this session and its messages."),
    ] = None,
    project: Annotated[
        Path,
        typer.Option("--project", "-p", help="Project directory holding anvil.yaml."),
    ] = Path("."),
) -> None:
    """List chat sessions."""
    cfg = load_cfg(project)
    runtime = open_runtime(cfg)
    try:
        if show is not None:
            _show(runtime.store, show)
        elif delete is not None:
            if runtime.store.get_session(delete) is None:
                console.print(err_session_not_found(delete))
                raise typer.Exit(1)
            runtime.store.delete_session(delete)
            console.print(f"[green]✓[/] Deleted session {delete}")
        else:
            _list(runtime.store)
    except StoreUnavailable as exc:
        console.print(err_store_unavailable(str(cfg.db_path), exc.message))
        raise typer.Exit(1) from exc
    finally:
        runtime.close()


def _list(store: VectorStore) -> None:
    sessions = store.list_sessions()
    if not sessions:
        console.print("[dim]No sessions yet.  Run:  anvil ask \"...\"[/]")
        return
    table = Table(title="Sessions")
    table.add_column("Id", style="bold")
    table.add_column("Started")
    table.add_column("Messages", justify="right")
    table.add_column("Summary")
    for s in sessions:
        summary = (s.summary or "").strip().replace("\n", " ")
        table.add_row(
            s.id,
            s.started_at or "",
            str(len(store.list_messages(s.id))),
            summary[:80] + ("…" if len(summary) > 80 else ""),
        )
    console.print(table)


def _show(store: VectorStore, session_id: str) -> None:
    session = store.get_session(session_id)
    if session is None:
        console.print(err_session_not_found(session_id))
        raise typer.Exit(1)
    if session.summary:
        console.print(f"[bold]Summary:[/] {session.summary}\n")
    for m in store.list_messages(session_id):
        console.print(f"[bold]{m.role}[/]  [dim]{m.created_at}[/]")
        if m.text:
            console.print(m.text, markup=False, highlight=False)
        else:
            console.print("[dim](tool call)[/]")
        console.print()
