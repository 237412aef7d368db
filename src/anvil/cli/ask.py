"""anvil ask — run one retrieval-augmented turn, with tools, in a session."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markdown import Markdown

from anvil.cli.errors import (
    err_completion_unavailable,
    err_config,
    err_embedding_unavailable,
    err_session_not_found,
    err_store_unavailable,
)
from anvil.cli.runtime import Runtime, embedding_client, load_cfg, open_runtime, require_api_key
from anvil.errors import CompletionUnavailable, ConfigError, EmbeddingUnavailable, StoreUnavailable
from anvil.rag.llm_client import count_tokens
from anvil.session.context import SessionContext
from anvil.session.coordinator import Coordinator, TurnResult, litellm_completer
from anvil.tools.dispatcher import ToolDispatcher
from anvil.tools.registry import build_registry

console = Console()


def ask_cmd(
    message: Annotated[str, typer.Argument(help="Message to send.")],
    session: Annotated[
        str | None,
        typer.Option("--session", help="Continue this session (default: start a new one)."),
    ] = None,
    tag: Annotated[
        list[str] | None,
        typer.Option("--tag", "-t", help="Restrict retrieval to chunks with this tag (repeatable)."),
    ] = None,
    model: Annotated[
        str | None,
        typer.Option("--model", help="Override generation.model for this call."),
    ] = None,
    summarize: Annotated[
        bool,
        typer.Option("--summarize", help="Refresh the session summary after the turn."),
    ] = False,
    project: Annotated[
        Path,
        typer.Option("--project", "-p", help="Project directory holding anvil.yaml."),
    ] = Path("."),
) -> None:
    """Send MESSAGE to the model with retrieved context and tool access."""
    cfg = load_cfg(project)
    if model:
        cfg.generation.model = model
    require_api_key(cfg.embedding.model)
    require_api_key(cfg.generation.model)

    try:
        registry = build_registry(cfg.tools)
    except ConfigError as exc:
        console.print(err_config(exc.message))
        raise typer.Exit(1) from exc

    runtime = open_runtime(cfg, create=True)
    try:
        if session is not None and runtime.store.get_session(session) is None:
            console.print(err_session_not_found(session))
            raise typer.Exit(1)
        coordinator = Coordinator(
            SessionContext.from_config(
                cfg,
                tag_filter=tuple(tag or ()),
                count_tokens=lambda text: count_tokens(cfg.generation.model, text),
            ),
            runtime.store,
            embedding_client(cfg),
            litellm_completer(cfg.generation),
            ToolDispatcher(
                registry,
                cfg.project_root,
                timeout=cfg.tools.timeout,
                max_output_bytes=cfg.tools.max_output_bytes,
                patches_dir=cfg.session_dir / "patches",
            ),
        )
        result = asyncio.run(_run(runtime, coordinator, session, message, summarize))
    except EmbeddingUnavailable as exc:
        console.print(err_embedding_unavailable(cfg.embedding.model, exc.message))
        raise typer.Exit(1) from exc
    except CompletionUnavailable as exc:
        console.print(err_completion_unavailable(cfg.generation.model, exc.message))
        raise typer.Exit(1) from exc
    except StoreUnavailable as exc:
        console.print(err_store_unavailable(str(cfg.db_path), exc.message))
        raise typer.Exit(1) from exc
    finally:
        runtime.close()

    _print_result(result)


async def _run(
    runtime: Runtime,
    coordinator: Coordinator,
    session_id: str | None,
    message: str,
    summarize: bool,
) -> TurnResult:
    async with runtime.indexer:
        if session_id is None:
            session_id = coordinator.start_session().id
        result = await coordinator.handle_message(session_id, message)
        if summarize:
            await coordinator.summarize(session_id)
        await runtime.indexer.drain()
    return result


def _print_result(result: TurnResult) -> None:
    for tool_result in result.tool_results:
        mark = "[green]✓[/]" if tool_result.ok else "[red]✗[/]"
        detail = tool_result.message or f"exit {tool_result.exit_code}"
        console.print(f"  {mark} [dim]tool {tool_result.state.value}: {detail}[/]", highlight=False)
    if result.degraded:
        console.print("[yellow]⚠[/] Retrieval unavailable — answered without project context.")
    console.print(Markdown(result.reply or "_(no reply)_"))
    console.print(
        f"\n[dim]session {result.session_id} · {len(result.snippets)} snippets · "
        f"{result.rounds} tool rounds[/]"
    )
