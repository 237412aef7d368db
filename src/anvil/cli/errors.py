"""Anvil rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from anvil.cli.errors import err_no_db
    console.print(err_no_db(".anvil.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_config(message: str) -> str:
    """Configuration could not be loaded or is invalid."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix anvil.yaml (or ~/.anvil/config.yaml) and retry."
    )


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".anvil.db") -> str:
    """No database found for the project."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  anvil init"
    )


def err_embedding_unavailable(model: str, detail: str) -> str:
    return (
        f"[red]Error:[/] Embedding model '{model}' is unavailable.\n"
        f"  {detail}\n"
        "  Check your network connection and provider status, then retry.\n"
        "  Tune retries with embedding.max_attempts."
    )


def err_completion_unavailable(model: str, detail: str) -> str:
    return (
        f"[red]Error:[/] Completion model '{model}' is unavailable.\n"
        f"  {detail}\n"
        "  Retry, or set generation.fallback_model (or ANVIL_FALLBACK_MODEL)."
    )


def err_store_unavailable(db_path: str, detail: str) -> str:
    return (
        f"[red]Error:[/] Database '{db_path}' could not be used.\n"
        f"  {detail}\n"
        "  Check the file is not locked by another process and the disk is writable."
    )


def err_index_mismatch(detail: str) -> str:
    """Embedding dimension or metric differs from the one the database was built with."""
    return (
        f"[red]Error:[/] Vector index settings mismatch.\n"
        f"  {detail}\n"
        "  Restore embedding.dimensions / retrieval.distance_metric, or remove the\n"
        "  database and re-ingest:  anvil init && anvil ingest --source ."
    )


def err_source_not_found(source: str) -> str:
    """Source not found in database."""
    return (
        f"[yellow]Source not found:[/] '{source}' is not in the knowledge base.\n"
        "  Run:  anvil status  to see all ingested sources."
    )


def err_session_not_found(session_id: str) -> str:
    return (
        f"[red]Error:[/] Session '{session_id}' does not exist.\n"
        "  Run:  anvil sessions  to list sessions, or omit --session to start one."
    )


def err_no_sources() -> str:
    return (
        "[red]Error:[/] No --source specified.\n"
        "  Use:  anvil ingest --source PATH [--source PATH ...]"
    )
