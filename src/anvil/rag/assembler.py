"""Prompt assembly: retrieved snippets under a token budget, then history.

Message order sent to the model:
  1. system prompt, with the session summary appended when present
  2. one system message holding the retrieved snippets (if any fit)
  3. recent session history
  4. the new user message
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from anvil.db.models import Chunk, Message
from anvil.ingest.chunker import approx_tokens


@dataclass
class Snippet:
    """One retrieved piece of context.

    Attributes:
        text: Snippet body.
        source: Where it came from (a path, or ``session <id>``).
        distance: Distance to the closest query chunk (smaller = closer).
    """

    text: str
    source: str
    distance: float

    @classmethod
    def from_chunk(cls, chunk: Chunk, distance: float) -> Snippet:
        source = chunk.source_path or f"chunk {chunk.source_checksum[:12]}"
        if chunk.page_number is not None:
            source = f"{source} (page {chunk.page_number})"
        return cls(text=chunk.content, source=source, distance=distance)

    @classmethod
    def from_message(cls, message: Message, distance: float) -> Snippet:
        return cls(text=message.text, source=f"earlier {message.role} message", distance=distance)


@dataclass
class AssembledContext:
    messages: list[dict[str, Any]] = field(default_factory=list)
    snippets: list[Snippet] = field(default_factory=list)
    snippet_tokens: int = 0


def apply_token_budget(
    snippets: Sequence[Snippet],
    budget: int,
    count_tokens: Callable[[str], int] = approx_tokens,
) -> tuple[list[Snippet], int]:
    """Select snippets, closest first, while they fit in *budget* tokens.

    Returns ``(selected, total_tokens)``.
    """
    selected: list[Snippet] = []
    total = 0
    for snippet in sorted(snippets, key=lambda s: s.distance):
        tokens = count_tokens(snippet.text)
        if total + tokens > budget:
            break
        selected.append(snippet)
        total += tokens
    return selected, total


def format_snippets(snippets: Sequence[Snippet]) -> str:
    blocks = [f"[{i + 1}] {s.source}\n{s.text.strip()}" for i, s in enumerate(snippets)]
    return "Relevant context retrieved from the project:\n\n" + "\n\n".join(blocks)


def trim_history(history: Sequence[Message], limit: int) -> list[Message]:
    """Keep the last *limit* messages, never starting on an orphaned tool result."""
    recent = list(history[-limit:]) if limit > 0 else []
    while recent and recent[0].role == "tool":
        recent.pop(0)
    return recent


def assemble(
    system_prompt: str,
    user_text: str,
    *,
    summary: str | None = None,
    snippets: Sequence[Snippet] = (),
    history: Sequence[Message] = (),
    token_budget: int = 4_096,
    count_tokens: Callable[[str], int] = approx_tokens,
) -> AssembledContext:
    """Build the completion message list for one turn."""
    system = system_prompt
    if summary:
        system = f"{system}\n\nSummary of the conversation so far:\n{summary}"
    messages: list[dict[str, Any]] = [{"role": "system", "content": system}]

    selected, used = apply_token_budget(snippets, token_budget, count_tokens)
    if selected:
        messages.append({"role": "system", "content": format_snippets(selected)})

    messages.extend(m.content for m in history)
    messages.append({"role": "user", "content": user_text})
    return AssembledContext(messages=messages, snippets=selected, snippet_tokens=used)
