"""Per-process settings a coordinator turn needs, gathered in one object."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from anvil.config import DEFAULT_SYSTEM_PROMPT, AnvilConfig
from anvil.ingest.chunker import Chunker, approx_tokens


@dataclass
class SessionContext:
    """Turn settings, passed explicitly instead of read from globals.

    Attributes:
        system_prompt: First system message of every completion.
        top_k: Chunks retrieved per query chunk.
        message_top_k: Similar earlier messages retrieved per query chunk.
        token_budget: Token cap on retrieved snippets in the prompt.
        history_messages: Most recent session messages replayed verbatim.
        max_tool_rounds: Completion rounds that may call tools in one turn.
        tag_filter: Restrict chunk retrieval to these tags (empty = all).
        chunker: Splits long messages before embedding.
        count_tokens: Token counter used for the snippet budget.
    """

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    top_k: int = 8
    message_top_k: int = 4
    token_budget: int = 4_096
    history_messages: int = 20
    max_tool_rounds: int = 8
    tag_filter: tuple[str, ...] = ()
    chunker: Chunker = field(default_factory=Chunker)
    count_tokens: Callable[[str], int] = approx_tokens

    @classmethod
    def from_config(
        cls,
        cfg: AnvilConfig,
        *,
        tag_filter: tuple[str, ...] = (),
        count_tokens: Callable[[str], int] = approx_tokens,
    ) -> SessionContext:
        return cls(
            system_prompt=cfg.project.system_prompt,
            top_k=cfg.retrieval.top_k,
            message_top_k=cfg.retrieval.message_top_k,
            token_budget=cfg.retrieval.token_budget,
            history_messages=cfg.retrieval.history_messages,
            max_tool_rounds=cfg.generation.max_tool_rounds,
            tag_filter=tag_filter,
            chunker=Chunker(cfg.chunking.max_tokens),
            count_tokens=count_tokens,
        )
