"""Tests for SessionContext."""

from __future__ import annotations

from anvil.config import AnvilConfig
from anvil.ingest.chunker import approx_tokens
from anvil.session.context import SessionContext


def test_from_config_copies_settings():
    cfg = AnvilConfig()
    cfg.retrieval.top_k = 3
    cfg.retrieval.message_top_k = 1
    cfg.retrieval.token_budget = 999
    cfg.retrieval.history_messages = 6
    cfg.generation.max_tool_rounds = 2
    cfg.chunking.max_tokens = 64
    cfg.project.system_prompt = "Be brief."

    ctx = SessionContext.from_config(cfg, tag_filter=("rust",))

    assert (ctx.top_k, ctx.message_top_k, ctx.token_budget) == (3, 1, 999)
    assert (ctx.history_messages, ctx.max_tool_rounds) == (6, 2)
    assert ctx.tag_filter == ("rust",)
    assert ctx.system_prompt == "Be brief."
    assert ctx.chunker.max_tokens == 64
    assert ctx.chunker.count_tokens is approx_tokens


def test_budget_counter_is_separate_from_chunker():
    def counter(text: str) -> int:
        return 1

    ctx = SessionContext.from_config(AnvilConfig(), count_tokens=counter)
    assert ctx.count_tokens is counter
    assert ctx.chunker.count_tokens is approx_tokens
