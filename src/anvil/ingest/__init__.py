"""Anvil ingest pipeline: token-bounded chunker and file ingester."""

from anvil.ingest.chunker import Chunker, approx_tokens, chunk_text
from anvil.ingest.ingester import IngestReport, Ingester, expand_sources, is_binary

__all__ = [
    "Chunker",
    "IngestReport",
    "Ingester",
    "approx_tokens",
    "chunk_text",
    "expand_sources",
    "is_binary",
]
