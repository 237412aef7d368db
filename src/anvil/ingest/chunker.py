"""Token-bounded whitespace chunker.

Content is split into whitespace-delimited tokens which are accumulated into
a chunk while the chunk's token count stays within ``max_tokens``. Tokens
are never split; a token that on its own exceeds ``max_tokens`` becomes a
single oversized chunk instead of being dropped or cut.

Every chunk keeps the whitespace that followed its last token (leading
whitespace of the content goes to the first chunk), so::

    "".join(chunk_text(content, n)) == content

for any content that contains at least one token. Whitespace-only content
yields no chunks.
"""

from __future__ import annotations

import re
from collections.abc import Callable

from anvil.errors import ChunkingError

TokenCounter = Callable[[str], int]

_TOKEN_RE = re.compile(r"(\S+)(\s*)")


def approx_tokens(text: str) -> int:
    """Approximate token count: 4 characters ≈ 1 token.

    Fast, dependency-free approximation consistent with GPT tokeniser
    averages for English prose and source code.
    """
    return max(1, len(text) // 4)


def chunk_text(
    content: str | bytes,
    max_tokens: int,
    count_tokens: TokenCounter = approx_tokens,
) -> list[str]:
    """Split *content* into ordered chunks of at most *max_tokens* tokens.

    Args:
        content: Text to split. ``bytes`` are decoded as UTF-8.
        max_tokens: Upper bound on each chunk's token count (>= 1).
        count_tokens: Token counter applied to a chunk's text without its
            trailing whitespace.

    Returns:
        Chunks in content order. Never contains an empty or whitespace-only
        chunk.

    Raises:
        ValueError: If *max_tokens* < 1.
        ChunkingError: If *content* cannot be decoded as text.
    """
    if max_tokens < 1:
        raise ValueError("max_tokens must be >= 1")
    text = _decode(content)

    chunks: list[str] = []
    parts: list[str] = []
    body = ""  # current chunk without trailing whitespace
    gap = ""  # whitespace that followed the last token in the chunk

    for match in _TOKEN_RE.finditer(text):
        token, trailing = match.group(1), match.group(2)
        if parts and count_tokens(body + gap + token) > max_tokens:
            chunks.append("".join(parts))
            parts, body = [], ""
        if not parts and not chunks:
            parts.append(text[: match.start()])  # leading whitespace
        body = body + gap + token if body else token
        parts.append(match.group(0))
        gap = trailing

    if parts:
        chunks.append("".join(parts))
    return chunks


def _decode(content: str | bytes) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, (bytes, bytearray, memoryview)):
        try:
            return bytes(content).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ChunkingError(
                f"Content is not valid UTF-8 text (byte {exc.start}): {exc.reason}"
            ) from exc
    raise ChunkingError(f"Cannot chunk content of type {type(content).__name__}")


class Chunker:
    """Configured chunker shared by ingestion and the session coordinator.

    Args:
        max_tokens: Chunk bound passed to :func:`chunk_text`.
        count_tokens: Token counter; defaults to :func:`approx_tokens`.
    """

    def __init__(self, max_tokens: int = 512, count_tokens: TokenCounter = approx_tokens) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        self.max_tokens = max_tokens
        self.count_tokens = count_tokens

    def chunk(self, content: str | bytes) -> list[str]:
        return chunk_text(content, self.max_tokens, self.count_tokens)
