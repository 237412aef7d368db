"""Domain models for the Anvil database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

ROLES = ("system", "user", "assistant", "tool")


@dataclass
class Chunk:
    id: int | None
    content: str
    source_checksum: str
    embedding: list[float]
    source_path: str | None = None
    page_number: int | None = None
    created_at: str | None = None
    tags: list[str] = field(default_factory=list)


@dataclass
class ChunkMetadata:
    """Optional metadata attached to a chunk at ingestion time."""

    source_path: str | None = None
    page_number: int | None = None
    tags: tuple[str, ...] = ()


@dataclass
class Tag:
    id: int
    name: str


@dataclass
class Session:
    id: str
    config: dict[str, Any] = field(default_factory=dict)
    summary: str | None = None
    started_at: str | None = None


@dataclass
class Message:
    """A chat message owned by a session.

    ``content`` is the JSON payload sent to / received from the model — a
    dict with at least ``role`` and ``content`` keys, plus ``tool_calls`` or
    ``tool_call_id`` where applicable.
    """

    id: str
    session_id: str
    role: str
    content: dict[str, Any]
    embedding: list[float] | None = None
    created_at: str | None = None

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {', '.join(ROLES)}; got {self.role!r}")

    @property
    def text(self) -> str:
        """Plain-text body of the payload (empty string when absent)."""
        body = self.content.get("content")
        if body is None:
            return ""
        return body if isinstance(body, str) else json.dumps(body)
