"""Session coordinator: one retrieval-augmented completion turn at a time.

A turn:
  1. chunk and embed the user message
  2. retrieve similar chunks (optionally tag-filtered) and similar earlier
     messages of the session; a store failure degrades to no context
  3. assemble the prompt under the snippet token budget
  4. complete, dispatching every tool call and feeding results back, until
     a completion has no tool calls or the round cap is reached
  5. embed and persist the turn's messages in a single transaction

Turns of one session run strictly in arrival order (a FIFO lock per
session); different sessions run concurrently. ``abort`` cancels the
in-flight turn, and because persistence is the last step nothing of an
aborted turn is stored.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import structlog

from anvil.config import GenerationCfg
from anvil.db.models import Message, Session
from anvil.errors import StoreUnavailable
from anvil.ingest.ingester import Embedder
from anvil.rag.assembler import Snippet, assemble, trim_history
from anvil.rag.llm_client import Completion, complete
from anvil.rag.store import VectorStore
from anvil.session.context import SessionContext
from anvil.tools.definitions import ToolInvocation, ToolResult
from anvil.tools.dispatcher import ToolDispatcher

log = structlog.get_logger(__name__)

_SUMMARY_PROMPT = (
    "Summarise the conversation below for your own future reference. Keep file "
    "names, decisions, open problems and tool findings. At most 200 words."
)

_ROUND_LIMIT_TEXT = "Rejected: tool round limit reached for this turn; answer without tools."


class Completer(Protocol):
    async def __call__(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None
    ) -> Completion: ...


def litellm_completer(cfg: GenerationCfg) -> Completer:
    """Completer bound to the configured model, fallback and sampling settings."""

    async def _complete(
        messages: list[dict[str, Any]], tools: list[dict[str, Any]] | None
    ) -> Completion:
        return await complete(
            cfg.model,
            messages,
            tools=tools,
            fallback_model=cfg.fallback_model,
            max_tokens=cfg.max_tokens,
            temperature=cfg.temperature,
        )

    return _complete


@dataclass
class TurnResult:
    """Outcome of :meth:`Coordinator.handle_message`.

    ``messages`` are the persisted messages of the turn in order (user,
    assistant, tool, ...). An aborted turn has ``aborted=True`` and persists
    nothing.
    """

    session_id: str
    reply: str = ""
    messages: list[Message] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    snippets: list[Snippet] = field(default_factory=list)
    rounds: int = 0
    degraded: bool = False
    aborted: bool = False


class Coordinator:
    def __init__(
        self,
        context: SessionContext,
        store: VectorStore,
        embedder: Embedder,
        completer: Completer,
        dispatcher: ToolDispatcher,
    ) -> None:
        self.context = context
        self.store = store
        self.embedder = embedder
        self.completer = completer
        self.dispatcher = dispatcher
        self._locks: dict[str, asyncio.Lock] = {}
        self._active: dict[str, asyncio.Task[TurnResult]] = {}
        self._aborting: set[str] = set()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(self, config: dict[str, Any] | None = None) -> Session:
        session = Session(id=str(uuid.uuid4()), config=dict(config or {}))
        self.store.add_session(session)
        log.info("session.started", session_id=session.id)
        return self.store.get_session(session.id) or session

    async def summarize(self, session_id: str) -> str:
        """Condense the session history into ``Session.summary`` and return it."""
        session = self._require_session(session_id)
        async with self._lock(session_id):
            history = self.store.list_messages(session_id)
            lines = [f"{m.role}: {m.text}" for m in history if m.text]
            if not lines:
                return session.summary or ""
            if session.summary:
                lines.insert(0, f"(earlier summary) {session.summary}")
            completion = await self.completer(
                [
                    {"role": "system", "content": _SUMMARY_PROMPT},
                    {"role": "user", "content": "\n".join(lines)},
                ],
                None,
            )
            summary = completion.content.strip()
            self.store.update_summary(session_id, summary)
        log.info("session.summarized", session_id=session_id, chars=len(summary))
        return summary

    def abort(self, session_id: str) -> bool:
        """Cancel the in-flight turn of *session_id*. Returns False if idle."""
        task = self._active.get(session_id)
        if task is None or task.done():
            return False
        self._aborting.add(session_id)
        task.cancel()
        return True

    def is_busy(self, session_id: str) -> bool:
        task = self._active.get(session_id)
        return task is not None and not task.done()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def handle_message(self, session_id: str, text: str) -> TurnResult:
        """Run one turn for *text* in *session_id*.

        Raises:
            ValueError: If the session does not exist or *text* is blank.
            EmbeddingUnavailable: If the message cannot be embedded.
            CompletionUnavailable: If the model cannot be reached.
            StoreUnavailable: If the turn cannot be persisted.
        """
        if not text.strip():
            raise ValueError("message text is empty")
        self._require_session(session_id)
        async with self._lock(session_id):
            task = asyncio.create_task(self._turn(session_id, text))
            self._active[session_id] = task
            try:
                return await task
            except asyncio.CancelledError:
                if session_id in self._aborting and task.cancelled():
                    log.info("turn.aborted", session_id=session_id)
                    return TurnResult(session_id=session_id, aborted=True)
                raise
            finally:
                self._aborting.discard(session_id)
                self._active.pop(session_id, None)

    async def _turn(self, session_id: str, text: str) -> TurnResult:
        ctx = self.context
        with structlog.contextvars.bound_contextvars(session_id=session_id):
            session = self._require_session(session_id)
            pieces = ctx.chunker.chunk(text)
            query_vectors = await self.embedder.embed(pieces)

            history: list[Message] = []
            snippets: list[Snippet] = []
            degraded = False
            try:
                history = trim_history(self.store.list_messages(session_id), ctx.history_messages)
                snippets = self._retrieve(session_id, query_vectors, {m.id for m in history})
            except StoreUnavailable as exc:
                degraded = True
                log.warning("store.degraded", error=exc.message)

            prompt = assemble(
                ctx.system_prompt,
                text,
                summary=session.summary,
                snippets=snippets,
                history=history,
                token_budget=ctx.token_budget,
                count_tokens=ctx.count_tokens,
            )
            messages = prompt.messages
            turn_payloads: list[dict[str, Any]] = [messages[-1]]
            tool_results: list[ToolResult] = []
            schemas = self.dispatcher.registry.schemas() or None
            reply = ""
            rounds = 0

            while True:
                allow_tools = rounds < ctx.max_tool_rounds
                completion = await self.completer(messages, schemas if allow_tools else None)
                messages.append(completion.message)
                turn_payloads.append(completion.message)
                reply = completion.content
                if not completion.tool_calls:
                    break
                if not allow_tools:
                    for call in completion.tool_calls:
                        turn_payloads.append(_tool_payload(call, _ROUND_LIMIT_TEXT))
                    log.warning("turn.round_limit", rounds=rounds)
                    break
                rounds += 1
                for call in completion.tool_calls:
                    result = await self.dispatcher.dispatch(call)
                    tool_results.append(result)
                    payload = _tool_payload(call, result.to_model_text())
                    messages.append(payload)
                    turn_payloads.append(payload)

            stored = await self._persist(session_id, turn_payloads, query_vectors)
            log.info(
                "turn.completed",
                rounds=rounds,
                tool_calls=len(tool_results),
                snippets=len(prompt.snippets),
                degraded=degraded,
            )
            return TurnResult(
                session_id=session_id,
                reply=reply,
                messages=stored,
                tool_results=tool_results,
                snippets=prompt.snippets,
                rounds=rounds,
                degraded=degraded,
            )

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def _retrieve(
        self,
        session_id: str,
        query_vectors: Sequence[Sequence[float]],
        recent_ids: set[str],
    ) -> list[Snippet]:
        ctx = self.context
        chunk_hits: dict[int, Snippet] = {}
        message_hits: dict[str, Snippet] = {}
        for vector in query_vectors:
            for chunk, distance in self.store.query_similar(
                vector, ctx.top_k, ctx.tag_filter or None
            ):
                key = chunk.id if chunk.id is not None else -1
                if key not in chunk_hits or distance < chunk_hits[key].distance:
                    chunk_hits[key] = Snippet.from_chunk(chunk, distance)
            if ctx.message_top_k < 1:
                continue
            for message, distance in self.store.query_similar_messages(
                vector, ctx.message_top_k + len(recent_ids), session_id=session_id
            ):
                if message.id in recent_ids or not message.text:
                    continue
                if message.id not in message_hits or distance < message_hits[message.id].distance:
                    message_hits[message.id] = Snippet.from_message(message, distance)
        best_messages = sorted(message_hits.values(), key=lambda s: s.distance)
        return [*chunk_hits.values(), *best_messages[: ctx.message_top_k]]

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(
        self,
        session_id: str,
        payloads: list[dict[str, Any]],
        user_vectors: Sequence[Sequence[float]],
    ) -> list[Message]:
        """Embed the non-user payloads, then store every message in one transaction."""
        pieces: list[list[str]] = []
        for payload in payloads[1:]:
            body = payload.get("content")
            pieces.append(self.context.chunker.chunk(body) if isinstance(body, str) else [])
        flat = [p for group in pieces for p in group]
        vectors = await self.embedder.embed(flat) if flat else []

        embeddings: list[list[float] | None] = [_mean(user_vectors)]
        offset = 0
        for group in pieces:
            embeddings.append(_mean(vectors[offset : offset + len(group)]))
            offset += len(group)

        stored = [
            Message(
                id=str(uuid.uuid4()),
                session_id=session_id,
                role=payload["role"],
                content=payload,
                embedding=embedding,
            )
            for payload, embedding in zip(payloads, embeddings)
        ]
        self.store.add_messages(session_id, stored)
        return stored

    # ------------------------------------------------------------------

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def _require_session(self, session_id: str) -> Session:
        session = self.store.get_session(session_id)
        if session is None:
            raise ValueError(f"Unknown session '{session_id}'")
        return session


def _tool_payload(call: ToolInvocation, content: str) -> dict[str, Any]:
    return {
        "role": "tool",
        "tool_call_id": call.call_id or "",
        "name": call.tool_name,
        "content": content,
    }


def _mean(vectors: Sequence[Sequence[float]]) -> list[float] | None:
    """Element-wise mean; None for no vectors."""
    if not vectors:
        return None
    n = len(vectors)
    return [sum(column) / n for column in zip(*vectors)]
