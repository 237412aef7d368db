"""LiteLLM client wrapper: batched embeddings, completions, API key validation.

All model traffic routes through this module.

Embeddings are sub-batched to the provider limit. Both embeddings and
completions use LiteLLM's built-in retry (num_retries); a final failure
surfaces as EmbeddingUnavailable or CompletionUnavailable instead of a
provider-specific exception. Completions also try the configured fallback
model.
"""

from __future__ import annotations

import json
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import litellm
import structlog

from anvil.errors import CompletionUnavailable, ConfigError, EmbeddingUnavailable
from anvil.tools.definitions import ToolInvocation

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

log = structlog.get_logger(__name__)


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        ConfigError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider, f"{provider.upper()}_API_KEY")

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise ConfigError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


# ------------------------------------------------------------------
# Embeddings
# ------------------------------------------------------------------


class EmbeddingClient:
    """Async adapter over ``litellm.aembedding``.

    ``embed(batch)`` returns one vector per input, in input order. Inputs are
    sent in sub-batches of at most ``batch_size``; LiteLLM retries each
    sub-batch (``num_retries``) before the failure surfaces here.

    Args:
        model: LiteLLM embedding model string.
        dimensions: Expected vector length; responses that disagree are
            rejected.
        batch_size: Maximum inputs per request.
        max_attempts: Tries per sub-batch (>= 1), i.e. ``max_attempts - 1``
            retries.
    """

    def __init__(
        self,
        model: str,
        dimensions: int,
        *,
        batch_size: int = 64,
        max_attempts: int = 5,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.model = model
        self.dimensions = dimensions
        self.batch_size = batch_size
        self.max_attempts = max_attempts

    async def embed(self, batch: Sequence[str]) -> list[list[float]]:
        """Embed *batch*; returns vectors in the same order.

        Raises:
            EmbeddingUnavailable: When a sub-batch keeps failing or the
                response is malformed.
        """
        vectors: list[list[float]] = []
        for start in range(0, len(batch), self.batch_size):
            sub = list(batch[start : start + self.batch_size])
            vectors.extend(await self._embed_batch(sub))
        return vectors

    async def embed_one(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]

    async def _embed_batch(self, inputs: list[str]) -> list[list[float]]:
        try:
            response = await litellm.aembedding(
                model=self.model,
                input=inputs,
                num_retries=self.max_attempts - 1,
            )
        except Exception as exc:
            log.warning("embedding.failed", model=self.model, error=type(exc).__name__)
            raise EmbeddingUnavailable(
                f"Embedding model '{self.model}' unavailable after "
                f"{self.max_attempts} attempt(s): {exc}"
            ) from exc
        return self._parse(response, len(inputs))

    def _parse(self, response: Any, expected: int) -> list[list[float]]:
        data = list(response.data)
        if len(data) != expected:
            raise EmbeddingUnavailable(
                f"Embedding response has {len(data)} vectors for {expected} inputs"
            )
        if data and "index" in data[0]:
            data.sort(key=lambda item: item["index"])
        vectors = [list(item["embedding"]) for item in data]
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise EmbeddingUnavailable(
                    f"Embedding model '{self.model}' returned {len(vector)} dimensions, "
                    f"expected {self.dimensions}"
                )
        return vectors


# ------------------------------------------------------------------
# Completions
# ------------------------------------------------------------------


@dataclass
class Completion:
    """Normalised model response.

    Attributes:
        content: Assistant text (may be empty when only tools are called).
        tool_calls: Parsed tool invocations, in the order the model sent them.
        message: The assistant message payload to append to the history.
    """

    content: str
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    message: dict[str, Any] = field(default_factory=dict)


async def complete(
    model: str,
    messages: list[dict[str, Any]],
    *,
    tools: list[dict[str, Any]] | None = None,
    fallback_model: str | None = None,
    max_tokens: int = 4_096,
    temperature: float = 0.0,
    num_retries: int = 3,
) -> Completion:
    """Call ``litellm.acompletion`` with retry/backoff and an optional fallback.

    Raises:
        CompletionUnavailable: When the primary and fallback model both fail.
    """
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "max_tokens": max_tokens,
        "temperature": temperature,
        "num_retries": num_retries,
    }
    if tools:
        kwargs["tools"] = tools
    if fallback_model and fallback_model != model:
        kwargs["fallbacks"] = [fallback_model]
    try:
        response = await litellm.acompletion(**kwargs)
    except Exception as exc:
        raise CompletionUnavailable(f"Completion with '{model}' failed: {exc}") from exc
    return parse_completion(response)


def parse_completion(response: Any) -> Completion:
    """Turn a LiteLLM/OpenAI response into a :class:`Completion`."""
    message = response.choices[0].message
    content = message.content or ""
    invocations: list[ToolInvocation] = []
    raw_calls: list[dict[str, Any]] = []
    for call in getattr(message, "tool_calls", None) or []:
        name = call.function.name
        raw_args = call.function.arguments or "{}"
        raw_calls.append(
            {
                "id": call.id,
                "type": "function",
                "function": {"name": name, "arguments": raw_args},
            }
        )
        invocations.append(_parse_invocation(call.id, name, raw_args))

    payload: dict[str, Any] = {"role": "assistant", "content": content}
    if raw_calls:
        payload["tool_calls"] = raw_calls
    return Completion(content=content, tool_calls=invocations, message=payload)


def _parse_invocation(call_id: str | None, name: str, raw_args: str) -> ToolInvocation:
    try:
        args = json.loads(raw_args)
    except json.JSONDecodeError as exc:
        return ToolInvocation(
            tool_name=name,
            call_id=call_id,
            parse_error=f"arguments are not valid JSON ({exc.msg} at position {exc.pos})",
        )
    if not isinstance(args, dict):
        return ToolInvocation(
            tool_name=name,
            call_id=call_id,
            parse_error="arguments must be a JSON object",
        )
    return ToolInvocation(tool_name=name, arguments=args, call_id=call_id)


# ------------------------------------------------------------------
# Token counting
# ------------------------------------------------------------------


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        return max(1, len(text) // 4)
