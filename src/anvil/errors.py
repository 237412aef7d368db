"""Anvil error taxonomy.

Every component raises (or reports) one of these kinds so the session
coordinator can branch on ``kind`` uniformly:

  validation_rejected   bad tool arguments: returned to the model, never fatal
  execution_failed      non-zero exit / spawn failure: returned to the model
  execution_timed_out   process killed at the timeout: returned to the model
  embedding_unavailable embedding retries exhausted: aborts the turn
  chunking_error        input could not be decoded as text
  store_unavailable     database failure: retrieval degrades to no context
  completion_unavailable model call failed after retries: aborts the turn
  config_error          invalid configuration: fatal at startup only

The two execution kinds only appear as ``ToolResult.error_kind``; the
executor reports them and never raises.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_REJECTED = "validation_rejected"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_TIMED_OUT = "execution_timed_out"
    EMBEDDING_UNAVAILABLE = "embedding_unavailable"
    CHUNKING_ERROR = "chunking_error"
    STORE_UNAVAILABLE = "store_unavailable"
    COMPLETION_UNAVAILABLE = "completion_unavailable"
    CONFIG_ERROR = "config_error"


class AnvilError(Exception):
    """Base error carrying an :class:`ErrorKind` and a human-readable message."""

    kind: ErrorKind = ErrorKind.EXECUTION_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ValidationRejected(AnvilError):
    kind = ErrorKind.VALIDATION_REJECTED


class EmbeddingUnavailable(AnvilError):
    kind = ErrorKind.EMBEDDING_UNAVAILABLE


class ChunkingError(AnvilError):
    kind = ErrorKind.CHUNKING_ERROR


class StoreUnavailable(AnvilError):
    kind = ErrorKind.STORE_UNAVAILABLE


class ConfigError(AnvilError, ValueError):
    """Raised when a config file contains an invalid or forbidden value."""

    kind = ErrorKind.CONFIG_ERROR


class CompletionUnavailable(AnvilError):
    """The completion capability failed after its retries and fallback model."""

    kind = ErrorKind.COMPLETION_UNAVAILABLE
