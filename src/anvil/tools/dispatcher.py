"""Tool dispatcher: lookup, validation, preparation and execution of a call.

Each invocation walks::

    received -> validating -> rejected
                           -> executing -> completed | failed

and every transition is logged as ``tool.state``. The dispatcher never
raises; every outcome is a :class:`ToolResult` for the model.
"""

from __future__ import annotations

import re
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog

from anvil.errors import ErrorKind, ValidationRejected
from anvil.tools.definitions import (
    InvocationState,
    ToolDefinition,
    ToolInvocation,
    ToolKind,
    ToolResult,
    ToolStatus,
)
from anvil.tools.executor import DEFAULT_MAX_OUTPUT_BYTES, execute
from anvil.tools.registry import ToolRegistry
from anvil.tools.validator import ValidatedCall, validate

log = structlog.get_logger(__name__)

Executor = Callable[..., Awaitable[ToolResult]]

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.\-]+")


class ToolDispatcher:
    """Dispatches model tool calls against a :class:`ToolRegistry`.

    Args:
        registry: The enabled tools.
        project_root: Working directory for every tool and the root PATHS
            arguments are resolved against.
        timeout: Per-call timeout in seconds.
        max_output_bytes: Cap on captured stdout / stderr each.
        patches_dir: Where patch tools save their patch before applying it.
            ``None`` disables saving.
        executor: Coroutine with the signature of
            :func:`anvil.tools.executor.execute` (injected by tests).
    """

    def __init__(
        self,
        registry: ToolRegistry,
        project_root: Path,
        *,
        timeout: float = 30.0,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        patches_dir: Path | None = None,
        executor: Executor = execute,
    ) -> None:
        self.registry = registry
        self.project_root = project_root.resolve()
        self.timeout = timeout
        self.max_output_bytes = max_output_bytes
        self.patches_dir = patches_dir
        self._execute = executor

    async def dispatch(self, invocation: ToolInvocation) -> ToolResult:
        self._transition(invocation, InvocationState.RECEIVED)

        definition = self.registry.get(invocation.tool_name)
        if definition is None:
            known = ", ".join(self.registry.names()) or "(none)"
            return self._reject(
                invocation, f"Unknown tool '{invocation.tool_name}'. Available tools: {known}"
            )
        if invocation.parse_error:
            return self._reject(
                invocation, f"Could not parse arguments for '{definition.name}': {invocation.parse_error}"
            )

        self._transition(invocation, InvocationState.VALIDATING)
        try:
            call = validate(definition, invocation.arguments, self.project_root)
        except ValidationRejected as exc:
            return self._reject(invocation, exc.message)

        self._transition(invocation, InvocationState.EXECUTING)
        try:
            if definition.kind is ToolKind.PATCH:
                self._save_patch(definition, invocation.arguments, call)
            elif definition.kind not in (ToolKind.SEARCH, ToolKind.COMMAND):
                raise ValueError(f"Unsupported tool kind: {definition.kind}")
            result = await self._execute(
                definition.program,
                call.argv,
                self.timeout,
                ok_exit_codes=definition.ok_exit_codes,
                cwd=self.project_root,
                stdin=call.stdin,
                max_output_bytes=self.max_output_bytes,
            )
        except Exception as exc:
            log.exception("tool.error", tool=definition.name)
            result = ToolResult(
                status=ToolStatus.FAILURE,
                state=InvocationState.FAILED,
                error_kind=ErrorKind.EXECUTION_FAILED,
                message=f"{type(exc).__name__}: {exc}",
            )

        final = InvocationState.COMPLETED if result.ok else InvocationState.FAILED
        result.state = final
        self._transition(
            invocation,
            final,
            exit_code=result.exit_code,
            error_kind=result.error_kind.value if result.error_kind else None,
        )
        return result

    # ------------------------------------------------------------------

    def _reject(self, invocation: ToolInvocation, message: str) -> ToolResult:
        log.info("tool.rejected", tool=invocation.tool_name, reason=message)
        self._transition(invocation, InvocationState.REJECTED)
        return ToolResult(
            status=ToolStatus.FAILURE,
            state=InvocationState.REJECTED,
            error_kind=ErrorKind.VALIDATION_REJECTED,
            message=message,
        )

    def _transition(self, invocation: ToolInvocation, state: InvocationState, **extra: Any) -> None:
        log.debug(
            "tool.state",
            tool=invocation.tool_name,
            call_id=invocation.call_id,
            state=state.value,
            **extra,
        )

    def _save_patch(
        self, definition: ToolDefinition, arguments: dict[str, Any], call: ValidatedCall
    ) -> Path | None:
        """Write the patch content to patches_dir; returns the file written."""
        if self.patches_dir is None or call.stdin is None:
            return None
        self.patches_dir.mkdir(parents=True, exist_ok=True)
        name = arguments.get("patch_name") or f"{definition.name}-{time.strftime('%Y%m%d-%H%M%S')}"
        stem = _UNSAFE_NAME.sub("_", name).strip("._") or definition.name
        path = self.patches_dir / f"{stem}.patch"
        counter = 1
        while path.exists():
            path = self.patches_dir / f"{stem}-{counter}.patch"
            counter += 1
        path.write_text(call.stdin, encoding="utf-8")
        log.info("tool.patch_saved", tool=definition.name, path=str(path))
        return path
