"""Tool framework data types: definitions, invocations and results.

A :class:`ToolDefinition` is immutable once built; the process-wide set
lives in :class:`anvil.tools.registry.ToolRegistry`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from anvil.errors import ErrorKind


class ToolKind(str, Enum):
    """Closed set of tool variants the dispatcher knows how to prepare."""

    SEARCH = "search"
    PATCH = "patch"
    COMMAND = "command"


class ParamKind(str, Enum):
    STRING = "string"  # free text, optionally constrained by a regex
    CHOICE = "choice"  # one of allowed_values
    OPTIONS = "options"  # comma-separated flags, each from allowed_values
    PATHS = "paths"  # comma-separated paths inside the permitted roots
    STDIN = "stdin"  # text fed to the process on stdin, never on argv


class ToolStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class InvocationState(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ParameterSpec:
    """Declared constraints for one tool parameter.

    Attributes:
        name: Argument name the model uses.
        kind: How the value is validated and rendered onto argv.
        description: Shown to the model in the tool schema.
        required: Reject the call when the argument is missing.
        allowed_values: Exact allow-list for CHOICE and OPTIONS parameters.
        pattern: Regex a STRING value must fully match.
        flag: Emitted before the value on argv (e.g. ``-e`` for a grep pattern).
        separator: Emit ``--`` before the values so they are never parsed as
            options.
        max_items: Upper bound on comma-separated items (OPTIONS / PATHS).
        must_exist: PATHS only — reject paths that do not exist.
        max_length: Upper bound on the raw value length in characters.
    """

    name: str
    kind: ParamKind
    description: str = ""
    required: bool = False
    allowed_values: tuple[str, ...] = ()
    pattern: str | None = None
    flag: str | None = None
    separator: bool = False
    max_items: int | None = None
    must_exist: bool = True
    max_length: int = 100_000

    def schema(self) -> dict[str, Any]:
        """JSON-schema fragment describing this parameter to the model."""
        description = self.description
        if self.kind is ParamKind.OPTIONS and self.allowed_values:
            description = (
                f"{description} Comma separated; valid options: "
                f"{', '.join(self.allowed_values)}."
            ).strip()
        elif self.kind is ParamKind.PATHS:
            description = f"{description} Comma separated, relative to the project root.".strip()
        prop: dict[str, Any] = {"type": "string", "description": description}
        if self.kind is ParamKind.CHOICE and self.allowed_values:
            prop["enum"] = list(self.allowed_values)
        if self.kind is ParamKind.STRING and self.pattern:
            prop["pattern"] = self.pattern
        return prop


@dataclass(frozen=True)
class ToolDefinition:
    """A whitelisted command-line operation the model may request.

    Attributes:
        name: Unique tool name.
        description: Human-readable description shown to the model.
        kind: Variant tag used by the dispatcher.
        program: Executable spawned for the tool (looked up on PATH).
        base_args: Fixed arguments placed before the validated ones.
        parameters: Declared parameters, in argv order.
        ok_exit_codes: Exit codes that count as success (e.g. grep's 1 =
            "no matches").
        path_roots: Roots, relative to the project root, that PATHS
            arguments must stay inside.
    """

    name: str
    description: str
    kind: ToolKind
    program: str
    base_args: tuple[str, ...] = ()
    parameters: tuple[ParameterSpec, ...] = ()
    ok_exit_codes: frozenset[int] = frozenset({0})
    path_roots: tuple[str, ...] = (".",)

    def parameter(self, name: str) -> ParameterSpec | None:
        for p in self.parameters:
            if p.name == name:
                return p
        return None

    def schema(self) -> dict[str, Any]:
        """OpenAI-style function tool schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {p.name: p.schema() for p in self.parameters},
                    "required": [p.name for p in self.parameters if p.required],
                },
            },
        }


@dataclass
class ToolInvocation:
    """A tool call requested by the model.

    ``parse_error`` is set when the model's argument payload could not be
    decoded; the dispatcher rejects such calls without validating further.
    """

    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None
    parse_error: str | None = None


@dataclass
class ToolResult:
    status: ToolStatus
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    state: InvocationState = InvocationState.COMPLETED
    error_kind: ErrorKind | None = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status is ToolStatus.SUCCESS

    def to_model_text(self) -> str:
        """Render the result as the content of a ``tool`` message."""
        if self.state is InvocationState.REJECTED:
            return f"Rejected: {self.message}"
        lines = [f"status: {self.status.value}"]
        if self.exit_code is not None:
            lines.append(f"exit_code: {self.exit_code}")
        if self.error_kind is not None:
            lines.append(f"error: {self.error_kind.value}")
        if self.message:
            lines.append(f"message: {self.message}")
        lines.append("stdout:")
        lines.append(self.stdout if self.stdout else "(empty)")
        if self.stderr:
            lines.append("stderr:")
            lines.append(self.stderr)
        return "\n".join(lines)
