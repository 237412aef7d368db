"""Tool framework: definitions, validation, execution and dispatch."""

from anvil.tools.definitions import (
    InvocationState,
    ParameterSpec,
    ParamKind,
    ToolDefinition,
    ToolInvocation,
    ToolKind,
    ToolResult,
    ToolStatus,
)
from anvil.tools.dispatcher import ToolDispatcher
from anvil.tools.executor import execute
from anvil.tools.registry import ToolRegistry, build_registry
from anvil.tools.validator import ValidatedCall, validate

__all__ = [
    "InvocationState",
    "ParamKind",
    "ParameterSpec",
    "ToolDefinition",
    "ToolDispatcher",
    "ToolInvocation",
    "ToolKind",
    "ToolRegistry",
    "ToolResult",
    "ToolStatus",
    "ValidatedCall",
    "build_registry",
    "execute",
    "validate",
]
