"""Tool registry: the closed, immutable set of tools the model may call.

Built once at startup from the ``tools:`` config section. Definitions are
frozen dataclasses and the name map is a read-only proxy, so the registry
can be shared freely between concurrent turns.
"""

from __future__ import annotations

from collections.abc import Iterator
from types import MappingProxyType
from typing import Any

from anvil.config import ToolsCfg
from anvil.errors import ConfigError
from anvil.tools.definitions import ParameterSpec, ParamKind, ToolDefinition, ToolKind

GREP_OPTIONS = ("-i", "-v", "-l", "-c", "-n", "-H", "-h", "-o", "-w", "-F", "-E")
PATCH_OPTIONS = ("--dry-run", "-R", "--verbose")
LS_OPTIONS = ("-a", "-l", "-R", "-1", "-h")
CARGO_CHECK_OPTIONS = ("--all-targets", "--workspace", "--tests", "--quiet")


def grep_tool(program: str = "grep") -> ToolDefinition:
    return ToolDefinition(
        name="grep",
        description=(
            "Search files under the project root for lines matching a regular "
            "expression. Directories are searched recursively. Exit code 1 means "
            "no matches."
        ),
        kind=ToolKind.SEARCH,
        program=program,
        base_args=("-r",),
        parameters=(
            ParameterSpec(
                name="options",
                kind=ParamKind.OPTIONS,
                description="Search options.",
                allowed_values=GREP_OPTIONS,
                max_items=len(GREP_OPTIONS),
            ),
            ParameterSpec(
                name="pattern",
                kind=ParamKind.STRING,
                description="Regular expression to search for.",
                required=True,
                flag="-e",
                max_length=4_096,
            ),
            ParameterSpec(
                name="paths",
                kind=ParamKind.PATHS,
                description="Files or directories to search; defaults to the whole project.",
                separator=True,
                max_items=64,
            ),
        ),
        ok_exit_codes=frozenset({0, 1}),
    )


def patch_file_tool() -> ToolDefinition:
    return ToolDefinition(
        name="patch_file",
        description=(
            "Apply a unified diff to one file in the project. The patch is saved "
            "for review before it is applied."
        ),
        kind=ToolKind.PATCH,
        program="patch",
        base_args=("--batch", "--forward"),
        parameters=(
            ParameterSpec(
                name="options",
                kind=ParamKind.OPTIONS,
                description="Patch options.",
                allowed_values=PATCH_OPTIONS,
                max_items=len(PATCH_OPTIONS),
            ),
            ParameterSpec(
                name="file_to_patch",
                kind=ParamKind.PATHS,
                description="The file the patch applies to.",
                required=True,
                separator=True,
                max_items=1,
            ),
            ParameterSpec(
                name="patch_name",
                kind=ParamKind.STRING,
                description="Short name used when saving the patch (letters, digits, '-', '_', '.').",
                pattern=r"[A-Za-z0-9_.\-]{1,64}",
            ),
            ParameterSpec(
                name="patch_content",
                kind=ParamKind.STDIN,
                description="Unified diff content.",
                required=True,
            ),
        ),
    )


def list_files_tool() -> ToolDefinition:
    return ToolDefinition(
        name="list_files",
        description="List directory contents under the project root.",
        kind=ToolKind.COMMAND,
        program="ls",
        parameters=(
            ParameterSpec(
                name="options",
                kind=ParamKind.OPTIONS,
                description="Listing options.",
                allowed_values=LS_OPTIONS,
                max_items=len(LS_OPTIONS),
            ),
            ParameterSpec(
                name="paths",
                kind=ParamKind.PATHS,
                description="Directories or files to list; defaults to the project root.",
                separator=True,
                max_items=32,
            ),
        ),
    )


def cargo_check_tool() -> ToolDefinition:
    return ToolDefinition(
        name="cargo_check",
        description="Run 'cargo check' on the Rust project and report compiler diagnostics.",
        kind=ToolKind.COMMAND,
        program="cargo",
        base_args=("check", "--message-format=short"),
        parameters=(
            ParameterSpec(
                name="options",
                kind=ParamKind.OPTIONS,
                description="Additional cargo check flags.",
                allowed_values=CARGO_CHECK_OPTIONS,
                max_items=len(CARGO_CHECK_OPTIONS),
            ),
        ),
    )


class ToolRegistry:
    """Immutable ``name -> ToolDefinition`` map."""

    def __init__(self, definitions: list[ToolDefinition]) -> None:
        tools: dict[str, ToolDefinition] = {}
        for d in definitions:
            if d.name in tools:
                raise ConfigError(f"Duplicate tool name: '{d.name}'")
            tools[d.name] = d
        self._tools = MappingProxyType(tools)

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict[str, Any]]:
        """OpenAI-style function schemas for every registered tool."""
        return [d.schema() for d in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


def builtin_tools(grep_program: str = "grep") -> dict[str, ToolDefinition]:
    return {
        t.name: t
        for t in (
            grep_tool(grep_program),
            patch_file_tool(),
            list_files_tool(),
            cargo_check_tool(),
        )
    }


def build_registry(cfg: ToolsCfg) -> ToolRegistry:
    """Build the registry from the enabled built-in tools.

    Raises:
        ConfigError: If ``tools.enabled`` names a tool that does not exist.
    """
    available = builtin_tools(cfg.grep_program)
    unknown = [name for name in cfg.enabled if name not in available]
    if unknown:
        raise ConfigError(
            f"Unknown tool(s) in tools.enabled: {', '.join(unknown)}. "
            f"Available: {', '.join(available)}"
        )
    return ToolRegistry([available[name] for name in dict.fromkeys(cfg.enabled)])
