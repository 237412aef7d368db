"""Tests for tool argument validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from anvil.errors import ErrorKind, ValidationRejected
from anvil.tools.definitions import ParameterSpec, ParamKind, ToolDefinition, ToolKind
from anvil.tools.registry import GREP_OPTIONS, grep_tool, patch_file_tool
from anvil.tools.validator import validate


@pytest.fixture
def project(tmp_path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "main.rs").write_text("fn main() {}\n")
    (tmp_path / "-weird.rs").write_text("")
    (tmp_path / "docs").mkdir()
    return tmp_path


def _tool(*params: ParameterSpec, roots=(".",)) -> ToolDefinition:
    return ToolDefinition(
        name="t",
        description="test tool",
        kind=ToolKind.COMMAND,
        program="true",
        base_args=("--base",),
        parameters=params,
        path_roots=roots,
    )


# ------------------------------------------------------------------
# argv construction
# ------------------------------------------------------------------


def test_grep_argv(project):
    call = validate(
        grep_tool(),
        {"options": "-i,-n", "pattern": "fn main", "paths": "src"},
        project,
    )
    assert call.argv == ("-r", "-i", "-n", "-e", "fn main", "--", "src")
    assert call.stdin is None


def test_optional_parameters_can_be_omitted(project):
    call = validate(grep_tool(), {"pattern": "x", "options": ""}, project)
    assert call.argv == ("-r", "-e", "x")


def test_pattern_starting_with_dash_stays_a_value(project):
    call = validate(grep_tool(), {"pattern": "--include=*.rs"}, project)
    assert call.argv == ("-r", "-e", "--include=*.rs")


def test_stdin_parameter_never_reaches_argv(project):
    call = validate(
        patch_file_tool(),
        {"file_to_patch": "src/main.rs", "patch_content": "--- a\n+++ b\n"},
        project,
    )
    assert call.argv == ("--batch", "--forward", "--", "src/main.rs")
    assert call.stdin == "--- a\n+++ b\n"


# ------------------------------------------------------------------
# Rejections
# ------------------------------------------------------------------


def test_unknown_argument_rejected(project):
    with pytest.raises(ValidationRejected) as exc_info:
        validate(grep_tool(), {"pattern": "x", "exec": "rm -rf /"}, project)
    assert exc_info.value.kind is ErrorKind.VALIDATION_REJECTED
    assert "exec" in exc_info.value.message
    assert "Known parameters: options, pattern, paths" in exc_info.value.message


def test_missing_required_argument(project):
    with pytest.raises(ValidationRejected, match="Missing required argument 'pattern'"):
        validate(grep_tool(), {"options": "-i"}, project)


def test_invalid_option_lists_valid_ones(project):
    with pytest.raises(ValidationRejected) as exc_info:
        validate(grep_tool(), {"options": "-i,-z", "pattern": "x"}, project)
    assert exc_info.value.message == (
        f"Invalid option '-z'. Valid options: {', '.join(GREP_OPTIONS)}"
    )


def test_option_with_smuggled_value_rejected(project):
    with pytest.raises(ValidationRejected, match="Invalid option"):
        validate(grep_tool(), {"options": "-i --exclude-dir=/", "pattern": "x"}, project)


def test_non_string_value_rejected(project):
    with pytest.raises(ValidationRejected, match="must be a string"):
        validate(grep_tool(), {"pattern": ["a", "b"]}, project)


def test_nul_byte_rejected(project):
    with pytest.raises(ValidationRejected, match="NUL"):
        validate(grep_tool(), {"pattern": "a\x00b"}, project)


def test_max_length_enforced(project):
    with pytest.raises(ValidationRejected, match="too long"):
        validate(grep_tool(), {"pattern": "x" * 5000}, project)


def test_string_pattern_enforced(project):
    with pytest.raises(ValidationRejected, match="required pattern"):
        validate(
            patch_file_tool(),
            {
                "file_to_patch": "src/main.rs",
                "patch_content": "diff",
                "patch_name": "../escape",
            },
            project,
        )


def test_choice_parameter(project):
    tool = _tool(
        ParameterSpec(name="mode", kind=ParamKind.CHOICE, allowed_values=("fast", "full"))
    )
    assert validate(tool, {"mode": "full"}, project).argv == ("--base", "full")
    with pytest.raises(ValidationRejected, match="Valid values: fast, full"):
        validate(tool, {"mode": "slow"}, project)


def test_too_many_options(project):
    tool = _tool(
        ParameterSpec(
            name="o", kind=ParamKind.OPTIONS, allowed_values=("-a", "-b"), max_items=1
        )
    )
    with pytest.raises(ValidationRejected, match="Too many options"):
        validate(tool, {"o": "-a,-b"}, project)


# ------------------------------------------------------------------
# Path containment
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "path",
    ["..", "../etc/passwd", "src/../../outside", "/etc/passwd", "/"],
)
def test_paths_outside_root_rejected(project, path):
    with pytest.raises(ValidationRejected, match="outside the permitted directories"):
        validate(grep_tool(), {"pattern": "x", "paths": path}, project)


def test_symlink_escape_rejected(project, tmp_path_factory):
    outside = tmp_path_factory.mktemp("outside")
    (project / "link").symlink_to(outside)
    with pytest.raises(ValidationRejected, match="outside"):
        validate(grep_tool(), {"pattern": "x", "paths": "link"}, project)


def test_absolute_path_inside_root_is_made_relative(project):
    call = validate(
        grep_tool(), {"pattern": "x", "paths": str(project / "src" / "main.rs")}, project
    )
    assert call.argv[-1] == "src/main.rs"


def test_root_and_dash_paths_rendered_safely(project):
    call = validate(grep_tool(), {"pattern": "x", "paths": ".,-weird.rs"}, project)
    assert call.argv[-3:] == ("--", ".", "./-weird.rs")


def test_missing_path_rejected(project):
    with pytest.raises(ValidationRejected, match="does not exist"):
        validate(grep_tool(), {"pattern": "x", "paths": "src/nope.rs"}, project)


def test_empty_path_item_rejected(project):
    with pytest.raises(ValidationRejected, match="Empty path"):
        validate(grep_tool(), {"pattern": "x", "paths": "src,,docs"}, project)


def test_path_roots_restrict_to_subdirectory(project):
    tool = _tool(ParameterSpec(name="p", kind=ParamKind.PATHS), roots=("docs",))
    assert validate(tool, {"p": "docs"}, project).argv == ("--base", "docs")
    with pytest.raises(ValidationRejected, match="outside"):
        validate(tool, {"p": "src/main.rs"}, project)


def test_patch_accepts_single_file_only(project):
    with pytest.raises(ValidationRejected, match="Too many paths"):
        validate(
            patch_file_tool(),
            {"file_to_patch": "src/main.rs,docs", "patch_content": "diff"},
            project,
        )
