"""Tests for anvil tools."""

from __future__ import annotations

from anvil.cli.main import app


def test_tools_lists_enabled_tools(runner, project):
    result = runner.invoke(app, ["tools", "-p", str(project)])
    assert result.exit_code == 0, result.output
    assert "grep" in result.output
    assert "list_files" in result.output
    assert "patch_file" not in result.output
    assert "-i" in result.output


def test_tools_unknown_tool_in_config(runner, project):
    config = project / "anvil.yaml"
    config.write_text(config.read_text().replace("- list_files", "- rm"))
    result = runner.invoke(app, ["tools", "-p", str(project)])
    assert result.exit_code == 1
    assert "Unknown tool" in result.output
