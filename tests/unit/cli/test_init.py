"""Tests for anvil init."""

from __future__ import annotations

from anvil.cli.main import app


def test_init_creates_config_db_and_session_dir(runner, tmp_path):
    target = tmp_path / "fresh"
    result = runner.invoke(app, ["init", str(target)])
    assert result.exit_code == 0, result.output
    assert (target / "anvil.yaml").exists()
    assert (target / ".anvil.db").exists()
    assert (target / ".anvil").is_dir()
    assert "1536 dims" in result.output
    assert "anvil ingest" in result.output


def test_init_keeps_existing_config(runner, project):
    before = (project / "anvil.yaml").read_text()
    result = runner.invoke(app, ["init", str(project)])
    assert result.exit_code == 0, result.output
    assert "exists" in result.output
    assert (project / "anvil.yaml").read_text() == before
    assert "8 dims" in result.output


def test_init_is_idempotent(runner, project):
    assert runner.invoke(app, ["init", str(project)]).exit_code == 0
    assert runner.invoke(app, ["init", str(project)]).exit_code == 0


def test_init_reports_index_mismatch(runner, project):
    assert runner.invoke(app, ["init", str(project)]).exit_code == 0
    config = project / "anvil.yaml"
    config.write_text(config.read_text().replace("dimensions: 8", "dimensions: 16"))
    result = runner.invoke(app, ["init", str(project)])
    assert result.exit_code == 1
    assert "mismatch" in result.output


def test_init_reports_bad_config(runner, project):
    (project / "anvil.yaml").write_text("retrieval:\n  distance_metric: hamming\n")
    result = runner.invoke(app, ["init", str(project)])
    assert result.exit_code == 1
    assert "Invalid configuration" in result.output
