"""Fixtures for CLI tests: an initialised project and patched model access."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from anvil.cli.main import app
from anvil.rag.llm_client import Completion


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    """Never read the developer's ~/.anvil/config.yaml or ANVIL_* variables."""
    monkeypatch.setattr("anvil.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    for var in ("ANVIL_GENERATION_MODEL", "ANVIL_EMBEDDING_MODEL", "ANVIL_DB"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def project(tmp_path) -> Path:
    """Project directory with an 8-dimension local-model config (no API key needed)."""
    root = tmp_path / "proj"
    root.mkdir()
    (root / "anvil.yaml").write_text(
        yaml.dump(
            {
                "embedding": {"model": "ollama/nomic-embed-text", "dimensions": 8},
                "generation": {"model": "ollama/llama3", "fallback_model": None},
                "chunking": {"max_tokens": 50},
                "tools": {"enabled": ["grep", "list_files"], "timeout": 5},
            }
        ),
        encoding="utf-8",
    )
    (root / "src").mkdir()
    (root / "src" / "main.rs").write_text('fn main() {\n    println!("hello uart");\n}\n')
    (root / "README.md").write_text("Firmware for the uart bridge board.\n")
    return root


@pytest.fixture
def fake_embedder(embedder):
    """Patch every command's embedding client with the deterministic fake."""
    with (
        patch("anvil.cli.ingest.embedding_client", return_value=embedder),
        patch("anvil.cli.search.embedding_client", return_value=embedder),
        patch("anvil.cli.ask.embedding_client", return_value=embedder),
    ):
        yield embedder


@pytest.fixture
def initialised(runner, project, fake_embedder) -> Path:
    """Project after ``anvil init`` and ``anvil ingest --source . -r``."""
    result = runner.invoke(app, ["init", str(project)])
    assert result.exit_code == 0, result.output
    result = runner.invoke(
        app, ["ingest", "--source", str(project), "--recursive", "--tag", "fw", "-p", str(project)]
    )
    assert result.exit_code == 0, result.output
    return project


def _answering(text: str):
    """A completer that always answers *text*."""

    async def _complete(messages, tools):
        return Completion(content=text, message={"role": "assistant", "content": text})

    return _complete


@pytest.fixture
def answer():
    """Factory for completers that always answer the given text."""
    return _answering
