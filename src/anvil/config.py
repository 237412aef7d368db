"""Anvil configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (ANVIL_GENERATION_MODEL, ANVIL_FALLBACK_MODEL,
                             ANVIL_EMBEDDING_MODEL, ANVIL_DB, ANVIL_LOG_LEVEL)
  3. Per-project anvil.yaml
  4. Global ~/.anvil/config.yaml  (model defaults only — no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from anvil.errors import ConfigError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".anvil"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "anvil.yaml"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or token_budget.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    [
        "project",
        "embedding",
        "generation",
        "retrieval",
        "chunking",
        "tools",
        "storage",
        "logging",
    ]
)

DISTANCE_METRICS: frozenset[str] = frozenset(["l2", "cosine", "dot"])

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding assistant working inside a software project. "
    "Use the available tools to search and modify files when needed. "
    "Tool results are returned to you verbatim; if a tool call is rejected, "
    "read the reason and retry with corrected arguments."
)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ProjectCfg:
    """Project-level settings (anvil.yaml: project:).

    Attributes:
        root: Directory the tools are confined to. Relative paths are
            resolved against the directory holding anvil.yaml.
        system_prompt: System message placed at the top of every completion.
    """

    root: str = "."
    system_prompt: str = DEFAULT_SYSTEM_PROMPT


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (anvil.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 64
    max_attempts: int = 5


@dataclass
class GenerationCfg:
    """Completion model configuration (anvil.yaml: generation:)."""

    model: str = "openai/gpt-4o"
    fallback_model: str | None = "openai/gpt-4o-mini"
    max_tokens: int = 4_096
    temperature: float = 0.0
    max_tool_rounds: int = 8


@dataclass
class RetrievalCfg:
    """Retrieval configuration (anvil.yaml: retrieval:)."""

    top_k: int = 8
    message_top_k: int = 4
    token_budget: int = 4_096
    distance_metric: str = "cosine"
    index_batch_size: int = 128
    history_messages: int = 20


@dataclass
class ChunkingCfg:
    """Chunker configuration (anvil.yaml: chunking:)."""

    max_tokens: int = 512


@dataclass
class ToolsCfg:
    """Tool framework configuration (anvil.yaml: tools:)."""

    enabled: list[str] = field(
        default_factory=lambda: ["grep", "patch_file", "list_files", "cargo_check"]
    )
    timeout: float = 30.0
    max_output_bytes: int = 64_000
    grep_program: str = "grep"


@dataclass
class StorageCfg:
    """Storage locations (anvil.yaml: storage:)."""

    db: str = ".anvil.db"
    session_dir: str = ".anvil"


@dataclass
class LoggingCfg:
    """Logging configuration (anvil.yaml: logging:)."""

    level: str = "WARNING"
    format: str = "console"  # console | json


@dataclass
class AnvilConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    project: ProjectCfg = field(default_factory=ProjectCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    generation: GenerationCfg = field(default_factory=GenerationCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    tools: ToolsCfg = field(default_factory=ToolsCfg)
    storage: StorageCfg = field(default_factory=StorageCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)
    base_dir: Path = field(default_factory=Path.cwd)

    @property
    def project_root(self) -> Path:
        return (self.base_dir / self.project.root).resolve()

    @property
    def db_path(self) -> Path:
        return self.base_dir / self.storage.db

    @property
    def session_dir(self) -> Path:
        return self.base_dir / self.storage.session_dir


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate(cfg: AnvilConfig) -> None:
    if cfg.retrieval.distance_metric not in DISTANCE_METRICS:
        raise ConfigError(
            f"retrieval.distance_metric must be one of "
            f"{', '.join(sorted(DISTANCE_METRICS))}; got '{cfg.retrieval.distance_metric}'"
        )
    if cfg.embedding.dimensions < 1:
        raise ConfigError(f"embedding.dimensions must be >= 1, got {cfg.embedding.dimensions}")
    if cfg.embedding.batch_size < 1:
        raise ConfigError(f"embedding.batch_size must be >= 1, got {cfg.embedding.batch_size}")
    if cfg.chunking.max_tokens < 1:
        raise ConfigError(f"chunking.max_tokens must be >= 1, got {cfg.chunking.max_tokens}")
    if cfg.tools.timeout <= 0:
        raise ConfigError(f"tools.timeout must be > 0, got {cfg.tools.timeout}")
    if cfg.retrieval.top_k < 1:
        raise ConfigError(f"retrieval.top_k must be >= 1, got {cfg.retrieval.top_k}")
    if cfg.generation.max_tool_rounds < 1:
        raise ConfigError(
            f"generation.max_tool_rounds must be >= 1, got {cfg.generation.max_tool_rounds}"
        )


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any], base_dir: Path) -> AnvilConfig:
    """Build an *AnvilConfig* from a merged raw YAML dict."""
    cfg = AnvilConfig(base_dir=base_dir)

    try:
        if "project" in data:
            p = data["project"]
            cfg.project = ProjectCfg(
                root=str(p.get("root", cfg.project.root)),
                system_prompt=str(p.get("system_prompt", cfg.project.system_prompt)),
            )

        if "embedding" in data:
            e = data["embedding"]
            cfg.embedding = EmbeddingCfg(
                model=str(e.get("model", cfg.embedding.model)),
                dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
                batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
                max_attempts=int(e.get("max_attempts", cfg.embedding.max_attempts)),
            )

        if "generation" in data:
            g = data["generation"]
            cfg.generation = GenerationCfg(
                model=str(g.get("model", cfg.generation.model)),
                fallback_model=g.get("fallback_model", cfg.generation.fallback_model),
                max_tokens=int(g.get("max_tokens", cfg.generation.max_tokens)),
                temperature=float(g.get("temperature", cfg.generation.temperature)),
                max_tool_rounds=int(g.get("max_tool_rounds", cfg.generation.max_tool_rounds)),
            )

        if "retrieval" in data:
            r = data["retrieval"]
            cfg.retrieval = RetrievalCfg(
                top_k=int(r.get("top_k", cfg.retrieval.top_k)),
                message_top_k=int(r.get("message_top_k", cfg.retrieval.message_top_k)),
                token_budget=int(r.get("token_budget", cfg.retrieval.token_budget)),
                distance_metric=str(
                    r.get("distance_metric", cfg.retrieval.distance_metric)
                ).lower(),
                index_batch_size=int(
                    r.get("index_batch_size", cfg.retrieval.index_batch_size)
                ),
                history_messages=int(
                    r.get("history_messages", cfg.retrieval.history_messages)
                ),
            )

        if "chunking" in data:
            c = data["chunking"]
            cfg.chunking = ChunkingCfg(
                max_tokens=int(c.get("max_tokens", cfg.chunking.max_tokens)),
            )

        if "tools" in data:
            t = data["tools"]
            cfg.tools = ToolsCfg(
                enabled=[str(n) for n in t.get("enabled", cfg.tools.enabled)],
                timeout=float(t.get("timeout", cfg.tools.timeout)),
                max_output_bytes=int(t.get("max_output_bytes", cfg.tools.max_output_bytes)),
                grep_program=str(t.get("grep_program", cfg.tools.grep_program)),
            )

        if "storage" in data:
            s = data["storage"]
            cfg.storage = StorageCfg(
                db=str(s.get("db", cfg.storage.db)),
                session_dir=str(s.get("session_dir", cfg.storage.session_dir)),
            )

        if "logging" in data:
            lg = data["logging"]
            cfg.logging = LoggingCfg(
                level=str(lg.get("level", cfg.logging.level)),
                format=str(lg.get("format", cfg.logging.format)),
            )
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(f"Invalid configuration value: {exc}") from exc

    return cfg


def _apply_env_overrides(cfg: AnvilConfig) -> AnvilConfig:
    """Apply ANVIL_* environment variable overrides."""
    if model := os.environ.get("ANVIL_GENERATION_MODEL"):
        cfg.generation.model = model
    if model := os.environ.get("ANVIL_FALLBACK_MODEL"):
        cfg.generation.fallback_model = model
    if model := os.environ.get("ANVIL_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if db := os.environ.get("ANVIL_DB"):
        cfg.storage.db = db
    if level := os.environ.get("ANVIL_LOG_LEVEL"):
        cfg.logging.level = level
    return cfg


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Could not parse '{path}': {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"'{path}' must contain a mapping at the top level.")
    return raw


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> AnvilConfig:
    """Load and return a merged *AnvilConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *anvil.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields, or if a
            value has the wrong type or is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = _read_yaml(global_path)
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = _read_yaml(project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged, base_dir=search_dir)
    cfg = _apply_env_overrides(cfg)
    _validate(cfg)
    return cfg


def write_project_config(project_dir: Path) -> Path:
    """Write a starter ``anvil.yaml`` into *project_dir* unless one exists."""
    target = project_dir / _PROJECT_CONFIG_NAME
    if not target.exists():
        content = (
            "# Anvil project configuration.\n"
            "# NEVER store API keys here — use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "project:\n"
            "  root: .\n"
            "\n"
            "embedding:\n"
            "  model: openai/text-embedding-3-small\n"
            "  dimensions: 1536\n"
            "\n"
            "generation:\n"
            "  model: openai/gpt-4o\n"
            "  fallback_model: openai/gpt-4o-mini\n"
            "\n"
            "retrieval:\n"
            "  distance_metric: cosine\n"
            "\n"
            "tools:\n"
            "  enabled: [grep, patch_file, list_files, cargo_check]\n"
            "  timeout: 30\n"
        )
        target.write_text(content, encoding="utf-8")
    return target
