"""Ingestion pipeline: read -> chunk -> embed what is new -> upsert -> prune.

Chunks are keyed by content checksum, so re-ingesting an unchanged file
costs no embedding calls. When a file changes, chunks it no longer
produces are pruned from the store.
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import pypdf
import structlog
from pypdf.errors import PyPdfError

from anvil.db.models import ChunkMetadata
from anvil.errors import ChunkingError
from anvil.ingest.chunker import Chunker
from anvil.rag.store import VectorStore, content_checksum

log = structlog.get_logger(__name__)

BINARY_EXTENSIONS = {
    # Images
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".tiff",
    # Documents
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods",
    # Archives
    ".zip", ".tar", ".gz", ".rar", ".7z", ".bz2", ".xz",
    # Executables and compiled
    ".exe", ".dll", ".so", ".dylib", ".bin", ".pyc", ".pyo", ".class", ".o", ".obj",
    ".wasm", ".rlib",
    # Media
    ".mp3", ".mp4", ".avi", ".mov", ".wav", ".flac", ".mkv", ".webm",
    # Fonts
    ".ttf", ".otf", ".woff", ".woff2", ".eot",
    # Databases
    ".db", ".sqlite", ".sqlite3",
}

DEFAULT_EXCLUDES = (
    ".git", ".anvil", ".anvil.db*", "target", "node_modules", "__pycache__", ".venv",
)

_TEXT_BYTES = set(range(32, 127)) | {8, 9, 10, 12, 13, 27} | set(range(128, 256))


class Embedder(Protocol):
    async def embed(self, batch: Sequence[str]) -> list[list[float]]: ...


def is_binary_content(content: bytes, sample_size: int = 8192) -> bool:
    """True when the first *sample_size* bytes contain NUL or >30% control bytes."""
    if not content:
        return False
    sample = content[:sample_size]
    if b"\x00" in sample:
        return True
    non_text = sum(1 for byte in sample if byte not in _TEXT_BYTES)
    return (non_text / len(sample)) > 0.30


def is_binary(path: Path, content: bytes) -> bool:
    return path.suffix.lower() in BINARY_EXTENSIONS or is_binary_content(content)


@dataclass
class IngestReport:
    """Outcome of ingesting one source.

    Attributes:
        source: Source path as stored (or ``None`` for raw text).
        chunks: Chunks the content produced.
        created: Chunks newly stored (each cost one embedding).
        pruned: Stale chunks of the same source removed.
        skipped: Reason the source was skipped, if it was.
    """

    source: str | None
    chunks: int = 0
    created: int = 0
    pruned: int = 0
    skipped: str | None = None


class Ingester:
    """Feeds text and files into a :class:`VectorStore`.

    Args:
        store: Destination store.
        embedder: Anything with an async ``embed(batch)``; normally
            :class:`anvil.rag.llm_client.EmbeddingClient`.
        chunker: Configured chunker.
        project_root: Files under this directory are recorded with a
            relative source path.
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        chunker: Chunker,
        *,
        project_root: Path | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.chunker = chunker
        self.project_root = project_root.resolve() if project_root else None

    async def ingest_text(
        self,
        content: str | bytes,
        *,
        source_path: str | None = None,
        tags: Iterable[str] = (),
    ) -> IngestReport:
        """Chunk *content*, embed chunks not yet stored, and upsert them.

        Chunks that already exist are tagged with *tags* but otherwise left
        alone. With *source_path*, chunks of that source that the content no
        longer produces are deleted.

        Raises:
            ChunkingError: If *content* is not valid UTF-8 text.
            EmbeddingUnavailable: If embedding fails after retries.
        """
        return await self._ingest_pages([(None, content)], source_path, tags)

    async def ingest_pdf(self, path: Path, *, tags: Iterable[str] = ()) -> IngestReport:
        """Ingest a PDF page by page; chunks record their 1-based page number."""
        source = self.source_name(path)
        try:
            pages = extract_pdf_pages(path)
        except (PyPdfError, OSError, ValueError) as exc:
            log.warning("ingest.skipped", source=source, reason=str(exc))
            return IngestReport(source=source, skipped=f"unreadable PDF: {exc}")
        return await self._ingest_pages(pages, source, tags)

    async def ingest_file(self, path: Path, *, tags: Iterable[str] = ()) -> IngestReport:
        """Ingest one file. Binary files are skipped, not raised."""
        if path.suffix.lower() == ".pdf":
            return await self.ingest_pdf(path, tags=tags)
        source = self.source_name(path)
        try:
            data = path.read_bytes()
        except OSError as exc:
            return IngestReport(source=source, skipped=f"unreadable: {exc.strerror or exc}")
        if is_binary(path, data):
            log.info("ingest.skipped", source=source, reason="binary")
            return IngestReport(source=source, skipped="binary file")
        try:
            return await self.ingest_text(data, source_path=source, tags=tags)
        except ChunkingError as exc:
            log.warning("ingest.skipped", source=source, reason=exc.message)
            return IngestReport(source=source, skipped=exc.message)

    async def _ingest_pages(
        self,
        pages: Sequence[tuple[int | None, str | bytes]],
        source_path: str | None,
        tags: Iterable[str],
    ) -> IngestReport:
        tag_list = tuple(dict.fromkeys(t.strip() for t in tags if t.strip()))

        # checksum -> (chunk text, page number); first occurrence wins
        found: dict[str, tuple[str, int | None]] = {}
        total = 0
        for page_number, content in pages:
            for chunk in self.chunker.chunk(content):
                total += 1
                found.setdefault(content_checksum(chunk), (chunk, page_number))
        report = IngestReport(source=source_path, chunks=total)

        existing = self.store.existing_checksums(found)
        missing = [item for cs, item in found.items() if cs not in existing]

        if missing:
            vectors = await self.embedder.embed([text for text, _ in missing])
            for (text, page_number), vector in zip(missing, vectors):
                meta = ChunkMetadata(
                    source_path=source_path, page_number=page_number, tags=tag_list
                )
                if self.store.upsert(text, vector, meta).created:
                    report.created += 1

        if tag_list:
            for checksum in existing:
                chunk = self.store.get_chunk_by_checksum(checksum)
                if chunk is not None and chunk.id is not None:
                    self.store.tag(chunk.id, tag_list)

        if source_path is not None:
            report.pruned = self.store.prune_source(source_path, found)

        log.info(
            "ingest.source",
            source=source_path,
            chunks=report.chunks,
            created=report.created,
            pruned=report.pruned,
        )
        return report

    async def ingest_paths(
        self,
        paths: Sequence[Path],
        *,
        tags: Iterable[str] = (),
        recursive: bool = False,
        exclude: Sequence[str] = (),
    ) -> list[IngestReport]:
        tag_list = tuple(tags)
        return [
            await self.ingest_file(p, tags=tag_list)
            for p in expand_sources(paths, recursive=recursive, exclude=exclude)
        ]

    def source_name(self, path: Path) -> str:
        resolved = path.resolve()
        if self.project_root is not None and resolved.is_relative_to(self.project_root):
            return resolved.relative_to(self.project_root).as_posix()
        return resolved.as_posix()


# ------------------------------------------------------------------
# Directory expansion
# ------------------------------------------------------------------


def expand_sources(
    paths: Sequence[Path],
    *,
    recursive: bool = False,
    exclude: Sequence[str] = (),
    max_depth: int = 10,
) -> list[Path]:
    """Expand directories to the files in them; files are kept as given."""
    patterns = (*DEFAULT_EXCLUDES, *exclude)
    result: list[Path] = []
    for p in paths:
        if p.is_dir():
            result.extend(_scan_dir(p, recursive, patterns, 0, max_depth))
        else:
            result.append(p)
    return list(dict.fromkeys(result))


def _scan_dir(
    directory: Path,
    recursive: bool,
    exclude: Sequence[str],
    depth: int,
    max_depth: int,
) -> list[Path]:
    files: list[Path] = []
    try:
        entries = sorted(directory.iterdir())
    except PermissionError:
        log.warning("ingest.unreadable_dir", path=str(directory))
        return []
    for entry in entries:
        if any(fnmatch.fnmatch(entry.name, pat) for pat in exclude):
            continue
        if entry.is_file():
            files.append(entry)
        elif entry.is_dir() and recursive and depth < max_depth:
            files.extend(_scan_dir(entry, recursive, exclude, depth + 1, max_depth))
    return files


# ------------------------------------------------------------------
# PDF extraction
# ------------------------------------------------------------------


def extract_pdf_pages(path: Path) -> list[tuple[int | None, str]]:
    """Return ``[(page_number, text)]`` for pages of *path* that yield text.

    Pages without extractable text (scanned images, etc.) are skipped.
    """
    reader = pypdf.PdfReader(str(path))
    pages: list[tuple[int | None, str]] = []
    for number, page in enumerate(reader.pages, start=1):
        text = (page.extract_text() or "").strip()
        if text:
            pages.append((number, text))
    return pages
