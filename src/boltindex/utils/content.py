"""
Content source and input discovery.

FileSystemContentSource implements the content-source interface
(``read(path) -> str``). The helpers below turn files and directories into
ContentUnit inputs for the pipeline.
"""
import hashlib
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from boltindex.core.logging import get_logger
from boltindex.schema.embeddings import Granularity
from boltindex.schema.pipeline import ContentUnit

logger = get_logger(__name__)

EXTENSION_LANGUAGES: Dict[str, str] = {
    ".rs": "rust",
    ".py": "python",
    ".js": "javascript",
    ".ts": "typescript",
    ".go": "go",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".java": "java",
    ".kt": "kotlin",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".scala": "scala",
    ".sh": "shell",
    ".sql": "sql",
    ".html": "html",
    ".css": "css",
    ".md": "markdown",
    ".markdown": "markdown",
    ".json": "json",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".txt": "text",
    ".log": "text",
}

DOCUMENT_LANGUAGES = {"markdown", "text"}

# Separates a file path from a symbol inside it ("src/app.py::main")
SYMBOL_SEPARATOR = "::"

DEFAULT_EXCLUDED_DIRS = {
    ".git", "node_modules", "target", "venv", ".venv", "__pycache__", "dist", "build",
}


def detect_language(path: str) -> str:
    """
    Language tag from the file extension ("text" when unknown).

    Symbol paths such as ``src/app.py::main`` use the file part.
    """
    file_part = path.split(SYMBOL_SEPARATOR, 1)[0]
    return EXTENSION_LANGUAGES.get(Path(file_part).suffix.lower(), "text")


def detect_content_type(language: str) -> str:
    return "document" if language in DOCUMENT_LANGUAGES else "source"


def content_fingerprint(content: str) -> str:
    """Stable hash of unit content, recorded in the checkpoint log."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ContentSource:
    """Protocol for content sources."""

    def read(self, path: str) -> str:
        raise NotImplementedError


class FileSystemContentSource(ContentSource):
    """Reads UTF-8 text from the local filesystem."""

    def __init__(self, root: Optional[Path] = None, encoding: str = "utf-8"):
        self.root = Path(root) if root else None
        self.encoding = encoding

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        if self.root is not None and not p.is_absolute():
            p = self.root / p
        return p

    def read(self, path: str) -> str:
        # errors="replace" keeps odd bytes from failing the whole unit
        return self._resolve(path).read_text(encoding=self.encoding, errors="replace")


class InMemoryContentSource(ContentSource):
    """Dict-backed source, handy for tests and generated content."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self.files: Dict[str, str] = dict(files or {})

    def read(self, path: str) -> str:
        try:
            return self.files[path]
        except KeyError:
            raise FileNotFoundError(path) from None


def iter_source_files(
    root: Path,
    extensions: Optional[Sequence[str]] = None,
    excluded_dirs: Iterable[str] = DEFAULT_EXCLUDED_DIRS,
) -> Iterator[Path]:
    """
    Walk a directory in sorted order, skipping excluded directories.

    Args:
        root: Directory (or single file) to walk
        extensions: Allowed suffixes (e.g. [".py"]); None means every known one
    """
    root = Path(root)
    allowed = {e.lower() for e in extensions} if extensions else set(EXTENSION_LANGUAGES)
    excluded = set(excluded_dirs)

    if root.is_file():
        if root.suffix.lower() in allowed:
            yield root
        return

    for path in sorted(root.rglob("*")):
        if any(part in excluded for part in path.relative_to(root).parts[:-1]):
            continue
        if path.is_file() and path.suffix.lower() in allowed:
            yield path


def units_from_paths(
    paths: Iterable[Path],
    extensions: Optional[Sequence[str]] = None,
) -> List[ContentUnit]:
    """Build file-granularity ContentUnits for every file under the given paths."""
    units: List[ContentUnit] = []
    seen = set()
    for root in paths:
        for file_path in iter_source_files(Path(root), extensions):
            key = file_path.as_posix()
            if key in seen:
                continue
            seen.add(key)
            language = detect_language(key)
            units.append(ContentUnit(
                id=key,
                path=key,
                granularity=Granularity.FILE,
                language=language,
                content_type=detect_content_type(language),
            ))
    logger.info("units_discovered", count=len(units))
    return units
