"""
Indexability Rules

An `Excluder` decides whether a path may enter the index. Rules are
evaluated twice: on the path and its size (cheap, before any read) and on
the raw bytes once the file has been read (binary sniffing).
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence, runtime_checkable


BINARY_EXTENSIONS = {
    # Images
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp", ".tiff",
    # Documents
    ".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".odt", ".ods",
    # Archives
    ".zip", ".tar", ".gz", ".rar", ".7z", ".bz2", ".xz", ".jar", ".war",
    # Executables
    ".exe", ".dll", ".so", ".dylib", ".bin",
    # Media
    ".mp3", ".mp4", ".avi", ".mov", ".wav", ".flac", ".mkv", ".webm",
    # Compiled
    ".pyc", ".pyo", ".class", ".o", ".obj", ".wasm",
    # Fonts
    ".ttf", ".otf", ".woff", ".woff2", ".eot",
    # Other
    ".db", ".sqlite", ".sqlite3", ".db-wal", ".db-shm",
}

SNIFF_BYTES = 8192


def is_binary_content(content: bytes, sample_size: int = SNIFF_BYTES) -> bool:
    """
    Detect binary content from the first `sample_size` bytes.

    A NUL byte, or a sample that is not valid UTF-8, marks the file as
    binary. A multi-byte sequence cut by the sample boundary is tolerated.
    """
    if not content:
        return False

    sample = content[:sample_size]
    if b"\x00" in sample:
        return True

    try:
        sample.decode("utf-8")
    except UnicodeDecodeError as exc:
        truncated = len(content) > sample_size and exc.start >= len(sample) - 3
        return not truncated
    return False


@runtime_checkable
class Excluder(Protocol):
    """Capability deciding which files are indexable."""

    def excludes_dir(self, path: Path) -> bool:
        """Return True when a directory walk must not descend into `path`."""
        ...

    def excludes_path(self, path: Path, size: Optional[int] = None) -> Optional[str]:
        """Return a reason when `path` (of `size` bytes, if known) must not be indexed."""
        ...

    def excludes_content(self, path: Path, content: bytes) -> Optional[str]:
        """Return a reason when the raw `content` must not be indexed, else None."""
        ...


class PathExcluder:
    """
    Default rules for workspace files.

    - any path component listed in `excluded_dirs` excludes the file
    - when `include_patterns` is non-empty, the normalised path must
      contain at least one of them
    - known binary extensions and files above `max_file_size_bytes` are
      excluded
    - content with NUL bytes or invalid UTF-8 is excluded
    """

    def __init__(
        self,
        excluded_dirs: Iterable[str] = (),
        include_patterns: Sequence[str] = (),
        max_file_size_bytes: int = 1024 * 1024,
    ) -> None:
        self.excluded_dirs = frozenset(excluded_dirs)
        self.include_patterns = [p for p in include_patterns if p.strip()]
        self.max_file_size_bytes = max_file_size_bytes

    def excludes_dir(self, path: Path) -> bool:
        return path.name in self.excluded_dirs

    def excludes_path(self, path: Path, size: Optional[int] = None) -> Optional[str]:
        if any(part in self.excluded_dirs for part in path.parts):
            return "excluded directory"

        normalized = path.as_posix()
        if self.include_patterns and not any(p in normalized for p in self.include_patterns):
            return "not matched by include patterns"

        if path.suffix.lower() in BINARY_EXTENSIONS:
            return "binary extension"

        if size is not None and size > self.max_file_size_bytes:
            return f"larger than {self.max_file_size_bytes} bytes"

        return None

    def excludes_content(self, path: Path, content: bytes) -> Optional[str]:
        if is_binary_content(content):
            return "binary content"
        return None
