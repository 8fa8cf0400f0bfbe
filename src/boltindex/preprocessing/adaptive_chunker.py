"""
Adaptive Chunker - Memory-aware, line-based chunking with overlap.

The target chunk size tracks memory pressure: it shrinks by 20% while the
process is above the memory target and grows by 20% while it is below half
of it, always clamped to [min_size, max_size]. Content larger than the
current size is split on line boundaries into overlapping windows of at
most max_size bytes (a single line longer than that is kept whole).

Sizes are UTF-8 byte counts. Line ranges are half-open [start, end).
"""
from typing import Iterator, List, Optional
from dataclasses import dataclass
import bisect
import hashlib

from boltindex.config import settings
from boltindex.core.errors import ChunkingError
from boltindex.core.memory import MemoryMonitor
from boltindex.core.logging import get_logger

logger = get_logger(__name__)

SHRINK_FACTOR = 0.8
GROW_FACTOR = 1.2
DEFAULT_LINE_LENGTH = 80


@dataclass(frozen=True)
class Chunk:
    """A contiguous line range of one source."""
    content: str
    start_line: int
    end_line: int
    source_id: str
    language: str
    content_type: str
    index: int
    overlap_lines: int = 0

    @property
    def byte_size(self) -> int:
        return len(self.content.encode("utf-8"))

    @property
    def unique_start(self) -> int:
        """First line not shared with the previous chunk."""
        return self.start_line + self.overlap_lines

    @property
    def chunk_id(self) -> str:
        return hashlib.sha256(
            f"{self.source_id}:{self.start_line}:{self.end_line}".encode()
        ).hexdigest()[:16]


def _byte_length(content: str) -> int:
    return len(content.encode("utf-8"))


def _validate_bounds(min_size: int, max_size: int, overlap_bytes: int):
    if min_size <= 0 or max_size <= 0:
        raise ChunkingError(f"Chunk size bounds must be positive (min={min_size}, max={max_size})")
    if min_size > max_size:
        raise ChunkingError(f"min_size {min_size} exceeds max_size {max_size}")
    if overlap_bytes < 0:
        raise ChunkingError(f"overlap must be non-negative, got {overlap_bytes}")


def next_chunk_size(
    previous: int,
    usage_bytes: int,
    target_memory: int,
    min_size: int,
    max_size: int,
) -> int:
    """
    One step of the adaptive sizing policy.

    Args:
        previous: Chunk size used last time
        usage_bytes: Latest memory reading
        target_memory: Memory target in bytes
        min_size: Lower clamp
        max_size: Upper clamp

    Returns:
        New chunk size, always within [min_size, max_size]
    """
    size = float(previous)
    if usage_bytes > target_memory:
        size *= SHRINK_FACTOR
    elif usage_bytes < target_memory / 2:
        size *= GROW_FACTOR
    return int(min(max(size, min_size), max_size))


class AdaptiveChunker:
    """
    Memory-aware chunker.

    The chunker remembers the last chunk size it used, so successive calls
    drift with memory pressure instead of jumping around.

    Usage:
        chunker = AdaptiveChunker(monitor=MemoryMonitor())
        for chunk in chunker.chunk(text, min_size=512, max_size=4096,
                                   overlap_bytes=128, target_memory=512 << 20):
            ...
    """

    def __init__(
        self,
        monitor: Optional[MemoryMonitor] = None,
        initial_size: Optional[int] = None,
    ):
        self.monitor = monitor or MemoryMonitor(min_interval=settings.memory_sample_interval)
        self._chunk_size: Optional[int] = initial_size

        self.stats = {
            "total_chunks": 0,
            "total_documents": 0,
        }

    @property
    def chunk_size(self) -> Optional[int]:
        """Size chosen by the last adapt() call (None before the first one)."""
        return self._chunk_size

    def adapt(self, min_size: int, max_size: int, target_memory: int) -> int:
        """Re-evaluate the chunk size against the current memory reading."""
        _validate_bounds(min_size, max_size, 0)
        previous = self._chunk_size if self._chunk_size is not None else max_size
        usage = self.monitor.sample()
        size = next_chunk_size(previous, usage, target_memory, min_size, max_size)

        if size != previous:
            logger.debug(
                "chunk_size_adjusted",
                previous=previous,
                size=size,
                usage_bytes=usage,
                target_memory=target_memory,
            )
        self._chunk_size = size
        return size

    def chunk(
        self,
        content: str,
        min_size: int = settings.chunk_min_size,
        max_size: int = settings.chunk_max_size,
        overlap_bytes: int = settings.chunk_overlap,
        target_memory: int = settings.memory_target_bytes,
        source_id: str = "",
        language: str = "text",
        content_type: str = "text",
        adapt: bool = True,
    ) -> Iterator[Chunk]:
        """
        Split content into overlapping, size-bounded chunks.

        Validation and planning happen eagerly, so configuration errors are
        raised by this call rather than on first iteration.

        Args:
            content: Text to split
            min_size: Minimum chunk size (bytes)
            max_size: Maximum chunk size (bytes)
            overlap_bytes: Approximate overlap between consecutive chunks (bytes)
            target_memory: Memory target driving the adaptive size
            source_id: Identifier stamped on every chunk
            language: Language tag stamped on every chunk
            content_type: Content-type tag stamped on every chunk
            adapt: Re-evaluate the chunk size first (False reuses the last size)

        Returns:
            Lazy single-pass iterator of Chunk objects, in source order

        Raises:
            ChunkingError: empty content, bad bounds, or overlap >= chunk length
        """
        _validate_bounds(min_size, max_size, overlap_bytes)
        if not content:
            raise ChunkingError(f"Cannot chunk empty content (source={source_id!r})")

        if adapt or self._chunk_size is None:
            chunk_size = self.adapt(min_size, max_size, target_memory)
        else:
            chunk_size = int(min(max(self._chunk_size, min_size), max_size))

        total_bytes = _byte_length(content)
        self.stats["total_documents"] += 1

        if total_bytes <= chunk_size:
            lines = content.splitlines(keepends=True)
            return self._emit_single(content, len(lines) or 1, source_id, language, content_type)

        lines = content.splitlines(keepends=True)
        total_lines = len(lines)
        avg_line_length = total_bytes / total_lines if total_lines else DEFAULT_LINE_LENGTH
        lines_per_chunk = max(1, int(chunk_size // avg_line_length))
        overlap_lines = max(1, int(overlap_bytes // avg_line_length))

        if overlap_lines >= lines_per_chunk:
            raise ChunkingError(
                f"Overlap of {overlap_lines} lines does not leave room to advance "
                f"(lines_per_chunk={lines_per_chunk}, chunk_size={chunk_size}, "
                f"avg_line_length={avg_line_length:.1f})"
            )

        logger.debug(
            "chunk_plan",
            source_id=source_id,
            total_lines=total_lines,
            chunk_size=chunk_size,
            lines_per_chunk=lines_per_chunk,
            overlap_lines=overlap_lines,
        )

        offsets = [0]
        for line in lines:
            offsets.append(offsets[-1] + _byte_length(line))

        return self._emit_windows(
            lines, offsets, lines_per_chunk, overlap_lines, max_size, source_id, language, content_type
        )

    def _emit_single(
        self, content: str, line_count: int, source_id: str, language: str, content_type: str
    ) -> Iterator[Chunk]:
        self.stats["total_chunks"] += 1
        yield Chunk(
            content=content,
            start_line=0,
            end_line=line_count,
            source_id=source_id,
            language=language,
            content_type=content_type,
            index=0,
        )

    def _emit_windows(
        self,
        lines: List[str],
        offsets: List[int],
        lines_per_chunk: int,
        overlap_lines: int,
        max_size: int,
        source_id: str,
        language: str,
        content_type: str,
    ) -> Iterator[Chunk]:
        total_lines = len(lines)
        start = 0
        index = 0
        while True:
            end = min(start + lines_per_chunk, total_lines)
            # Long lines can push a window past max_size: cut it back, but keep
            # one line past the overlap so the next window still advances.
            # Lines are never split, so a single line over max_size stays whole.
            fits = bisect.bisect_right(offsets, offsets[start] + max_size) - 1
            end = max(min(end, fits), min(start + overlap_lines + 1, total_lines))
            self.stats["total_chunks"] += 1
            yield Chunk(
                content="".join(lines[start:end]),
                start_line=start,
                end_line=end,
                source_id=source_id,
                language=language,
                content_type=content_type,
                index=index,
                overlap_lines=overlap_lines if index > 0 else 0,
            )
            if end >= total_lines:
                return

            next_start = end - overlap_lines
            if next_start <= start:
                # Guarded by the planning check; kept so the loop can never spin.
                raise ChunkingError(f"Chunk loop stalled at line {start} (source={source_id!r})")
            start = next_start
            index += 1


def chunk_text(
    content: str,
    min_size: int = settings.chunk_min_size,
    max_size: int = settings.chunk_max_size,
    overlap_bytes: int = settings.chunk_overlap,
    target_memory: int = settings.memory_target_bytes,
    monitor: Optional[MemoryMonitor] = None,
    source_id: str = "",
    language: str = "text",
) -> List[Chunk]:
    """
    Convenience function for standalone chunking.

    Example:
        >>> chunks = chunk_text(open("big.log").read(), min_size=200, max_size=800)
        >>> [(c.start_line, c.end_line) for c in chunks]
    """
    chunker = AdaptiveChunker(monitor=monitor)
    return list(chunker.chunk(
        content,
        min_size=min_size,
        max_size=max_size,
        overlap_bytes=overlap_bytes,
        target_memory=target_memory,
        source_id=source_id,
        language=language,
    ))
