"""
Error taxonomy for the indexing core.

Per-unit failures (one semantic embedding, one edge) are caught by the
pipeline and aggregated into the run summary. Contract violations
(dimension mismatch, non-progressing chunk loop) abort the affected unit and
are never retried.
"""


class BoltIndexError(Exception):
    """Base class for all indexing core errors."""


class ChunkingError(BoltIndexError):
    """Degenerate input or a chunk configuration that cannot make progress."""


class FeatureExtractionError(BoltIndexError):
    """Structural features could not be extracted from the input."""


class EmbeddingError(BoltIndexError):
    """Embedding generation or combination failed."""


class DimensionMismatchError(EmbeddingError):
    """Two vectors that must share a dimension do not."""

    def __init__(self, expected: int, found: int, context: str = ""):
        self.expected = expected
        self.found = found
        message = f"Embedding dimension mismatch: expected {expected}, found {found}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class IndexStoreError(BoltIndexError):
    """Vector index failure (corrupted snapshot, bad query)."""


class CollisionError(IndexStoreError):
    """An identifier already exists in the index with different content."""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Index entry {entry_id!r} already exists with different content")


class GraphError(BoltIndexError):
    """Malformed edge or node state in the relationship graphs."""


class MemorySamplingError(BoltIndexError):
    """Memory probe failure. Always handled inside MemoryMonitor."""


class RunCancelledError(BoltIndexError):
    """The pipeline run was cancelled; nothing from the current batch is committed."""
