"""
Preprocessing Module

Memory-aware chunking, usable on its own or as the first pipeline stage.
"""

from boltindex.preprocessing.adaptive_chunker import (
    AdaptiveChunker,
    Chunk,
    chunk_text,
    next_chunk_size
)

__all__ = [
    "AdaptiveChunker",
    "Chunk",
    "chunk_text",
    "next_chunk_size",
]
