"""
Core Indexing

Components:
- vector_store.py: multi-granularity vector index with metadata filters
- graph_store.py: relationship graphs (dependency, call, data flow, module)
- checkpoint.py: append-only JSONL checkpoint log
- pipeline.py: batch orchestrator tying chunking, embedding and indexing together

Every store publishes immutable snapshots; readers never see staged writes.
"""

from .vector_store import VectorIndexStore, IndexEntry, IndexSnapshot, QueryFilter, QueryResult
from .graph_store import RelationshipGraphStore, GraphSnapshot
from .checkpoint import CheckpointLog
from .pipeline import PipelineOrchestrator, create_default_pipeline, next_batch_size
