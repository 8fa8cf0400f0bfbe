from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field

from .embeddings import Granularity
from .graph import EdgeFact


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContentUnit(BaseModel):
    """
    One input to the pipeline: a file, function or module.

    When ``content`` is None the pipeline reads ``path`` through its content
    source. ``edges`` holds facts an analyzer already discovered for this unit.
    """
    id: str
    path: str
    granularity: Granularity = Granularity.FILE
    language: Optional[str] = None
    content_type: Optional[str] = None
    content: Optional[str] = None
    edges: List[EdgeFact] = Field(default_factory=list)


class CheckpointRecord(BaseModel):
    """
    One line of the append-only checkpoint log.

    ``fingerprints`` maps completed input ids to a hash of the content they
    were indexed from, so a later run can tell which of them changed.
    """
    batch_id: int
    completed_input_ids: List[str]
    index_snapshot_id: int
    graph_snapshot_id: int
    fingerprints: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class UnitFailure(BaseModel):
    input_id: str
    error_type: str
    message: str


class RunSummary(BaseModel):
    """Run-level report returned by PipelineOrchestrator.run()."""
    total_inputs: int = 0
    completed: int = 0
    skipped: int = 0
    reindexed: int = 0
    failed: List[UnitFailure] = Field(default_factory=list)

    embeddings_indexed: int = 0
    degraded_embeddings: int = 0
    edges_added: int = 0
    unresolved_edges: int = 0

    batches: int = 0
    cancelled: bool = False
    index_snapshot_id: int = 0
    graph_snapshot_id: int = 0
    peak_memory_bytes: int = 0

    metadata: Dict[str, Any] = Field(default_factory=dict)
