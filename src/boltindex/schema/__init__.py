from .embeddings import Granularity, Aspect, Provenance, Embedding, MultiVectorEmbedding
from .graph import (
    NodeKind, EdgeKind, GraphName, Direction, EDGE_KIND_GRAPH,
    GraphNode, GraphEdge, EdgeFact, NodeDegree, GraphAnalysis, ImpactSet
)
from .pipeline import ContentUnit, CheckpointRecord, UnitFailure, RunSummary

__all__ = [
    "Granularity", "Aspect", "Provenance", "Embedding", "MultiVectorEmbedding",
    "NodeKind", "EdgeKind", "GraphName", "Direction", "EDGE_KIND_GRAPH",
    "GraphNode", "GraphEdge", "EdgeFact", "NodeDegree", "GraphAnalysis", "ImpactSet",
    "ContentUnit", "CheckpointRecord", "UnitFailure", "RunSummary",
]
