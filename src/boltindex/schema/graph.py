from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any, Tuple
from enum import Enum


class NodeKind(str, Enum):
    FILE = "file"
    FUNCTION = "function"
    MODULE = "module"
    DATA_STRUCTURE = "data_structure"


class EdgeKind(str, Enum):
    IMPORT = "import"
    CALL = "call"
    DATA_FLOW = "data_flow"
    MODULE_DEPENDENCY = "module_dependency"


class GraphName(str, Enum):
    """One directed graph per relationship type, plus the combined one."""
    FILE_DEPENDENCY = "file_dependency"
    FUNCTION_CALL = "function_call"
    DATA_DEPENDENCY = "data_dependency"
    MODULE_DEPENDENCY = "module_dependency"
    COMBINED = "combined"


EDGE_KIND_GRAPH: Dict[EdgeKind, GraphName] = {
    EdgeKind.IMPORT: GraphName.FILE_DEPENDENCY,
    EdgeKind.CALL: GraphName.FUNCTION_CALL,
    EdgeKind.DATA_FLOW: GraphName.DATA_DEPENDENCY,
    EdgeKind.MODULE_DEPENDENCY: GraphName.MODULE_DEPENDENCY,
}


class Direction(str, Enum):
    OUTGOING = "outgoing"  # what this node depends on
    INCOMING = "incoming"  # what depends on this node
    BOTH = "both"


class GraphNode(BaseModel):
    """Node in a relationship graph."""
    id: str
    kind: NodeKind
    label: Optional[str] = None
    path: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class GraphEdge(BaseModel):
    """Directed edge source -> target."""
    source: str
    target: str
    kind: EdgeKind
    flags: Dict[str, bool] = Field(default_factory=dict)

    @property
    def is_self_loop(self) -> bool:
        return self.source == self.target


class EdgeFact(BaseModel):
    """
    Edge as reported by an external analyzer.

    Endpoints carry their node kinds so the store can register nodes it has
    not seen yet.
    """
    source: GraphNode
    target: GraphNode
    kind: EdgeKind
    flags: Dict[str, bool] = Field(default_factory=dict)

    def to_edge(self) -> GraphEdge:
        return GraphEdge(
            source=self.source.id,
            target=self.target.id,
            kind=self.kind,
            flags=dict(self.flags),
        )


class NodeDegree(BaseModel):
    fan_in: int = 0
    fan_out: int = 0


class GraphAnalysis(BaseModel):
    """Result of RelationshipGraphStore.analyze()."""
    graph: GraphName
    node_count: int = 0
    edge_count: int = 0

    # Strongly connected components with more than one node (cycles)
    cycles: List[List[str]] = Field(default_factory=list)
    components: List[List[str]] = Field(default_factory=list)
    self_loops: List[str] = Field(default_factory=list)

    degrees: Dict[str, NodeDegree] = Field(default_factory=dict)

    # (node id, degree centrality), highest first
    centrality: List[Tuple[str, float]] = Field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles or self.self_loops)


class ImpactSet(BaseModel):
    """Nodes reachable from a focal node within max_depth hops."""
    origin: str
    direction: Direction
    max_depth: int
    graph: GraphName

    # node id -> hop distance from origin
    nodes: Dict[str, int] = Field(default_factory=dict)
    edges: List[GraphEdge] = Field(default_factory=list)

    def at_depth(self, depth: int) -> List[str]:
        return sorted(n for n, d in self.nodes.items() if d == depth)

    def __len__(self) -> int:
        return len(self.nodes)
