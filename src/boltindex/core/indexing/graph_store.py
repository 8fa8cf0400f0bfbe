"""
Relationship Graph Store - dependency graphs built from edge facts.

One networkx DiGraph per relationship type (file dependency, function call,
data dependency, module dependency) and an optional combined MultiDiGraph
whose edges are keyed by edge kind.

Writes go to working copies that are created on the first write after a
commit (copy-on-write). commit() freezes the copies and publishes them as a
new GraphSnapshot; rollback() throws them away. Queries only ever read the
last committed snapshot.

Every edge remembers which input units reported it, so re-indexing a unit
can retract the edges it stopped reporting.
"""
import threading
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

import networkx as nx

from boltindex.config import settings
from boltindex.core.errors import GraphError
from boltindex.core.logging import get_logger
from boltindex.schema.graph import (
    Direction,
    EDGE_KIND_GRAPH,
    EdgeFact,
    EdgeKind,
    GraphAnalysis,
    GraphEdge,
    GraphName,
    GraphNode,
    ImpactSet,
    NodeDegree,
    NodeKind,
)

logger = get_logger(__name__)

# Graph a standalone node lands in before any edge touches it
NODE_KIND_GRAPH: Dict[NodeKind, GraphName] = {
    NodeKind.FILE: GraphName.FILE_DEPENDENCY,
    NodeKind.FUNCTION: GraphName.FUNCTION_CALL,
    NodeKind.DATA_STRUCTURE: GraphName.DATA_DEPENDENCY,
    NodeKind.MODULE: GraphName.MODULE_DEPENDENCY,
}

KIND_GRAPHS = (
    GraphName.FILE_DEPENDENCY,
    GraphName.FUNCTION_CALL,
    GraphName.DATA_DEPENDENCY,
    GraphName.MODULE_DEPENDENCY,
)

GraphLike = Union[GraphName, str, None]


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable, published set of graphs."""
    snapshot_id: int
    graphs: Mapping[GraphName, nx.DiGraph]
    combined: Optional[nx.MultiDiGraph]
    node_kinds: Mapping[str, NodeKind]


def _empty_graphs(enable_combined: bool):
    graphs = {name: nx.freeze(nx.DiGraph()) for name in KIND_GRAPHS}
    combined = nx.freeze(nx.MultiDiGraph()) if enable_combined else None
    return graphs, combined


def _node_attrs(node: GraphNode) -> Dict[str, Any]:
    attrs: Dict[str, Any] = {"kind": node.kind}
    if node.label is not None:
        attrs["label"] = node.label
    if node.path is not None:
        attrs["path"] = node.path
    if node.attributes:
        attrs["attributes"] = dict(node.attributes)
    return attrs


class RelationshipGraphStore:
    """
    Single-writer / multi-reader relationship graphs.

    Usage:
        graphs = RelationshipGraphStore()
        graphs.add_fact(EdgeFact(source=a, target=b, kind=EdgeKind.IMPORT))
        graphs.commit()
        impact = graphs.impact_set("b.py", Direction.INCOMING, max_depth=3)
    """

    def __init__(self, enable_combined: bool = settings.enable_combined_graph):
        self.enable_combined = enable_combined
        graphs, combined = _empty_graphs(enable_combined)
        self._snapshot = GraphSnapshot(
            snapshot_id=0,
            graphs=MappingProxyType(graphs),
            combined=combined,
            node_kinds=MappingProxyType({}),
        )
        self._lock = threading.Lock()
        self._working: Optional[Dict[GraphName, nx.DiGraph]] = None
        self._working_combined: Optional[nx.MultiDiGraph] = None
        self._working_kinds: Optional[Dict[str, NodeKind]] = None
        self._dirty = False

    # =========================================================================
    # Write side
    # =========================================================================

    def _ensure_working(self):
        # Caller holds the lock
        if self._working is None:
            snap = self._snapshot
            self._working = {name: g.copy() for name, g in snap.graphs.items()}
            self._working_combined = snap.combined.copy() if snap.combined is not None else None
            self._working_kinds = dict(snap.node_kinds)

    def _add_node_locked(self, node: GraphNode, graph: Optional[GraphName] = None) -> bool:
        if not node.id:
            raise GraphError(f"Node id must be non-empty (kind={node.kind.value})")
        self._ensure_working()

        known = self._working_kinds.get(node.id)
        if known is not None and known != node.kind:
            raise GraphError(
                f"Node {node.id!r} already declared as {known.value}, not {node.kind.value}"
            )

        attrs = _node_attrs(node)
        targets = [self._working[graph or NODE_KIND_GRAPH[node.kind]]]
        if self._working_combined is not None:
            targets.append(self._working_combined)

        changed = known is None
        for g in targets:
            if node.id not in g:
                g.add_node(node.id, **attrs)
                changed = True
            else:
                current = g.nodes[node.id]
                for key, value in attrs.items():
                    if current.get(key) != value:
                        current[key] = value
                        changed = True

        self._working_kinds[node.id] = node.kind
        if changed:
            self._dirty = True
        return changed

    def add_node(self, node: GraphNode) -> bool:
        """
        Register a node (idempotent).

        Returns:
            True if anything changed

        Raises:
            GraphError: empty id, or the id is known with a different kind
        """
        with self._lock:
            return self._add_node_locked(node)

    def _add_edge_locked(self, edge: GraphEdge, owner: Optional[str] = None) -> bool:
        if not edge.source or not edge.target:
            raise GraphError(f"Edge endpoints must be non-empty ({edge.source!r} -> {edge.target!r})")
        self._ensure_working()

        for endpoint in (edge.source, edge.target):
            if endpoint not in self._working_kinds:
                raise GraphError(f"Edge references unknown node {endpoint!r}")

        name = EDGE_KIND_GRAPH[edge.kind]
        g = self._working[name]
        # Endpoints may live in another kind graph so far; make them present here
        for endpoint in (edge.source, edge.target):
            if endpoint not in g:
                g.add_node(endpoint, kind=self._working_kinds[endpoint])

        flags = dict(edge.flags)
        owners = frozenset([owner]) if owner is not None else frozenset()
        changed = False
        if g.has_edge(edge.source, edge.target):
            data = g.edges[edge.source, edge.target]
            if data.get("flags") != flags:
                data["flags"] = flags
                changed = True
            if not owners <= data["owners"]:
                data["owners"] = data["owners"] | owners
                self._dirty = True
        else:
            g.add_edge(edge.source, edge.target, kind=edge.kind, flags=flags, owners=owners)
            changed = True

        combined = self._working_combined
        if combined is not None:
            key = edge.kind.value
            if combined.has_edge(edge.source, edge.target, key=key):
                data = combined.edges[edge.source, edge.target, key]
                if data.get("flags") != flags:
                    data["flags"] = flags
                    changed = True
                if not owners <= data["owners"]:
                    data["owners"] = data["owners"] | owners
                    self._dirty = True
            else:
                combined.add_edge(edge.source, edge.target, key=key, kind=edge.kind, flags=flags, owners=owners)
                changed = True

        if changed:
            self._dirty = True
        return changed

    def add_edge(self, edge: GraphEdge) -> bool:
        """
        Add a directed edge between known nodes (idempotent).

        Re-adding an identical edge is a no-op. Self-loops are allowed.

        Raises:
            GraphError: empty or unknown endpoint
        """
        with self._lock:
            return self._add_edge_locked(edge)

    def add_fact(self, fact: EdgeFact, owner: Optional[str] = None) -> bool:
        """
        Register both endpoints and the edge of an analyzer fact.

        The fact is checked before anything is written, so a rejected fact
        leaves no half-registered endpoint behind.

        ``owner`` (an input unit id) is recorded on the edge so retract() can
        drop the edges a unit no longer reports once it is re-indexed.
        """
        with self._lock:
            self._ensure_working()
            for node in (fact.source, fact.target):
                if not node.id:
                    raise GraphError(f"Edge endpoints must be non-empty ({fact.source.id!r} -> {fact.target.id!r})")
                known = self._working_kinds.get(node.id)
                if known is not None and known != node.kind:
                    raise GraphError(
                        f"Node {node.id!r} already declared as {known.value}, not {node.kind.value}"
                    )
            graph = EDGE_KIND_GRAPH[fact.kind]
            self._add_node_locked(fact.source, graph)
            self._add_node_locked(fact.target, graph)
            return self._add_edge_locked(fact.to_edge(), owner)

    def retract(self, owners: Iterable[str]) -> int:
        """
        Withdraw ``owners``' claims on their edges.

        An edge goes away once no owner is left; edges added without an owner
        are never retracted. Nodes stay registered. Like every write, this is
        visible after commit().

        Returns:
            Number of kind-graph edges removed
        """
        owners = frozenset(owners)
        if not owners:
            return 0
        with self._lock:
            self._ensure_working()
            graphs: List[nx.DiGraph] = list(self._working.values())
            if self._working_combined is not None:
                graphs.append(self._working_combined)

            removed = 0
            touched = False
            for g in graphs:
                doomed = []
                edges = g.edges(keys=True, data=True) if g.is_multigraph() else g.edges(data=True)
                for *endpoints, data in edges:
                    held = data["owners"]
                    if not held & owners:
                        continue
                    touched = True
                    if held - owners:
                        data["owners"] = held - owners
                    else:
                        doomed.append(tuple(endpoints))
                g.remove_edges_from(doomed)
                if not g.is_multigraph():
                    removed += len(doomed)

            if touched:
                self._dirty = True

        if removed:
            logger.info("graph_edges_retracted", owners=len(owners), removed=removed)
        return removed

    def commit(self) -> GraphSnapshot:
        """Freeze the working graphs and publish them (no-op when unchanged)."""
        with self._lock:
            if self._working is None or not self._dirty:
                self._discard_working()
                return self._snapshot

            old = self._snapshot
            new = GraphSnapshot(
                snapshot_id=old.snapshot_id + 1,
                graphs=MappingProxyType({name: nx.freeze(g) for name, g in self._working.items()}),
                combined=nx.freeze(self._working_combined) if self._working_combined is not None else None,
                node_kinds=MappingProxyType(dict(self._working_kinds)),
            )
            self._snapshot = new
            self._discard_working()

        logger.info(
            "graph_committed",
            snapshot_id=new.snapshot_id,
            nodes=len(new.node_kinds),
            edges=sum(g.number_of_edges() for g in new.graphs.values()),
        )
        return new

    def rollback(self) -> bool:
        """Discard uncommitted writes. Returns True if anything was dropped."""
        with self._lock:
            dropped = self._working is not None and self._dirty
            self._discard_working()
        if dropped:
            logger.info("graph_rolled_back", snapshot_id=self._snapshot.snapshot_id)
        return dropped

    def _discard_working(self):
        self._working = None
        self._working_combined = None
        self._working_kinds = None
        self._dirty = False

    # =========================================================================
    # Read side
    # =========================================================================

    @property
    def snapshot(self) -> GraphSnapshot:
        return self._snapshot

    @property
    def snapshot_id(self) -> int:
        return self._snapshot.snapshot_id

    def graph(self, name: GraphLike = None) -> nx.DiGraph:
        """
        Committed graph by name.

        None means the combined graph; when the combined graph is disabled
        the kind graphs are composed on the fly.
        """
        snap = self._snapshot
        name = GraphName(name) if name is not None else GraphName.COMBINED
        if name != GraphName.COMBINED:
            return snap.graphs[name]
        if snap.combined is not None:
            return snap.combined
        return nx.compose_all(list(snap.graphs.values()))

    @staticmethod
    def _simple(g: nx.DiGraph) -> nx.DiGraph:
        return nx.DiGraph(g) if g.is_multigraph() else g

    def node_kind(self, node_id: str) -> Optional[NodeKind]:
        return self._snapshot.node_kinds.get(node_id)

    def analyze(self, graph: GraphLike = None) -> GraphAnalysis:
        """
        Cycle and centrality report for one graph.

        Cycles are reported, never rejected; self-loops are listed separately.
        """
        name = GraphName(graph) if graph is not None else GraphName.COMBINED
        g = self._simple(self.graph(name))

        components = sorted(
            (sorted(c) for c in nx.strongly_connected_components(g)),
            key=lambda c: (-len(c), c),
        )
        cycles = [c for c in components if len(c) > 1]
        self_loops = sorted(nx.nodes_with_selfloops(g))

        degrees = {
            n: NodeDegree(fan_in=g.in_degree(n), fan_out=g.out_degree(n))
            for n in sorted(g.nodes)
        }
        centrality = nx.degree_centrality(g) if g.number_of_nodes() else {}
        ranking = sorted(centrality.items(), key=lambda kv: (-kv[1], kv[0]))

        analysis = GraphAnalysis(
            graph=name,
            node_count=g.number_of_nodes(),
            edge_count=g.number_of_edges(),
            cycles=cycles,
            components=components,
            self_loops=self_loops,
            degrees=degrees,
            centrality=ranking,
        )
        logger.info(
            "graph_analyzed",
            graph=name.value,
            nodes=analysis.node_count,
            edges=analysis.edge_count,
            cycles=len(cycles),
            self_loops=len(self_loops),
        )
        return analysis

    def _traversal_view(self, g: nx.DiGraph, direction: Direction):
        if direction == Direction.OUTGOING:
            return g
        if direction == Direction.INCOMING:
            return g.reverse(copy=False)
        return g.to_undirected(as_view=True)

    def _induced_edges(self, g: nx.DiGraph, nodes: Set[str]) -> List[GraphEdge]:
        # Multigraph edges come back once per kind
        edges = [
            GraphEdge(source=u, target=v, kind=EdgeKind(d["kind"]), flags=dict(d.get("flags", {})))
            for u, v, d in g.subgraph(nodes).edges(data=True)
        ]
        return sorted(edges, key=lambda e: (e.source, e.target, e.kind.value))

    def impact_set(
        self,
        node: str,
        direction: Union[Direction, str] = Direction.INCOMING,
        max_depth: int = 3,
        graph: GraphLike = None,
    ) -> ImpactSet:
        """
        Everything reachable from ``node`` within ``max_depth`` hops.

        Args:
            node: Focal node id
            direction: outgoing (what it depends on), incoming (what depends
                on it, i.e. "what does changing this break"), or both
            max_depth: Hop limit (0 returns an empty set)
            graph: Graph to traverse (default: combined)

        Raises:
            GraphError: unknown node or negative depth
        """
        if max_depth < 0:
            raise GraphError(f"max_depth must be non-negative, got {max_depth}")
        direction = Direction(direction)
        name = GraphName(graph) if graph is not None else GraphName.COMBINED
        g = self.graph(name)
        if node not in g:
            raise GraphError(f"Unknown node {node!r} in {name.value} graph")

        view = self._traversal_view(g, direction)
        reached = nx.single_source_shortest_path_length(view, node, cutoff=max_depth)
        nodes = {n: d for n, d in reached.items() if n != node}

        return ImpactSet(
            origin=node,
            direction=direction,
            max_depth=max_depth,
            graph=name,
            nodes=dict(sorted(nodes.items(), key=lambda kv: (kv[1], kv[0]))),
            edges=self._induced_edges(g, set(nodes) | {node}),
        )

    def neighbors(
        self,
        node: str,
        direction: Union[Direction, str] = Direction.OUTGOING,
        graph: GraphLike = None,
    ) -> List[str]:
        return sorted(self.impact_set(node, direction, max_depth=1, graph=graph).nodes)

    def dependency_path(self, source: str, target: str, graph: GraphLike = None) -> Optional[List[str]]:
        """Shortest directed path source -> target, or None if unreachable."""
        g = self.graph(graph)
        for endpoint in (source, target):
            if endpoint not in g:
                raise GraphError(f"Unknown node {endpoint!r}")
        try:
            return nx.shortest_path(g, source, target)
        except nx.NetworkXNoPath:
            return None

    def stats(self) -> Dict[str, Any]:
        snap = self._snapshot
        stats: Dict[str, Any] = {
            "snapshot_id": snap.snapshot_id,
            "nodes": len(snap.node_kinds),
        }
        for name, g in snap.graphs.items():
            stats[name.value] = {"nodes": g.number_of_nodes(), "edges": g.number_of_edges()}
        if snap.combined is not None:
            stats[GraphName.COMBINED.value] = {
                "nodes": snap.combined.number_of_nodes(),
                "edges": snap.combined.number_of_edges(),
            }
        return stats
