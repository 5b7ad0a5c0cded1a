"""
THREADLINE ORDER RESOLVER - Graph to Transcript Order

Pure function of the current graph:

    resolve(nodes, edges) -> ResolvedOrder(order, orphans)

Algorithm (deterministic, cycle-safe, O(V+E)):
1. Index nodes in their insertion order (tie-break and fallback scan order).
2. Partition into isolated (no incoming, no outgoing) and connected nodes.
3. For every connected node in insertion order that is not yet visited,
   run a depth-first traversal along outgoing edges (edge insertion order),
   emitting each node's message id on its first visit (pre-order).
   A visited node stops the descent: no duplicates, no infinite loops.
4. Append isolated nodes' message ids in insertion order; flag them as orphans.
5. Nodes without a message id are skipped; they appear once materialized.

The traversal uses an explicit stack so arbitrarily long chains never hit
Python's recursion limit. Children are pushed in reverse so the pop order
matches a recursive pre-order walk exactly.
"""
from typing import Dict, Iterable, List, Optional, Sequence, Set

from core.schemas import NodeData, EdgeData, ResolvedOrder


def build_adjacency(
    nodes: Sequence[NodeData],
    edges: Iterable[EdgeData],
) -> Dict[str, List[str]]:
    """
    Map node id -> successor node ids in edge insertion order.

    Edges referencing unknown nodes are dropped.
    """
    adjacency: Dict[str, List[str]] = {node.id: [] for node in nodes}
    for edge in edges:
        if edge.source_id in adjacency and edge.target_id in adjacency:
            adjacency[edge.source_id].append(edge.target_id)
    return adjacency


def find_isolated(nodes: Sequence[NodeData], edges: Iterable[EdgeData]) -> List[str]:
    """Ids of nodes with no incoming and no outgoing edges, insertion order."""
    known = {node.id for node in nodes}
    touched: Set[str] = set()
    for edge in edges:
        if edge.source_id in known and edge.target_id in known:
            touched.add(edge.source_id)
            touched.add(edge.target_id)
    return [node.id for node in nodes if node.id not in touched]


def resolve(nodes: Sequence[NodeData], edges: Iterable[EdgeData]) -> ResolvedOrder:
    """
    Compute the transcript order and orphan set for a graph.

    Args:
        nodes: Nodes in the graph store's insertion order
        edges: Edges in insertion order

    Returns:
        ResolvedOrder where every live message id appears exactly once

    Example:
        n1 -> n2 -> n3, isolated n4
        => order=("m1", "m2", "m3", "m4"), orphans={"m4"}
    """
    edges = list(edges)
    by_id: Dict[str, NodeData] = {node.id: node for node in nodes}
    adjacency = build_adjacency(nodes, edges)
    isolated = set(find_isolated(nodes, edges))

    order: List[str] = []
    emitted: Set[str] = set()
    visited: Set[str] = set()

    def emit(message_id: Optional[str]) -> bool:
        # Two nodes may briefly share a message id while the canvas relinks
        if message_id is None or message_id in emitted:
            return False
        emitted.add(message_id)
        order.append(message_id)
        return True

    for node in nodes:
        if node.id in isolated or node.id in visited:
            continue

        stack = [node.id]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            emit(by_id[current].message_id)
            for successor in reversed(adjacency[current]):
                if successor not in visited:
                    stack.append(successor)

    orphans: Set[str] = set()
    for node in nodes:
        if node.id in isolated and emit(node.message_id):
            orphans.add(node.message_id)

    return ResolvedOrder(order=tuple(order), orphans=frozenset(orphans))
