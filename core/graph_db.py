"""
THREADLINE GRAPH STORE - The Authoritative Flow Graph

The only writer of graph topology. It bridges the canvas editor's string ids
with rustworkx's integer indices and republishes every topology change as a
freshly resolved transcript order.

Architecture (The Bridge Pattern):
  Python Layer (Business Logic)
  - Uses string ids: "n-1", "e-n-1-n-2"
  - Calls: db.add_node(data), db.add_edge(edge), db.remove_node("n-1")

  Bridge Layer (This File)
  - _node_map: Dict[str, int]  (node id -> index)
  - _inv_map:  Dict[int, str]  (index -> node id)
  - _nodes / _edges: insertion-ordered dicts (rustworkx reuses freed
    indices, so index order is NOT insertion order)

  Rust Layer (rustworkx.PyDiGraph)
  - Incident-edge cleanup on removal, degrees, descendants, cycle checks

Cycles and self-loops are legal: the canvas lets authors loop back, and the
order resolver handles them structurally.

Event protocol (when a channel is attached):
  - topology change           -> syncMessageOrder
  - node gains a message id   -> addMessage (+ updateComponentData when the
                                 component is known), then syncMessageOrder
  - component edited          -> updateComponentData per linked message
  - node removed              -> deleteMessage, then syncMessageOrder
  - consumes deleteNode / deleteMessage from the preview
"""
import rustworkx as rx
from typing import Dict, List, Optional, Tuple, Iterator
from contextlib import contextmanager
from pathlib import Path
import logging

import polars as pl

from core.schemas import NodeData, EdgeData, ComponentData, ResolvedOrder
from core.ontology import EventKind
from core.order_resolver import resolve
from infrastructure.event_bus import (
    EventChannel,
    FlowEvent,
    SyncMessageOrder,
    AddMessage,
    UpdateComponentData,
    DeleteMessage,
    DeleteNode,
)


logger = logging.getLogger("threadline.graph_db")

SOURCE = "graph_store"


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class GraphError(Exception):
    """Base exception for graph operations."""
    pass


class NodeNotFoundError(GraphError):
    """Raised when a node id is not in the graph."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class EdgeNotFoundError(GraphError):
    """Raised when an edge id is not in the graph."""
    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Edge not found: {edge_id}")


class DuplicateNodeError(GraphError):
    """Raised when attempting to add a node with existing ID."""
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node already exists: {node_id}")


class DuplicateEdgeError(GraphError):
    """Raised when attempting to add an edge with an existing edge ID."""
    def __init__(self, edge_id: str):
        self.edge_id = edge_id
        super().__init__(f"Edge already exists: {edge_id}")


# =============================================================================
# THREADLINE DATABASE (The Graph Engine)
# =============================================================================

class ThreadlineDB:
    """
    In-memory flow graph backed by rustworkx.

    All public methods accept/return string ids; the translation to/from
    integer indices is handled internally.

    Usage:
        channel = EventChannel()
        db = ThreadlineDB(channel)

        n1 = NodeData.create(message_id="m1")
        n2 = NodeData.create(message_id="m2")
        db.add_node(n1)
        db.add_node(n2)
        db.add_edge(EdgeData.create(n1.id, n2.id))

        db.resolve().order  # ("m1", "m2")

    Thread Safety:
        NOT thread-safe. One actor mutates the graph at a time.
    """

    def __init__(self, channel: Optional[EventChannel] = None):
        """
        Initialize an empty graph store.

        Args:
            channel: Event channel to publish on and listen to. None keeps
                     the store silent (useful for offline tooling).
        """
        # Core storage: Rust-native directed graph
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=True)

        # The Bridge: bidirectional id <-> index mapping
        self._node_map: Dict[str, int] = {}
        self._inv_map: Dict[int, str] = {}
        self._edge_index: Dict[str, int] = {}

        # Insertion-ordered views
        self._nodes: Dict[str, NodeData] = {}
        self._edges: Dict[str, EdgeData] = {}
        self._outgoing: Dict[str, List[str]] = {}
        self._incoming: Dict[str, List[str]] = {}

        self._components: Dict[str, ComponentData] = {}

        # Batching: suppress per-mutation syncs until the outermost batch exits
        self._batch_depth = 0
        self._dirty = False

        self._channel = channel
        if channel is not None:
            channel.subscribe(EventKind.DELETE_NODE, self.on_delete_node)
            channel.subscribe(EventKind.DELETE_MESSAGE, self.on_delete_message)

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def node_count(self) -> int:
        """Number of nodes in the graph."""
        return self._graph.num_nodes()

    @property
    def edge_count(self) -> int:
        """Number of edges in the graph."""
        return self._graph.num_edges()

    @property
    def is_empty(self) -> bool:
        """True if graph has no nodes."""
        return self.node_count == 0

    @property
    def components(self) -> Dict[str, ComponentData]:
        """Copy of the component table."""
        return dict(self._components)

    # =========================================================================
    # NODE OPERATIONS
    # =========================================================================

    def add_node(self, data: NodeData) -> int:
        """
        Add a node to the graph.

        If the node already carries a message id, the preview is told to
        materialize the message (addMessage) before the order is re-synced.

        Returns:
            The rustworkx index of the node

        Raises:
            DuplicateNodeError: If node ID exists
        """
        node_id = data.id
        if node_id in self._node_map:
            raise DuplicateNodeError(node_id)

        idx = self._graph.add_node(data)
        self._node_map[node_id] = idx
        self._inv_map[idx] = node_id
        self._nodes[node_id] = data
        self._outgoing[node_id] = []
        self._incoming[node_id] = []

        logger.debug(f"Added node {node_id} (message={data.message_id})")

        if data.message_id is not None:
            self._publish_add_message(data)
        self._topology_changed()
        return idx

    def get_node(self, node_id: str) -> NodeData:
        """
        Retrieve a node by its id.

        Raises:
            NodeNotFoundError: If node doesn't exist
        """
        if node_id not in self._nodes:
            raise NodeNotFoundError(node_id)
        return self._nodes[node_id]

    def has_node(self, node_id: str) -> bool:
        """Check if a node exists."""
        return node_id in self._nodes

    def update_node(self, node_id: str, data: NodeData) -> None:
        """
        Replace a node's payload.

        A change of message id is treated as materialization of the new id.
        The old message is retired (deleteMessage) unless another node still
        references it.

        Raises:
            NodeNotFoundError: If node doesn't exist
            ValueError: If data.id doesn't match node_id
        """
        if data.id != node_id:
            raise ValueError(f"Node ID mismatch: {node_id} vs {data.id}")
        if node_id not in self._nodes:
            raise NodeNotFoundError(node_id)

        previous = self._nodes[node_id]
        self._nodes[node_id] = data
        self._graph[self._node_map[node_id]] = data

        if data.message_id != previous.message_id:
            old_id = previous.message_id
            if old_id is not None and not self.nodes_for_message(old_id):
                self._publish(DeleteMessage(message_id=old_id, source=SOURCE))
            if data.message_id is not None:
                self._publish_add_message(data)
            self._topology_changed()

    def set_node_message(
        self,
        node_id: str,
        message_id: str,
        component_id: Optional[str] = None,
    ) -> NodeData:
        """
        Link a node to its message (message materialization).

        Returns:
            The updated NodeData
        """
        updated = self.get_node(node_id).linked(message_id, component_id)
        self.update_node(node_id, updated)
        return updated

    def remove_node(self, node_id: str) -> NodeData:
        """
        Remove a node and all its edges.

        Publishes deleteMessage for the node's message unless another node
        still references the same message id.

        Raises:
            NodeNotFoundError: If node doesn't exist
        """
        if node_id not in self._nodes:
            raise NodeNotFoundError(node_id)

        data = self._detach_node(node_id)

        if data.message_id is not None and not self.nodes_for_message(data.message_id):
            self._publish(DeleteMessage(message_id=data.message_id, source=SOURCE))
        self._topology_changed()
        return data

    def iter_nodes(self) -> Iterator[NodeData]:
        """Iterate over nodes in insertion order."""
        return iter(list(self._nodes.values()))

    def get_all_nodes(self) -> List[NodeData]:
        """All nodes in insertion order."""
        return list(self._nodes.values())

    def nodes_for_message(self, message_id: str) -> List[NodeData]:
        """Nodes linked to a message id (normally zero or one)."""
        return [n for n in self._nodes.values() if n.message_id == message_id]

    def find_node_by_message(self, message_id: str) -> Optional[NodeData]:
        """First node linked to a message id, or None."""
        for node in self._nodes.values():
            if node.message_id == message_id:
                return node
        return None

    # =========================================================================
    # EDGE OPERATIONS
    # =========================================================================

    def add_edge(self, edge: EdgeData) -> str:
        """
        Connect two nodes ("source precedes target").

        Connecting an already-connected (source, target) pair returns the
        existing edge id without touching the graph, matching the canvas
        connect gesture.

        Returns:
            The id of the (new or existing) edge

        Raises:
            NodeNotFoundError: If source or target node doesn't exist
            DuplicateEdgeError: If the edge id is taken by a different pair
        """
        if edge.source_id not in self._nodes:
            raise NodeNotFoundError(edge.source_id)
        if edge.target_id not in self._nodes:
            raise NodeNotFoundError(edge.target_id)

        existing = self.find_edge(edge.source_id, edge.target_id)
        if existing is not None:
            return existing.id
        if edge.id in self._edges:
            raise DuplicateEdgeError(edge.id)

        src_idx = self._node_map[edge.source_id]
        tgt_idx = self._node_map[edge.target_id]
        self._edge_index[edge.id] = self._graph.add_edge(src_idx, tgt_idx, edge)
        self._edges[edge.id] = edge
        self._outgoing[edge.source_id].append(edge.id)
        self._incoming[edge.target_id].append(edge.id)

        logger.debug(f"Added edge {edge.id}: {edge.source_id} -> {edge.target_id}")
        self._topology_changed()
        return edge.id

    def connect(self, source_id: str, target_id: str) -> str:
        """Shorthand for add_edge(EdgeData.create(source_id, target_id))."""
        return self.add_edge(EdgeData.create(source_id, target_id))

    def get_edge(self, edge_id: str) -> EdgeData:
        """
        Get an edge by id.

        Raises:
            EdgeNotFoundError: If edge doesn't exist
        """
        if edge_id not in self._edges:
            raise EdgeNotFoundError(edge_id)
        return self._edges[edge_id]

    def has_edge(self, edge_id: str) -> bool:
        """Check if an edge exists."""
        return edge_id in self._edges

    def find_edge(self, source_id: str, target_id: str) -> Optional[EdgeData]:
        """Edge between two nodes, or None."""
        for edge_id in self._outgoing.get(source_id, ()):
            edge = self._edges[edge_id]
            if edge.target_id == target_id:
                return edge
        return None

    def remove_edge(self, edge_id: str) -> EdgeData:
        """
        Remove an edge.

        Raises:
            EdgeNotFoundError: If edge doesn't exist
        """
        if edge_id not in self._edges:
            raise EdgeNotFoundError(edge_id)

        edge = self._edges.pop(edge_id)
        self._graph.remove_edge_from_index(self._edge_index.pop(edge_id))
        self._outgoing[edge.source_id].remove(edge_id)
        self._incoming[edge.target_id].remove(edge_id)

        logger.debug(f"Removed edge {edge_id}")
        self._topology_changed()
        return edge

    def reconnect_edge(
        self,
        edge_id: str,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
    ) -> EdgeData:
        """
        Move one or both endpoints of an edge, keeping its id.

        Published as a single sync.

        Raises:
            EdgeNotFoundError / NodeNotFoundError
        """
        old = self.get_edge(edge_id)
        new_source = source_id if source_id is not None else old.source_id
        new_target = target_id if target_id is not None else old.target_id
        if new_source not in self._nodes:
            raise NodeNotFoundError(new_source)
        if new_target not in self._nodes:
            raise NodeNotFoundError(new_target)

        with self.batch():
            self.remove_edge(edge_id)
            edge = EdgeData(
                id=edge_id,
                source_id=new_source,
                target_id=new_target,
                created_at=old.created_at,
            )
            existing = self.find_edge(new_source, new_target)
            if existing is not None:
                return existing
            self.add_edge(edge)
        return edge

    def get_all_edges(self) -> List[EdgeData]:
        """All edges in insertion order."""
        return list(self._edges.values())

    def outgoing_edge_ids(self, node_id: str) -> List[str]:
        """Ids of edges leaving a node, in insertion order."""
        return list(self._outgoing.get(node_id, ()))

    def incoming_edge_ids(self, node_id: str) -> List[str]:
        """Ids of edges entering a node, in insertion order."""
        return list(self._incoming.get(node_id, ()))

    def is_isolated(self, node_id: str) -> bool:
        """True if the node has no edges at all."""
        idx = self._get_index(node_id)
        return self._graph.in_degree(idx) == 0 and self._graph.out_degree(idx) == 0

    # =========================================================================
    # GRAPH QUERIES (Rust-Accelerated)
    # =========================================================================

    def get_descendants(self, node_id: str) -> List[NodeData]:
        """All nodes reachable from node_id, in insertion order."""
        reachable = {self._inv_map[i] for i in rx.descendants(self._graph, self._get_index(node_id))}
        return [n for n in self._nodes.values() if n.id in reachable]

    def has_cycle(self) -> bool:
        """True if the flow loops back anywhere (legal, but worth showing)."""
        return not rx.is_directed_acyclic_graph(self._graph)

    # =========================================================================
    # COMPONENTS
    # =========================================================================

    def upsert_component(self, component: ComponentData) -> None:
        """
        Store or replace a component and push its data to every message
        whose node uses it.
        """
        self._components[component.id] = component
        for node in self._nodes.values():
            if node.component_id == component.id and node.message_id is not None:
                self._publish(UpdateComponentData(
                    message_id=node.message_id,
                    component_data=component,
                    source=SOURCE,
                ))

    def get_component(self, component_id: str) -> Optional[ComponentData]:
        return self._components.get(component_id)

    def remove_component(self, component_id: str) -> Optional[ComponentData]:
        return self._components.pop(component_id, None)

    # =========================================================================
    # ORDER SYNCHRONIZATION
    # =========================================================================

    def resolve(self) -> ResolvedOrder:
        """Resolve the transcript order of the current graph."""
        return resolve(self.get_all_nodes(), self.get_all_edges())

    def sync(self) -> ResolvedOrder:
        """Resolve and publish syncMessageOrder unconditionally."""
        resolved = self.resolve()
        self._publish(SyncMessageOrder(
            order=list(resolved.order),
            orphan_ids=resolved.orphan_ids,
            source=SOURCE,
        ))
        self._dirty = False
        return resolved

    @contextmanager
    def batch(self):
        """
        Group several mutations into one sync.

        Example:
            with db.batch():
                db.add_node(a)
                db.add_node(b)
                db.connect(a.id, b.id)
            # exactly one syncMessageOrder published here
        """
        self._batch_depth += 1
        try:
            yield self
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self.sync()

    def load(
        self,
        nodes: List[NodeData],
        edges: List[EdgeData],
        components: Optional[Dict[str, ComponentData]] = None,
    ) -> None:
        """
        Replace the whole graph without publishing anything.

        Used when restoring a snapshot: messages are restored separately and
        the caller publishes one sync afterwards. Edges with unknown
        endpoints are dropped with a warning.
        """
        channel, self._channel = self._channel, None
        self._batch_depth += 1
        try:
            self.clear()
            for node in nodes:
                self.add_node(node)
            for edge in edges:
                if edge.source_id in self._nodes and edge.target_id in self._nodes:
                    self.add_edge(edge)
                else:
                    logger.warning(f"Dropping edge {edge.id} with unknown endpoint")
            self._components = dict(components or {})
        finally:
            self._batch_depth -= 1
            self._channel = channel
            self._dirty = False

    def clear(self) -> None:
        """Remove everything (silently)."""
        self._graph.clear()
        self._node_map.clear()
        self._inv_map.clear()
        self._edge_index.clear()
        self._nodes.clear()
        self._edges.clear()
        self._outgoing.clear()
        self._incoming.clear()
        self._components.clear()

    # =========================================================================
    # CHANNEL HANDLERS
    # =========================================================================

    def on_delete_node(self, event: DeleteNode) -> None:
        """Preview asked to delete the node behind a message. Unknown id: no-op."""
        self._remove_nodes_for_message(event.message_id, announce=True)

    def on_delete_message(self, event: DeleteMessage) -> None:
        """
        A message was deleted elsewhere; drop the owning node(s).

        deleteMessage is not re-published from here, so the two panes
        cannot ping-pong.
        """
        with self.batch():
            for message_id in sorted(event.targets):
                self._remove_nodes_for_message(message_id, announce=False)

    def _remove_nodes_for_message(self, message_id: str, announce: bool) -> None:
        doomed = [n.id for n in self.nodes_for_message(message_id)]
        if not doomed:
            return
        with self.batch():
            for node_id in doomed:
                self._detach_node(node_id)
            self._dirty = True
            if announce:
                self._publish(DeleteMessage(message_id=message_id, source=SOURCE))
        logger.info(f"Deleted {len(doomed)} node(s) for message {message_id}")

    # =========================================================================
    # PERSISTENCE (Polars-Compatible)
    # =========================================================================

    def to_polars_nodes(self) -> pl.DataFrame:
        """
        Export nodes to a Polars DataFrame, including each node's resolved
        transcript position (null when unmaterialized).
        """
        resolved = self.resolve()
        position = {mid: i for i, mid in enumerate(resolved.order)}
        nodes = self.get_all_nodes()
        return pl.DataFrame(
            {
                "id": [n.id for n in nodes],
                "message_id": [n.message_id for n in nodes],
                "component_id": [n.component_id for n in nodes],
                "position": [position.get(n.message_id) for n in nodes],
                "orphan": [n.message_id in resolved.orphans for n in nodes],
                "out_degree": [len(self._outgoing[n.id]) for n in nodes],
                "in_degree": [len(self._incoming[n.id]) for n in nodes],
            },
            schema={
                "id": pl.Utf8,
                "message_id": pl.Utf8,
                "component_id": pl.Utf8,
                "position": pl.Int64,
                "orphan": pl.Boolean,
                "out_degree": pl.Int64,
                "in_degree": pl.Int64,
            },
        )

    def to_polars_edges(self) -> pl.DataFrame:
        """Export edges to a Polars DataFrame."""
        edges = self.get_all_edges()
        return pl.DataFrame(
            {
                "id": [e.id for e in edges],
                "source_id": [e.source_id for e in edges],
                "target_id": [e.target_id for e in edges],
            },
            schema={"id": pl.Utf8, "source_id": pl.Utf8, "target_id": pl.Utf8},
        )

    def save_parquet(self, path: Path) -> Tuple[Path, Path]:
        """
        Save graph tables to parquet files.

        Creates {path}.nodes.parquet and {path}.edges.parquet.
        """
        path = Path(path)
        nodes_path = path.with_name(f"{path.stem}.nodes.parquet")
        edges_path = path.with_name(f"{path.stem}.edges.parquet")
        self.to_polars_nodes().write_parquet(nodes_path)
        self.to_polars_edges().write_parquet(edges_path)
        return nodes_path, edges_path

    # =========================================================================
    # INTERNAL UTILITIES
    # =========================================================================

    def _detach_node(self, node_id: str) -> NodeData:
        """Remove a node and its incident edges from every index. No events."""
        idx = self._node_map.pop(node_id)
        del self._inv_map[idx]
        data = self._nodes.pop(node_id)

        for edge_id in self._outgoing.pop(node_id) + self._incoming.pop(node_id):
            edge = self._edges.pop(edge_id, None)
            if edge is None:
                continue  # self-loop listed on both sides
            self._edge_index.pop(edge_id, None)
            if edge.target_id in self._incoming:
                self._incoming[edge.target_id].remove(edge_id)
            if edge.source_id in self._outgoing:
                self._outgoing[edge.source_id].remove(edge_id)

        # Also removes incident edges on the Rust side
        self._graph.remove_node(idx)
        logger.debug(f"Removed node {node_id}")
        return data

    def _publish_add_message(self, node: NodeData) -> None:
        component = self._components.get(node.component_id) if node.component_id else None
        self._publish(AddMessage(
            message_id=node.message_id,
            component_id=node.component_id,
            ui_tool_type=component.ui_tool_type if component else None,
            source=SOURCE,
        ))
        if component is not None:
            self._publish(UpdateComponentData(
                message_id=node.message_id,
                component_data=component,
                source=SOURCE,
            ))

    def _topology_changed(self) -> None:
        self._dirty = True
        if self._batch_depth == 0:
            self.sync()

    def _publish(self, event: FlowEvent) -> None:
        if self._channel is not None:
            self._channel.publish(event)

    def _get_index(self, node_id: str) -> int:
        """Internal: get rustworkx index for a node ID."""
        if node_id not in self._node_map:
            raise NodeNotFoundError(node_id)
        return self._node_map[node_id]

    def __len__(self) -> int:
        """Return number of nodes."""
        return self.node_count

    def __contains__(self, node_id: str) -> bool:
        """Check if node exists."""
        return node_id in self._nodes

    def __repr__(self) -> str:
        return f"ThreadlineDB(nodes={self.node_count}, edges={self.edge_count})"


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_empty_db(channel: Optional[EventChannel] = None) -> ThreadlineDB:
    """Create an empty ThreadlineDB instance."""
    return ThreadlineDB(channel)


def create_db_from_nodes(
    nodes: List[NodeData],
    edges: Optional[List[EdgeData]] = None,
    channel: Optional[EventChannel] = None,
) -> ThreadlineDB:
    """Create a ThreadlineDB pre-populated with nodes and edges (silently)."""
    db = ThreadlineDB(channel)
    db.load(nodes, edges or [])
    return db
