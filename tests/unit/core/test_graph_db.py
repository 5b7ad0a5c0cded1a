"""
Unit tests for core/graph_db.py - ThreadlineDB

Tests the graph store functionality including:
- Node and edge creation, retrieval, removal
- Events published on the channel (sync, addMessage, deleteMessage, ...)
- Batch operations
- deleteNode / deleteMessage handling without ping-pong
- Silent loading and polars export
- Error handling
"""
import pytest

from core.graph_db import (
    ThreadlineDB,
    NodeNotFoundError,
    EdgeNotFoundError,
    DuplicateNodeError,
    DuplicateEdgeError,
    create_db_from_nodes,
)
from core.schemas import NodeData, EdgeData, ComponentData
from core.ontology import EventKind
from infrastructure.event_bus import DeleteNode, DeleteMessage


def kinds(events):
    return [e.kind for e in events]


def syncs(events):
    return [e for e in events if e.kind == EventKind.SYNC_MESSAGE_ORDER]


# =============================================================================
# NODE OPERATIONS TESTS
# =============================================================================

def test_add_node_creates_node(fresh_db):
    """
    Validate that add_node successfully creates a node in the graph.

    Verifies:
    - Node count increases by 1
    - Node can be retrieved by ID
    """
    node = NodeData.create(message_id="m1")

    fresh_db.add_node(node)

    assert fresh_db.node_count == 1
    assert fresh_db.has_node(node.id)
    assert node.id in fresh_db
    assert fresh_db.get_node(node.id).message_id == "m1"


def test_add_node_duplicate_id_fails(fresh_db):
    """
    Validate that adding a node with a duplicate ID raises DuplicateNodeError.
    """
    node = NodeData.create(id="n1")
    fresh_db.add_node(node)

    with pytest.raises(DuplicateNodeError) as exc_info:
        fresh_db.add_node(node)

    assert "n1" in str(exc_info.value)
    assert fresh_db.node_count == 1


def test_get_node_not_found_error(fresh_db):
    with pytest.raises(NodeNotFoundError) as exc_info:
        fresh_db.get_node("does-not-exist")

    assert "does-not-exist" in str(exc_info.value)


def test_add_node_with_message_publishes_add_then_sync(fresh_db, recorder):
    """
    Verifies:
    - addMessage precedes syncMessageOrder
    - the sync carries the new id
    """
    fresh_db.add_node(NodeData.create(id="n1", message_id="m1"))

    assert kinds(recorder) == [EventKind.ADD_MESSAGE, EventKind.SYNC_MESSAGE_ORDER]
    assert recorder[0].message_id == "m1"
    assert recorder[1].order == ["m1"]
    assert recorder[1].orphan_ids == ["m1"]


def test_add_node_without_message_only_syncs(fresh_db, recorder):
    fresh_db.add_node(NodeData.create(id="n1"))

    assert kinds(recorder) == [EventKind.SYNC_MESSAGE_ORDER]
    assert recorder[0].order == []


def test_add_node_with_known_component_pushes_component_data(fresh_db, recorder):
    component = ComponentData(id="c1", ui_tool_type="banner", content={"banner": {"text": "Hi"}})
    fresh_db.upsert_component(component)

    fresh_db.add_node(NodeData.create(id="n1", message_id="m1", component_id="c1"))

    assert kinds(recorder) == [
        EventKind.ADD_MESSAGE,
        EventKind.UPDATE_COMPONENT_DATA,
        EventKind.SYNC_MESSAGE_ORDER,
    ]
    assert recorder[0].ui_tool_type == "banner"
    assert recorder[1].component_data == component


def test_set_node_message_materializes(fresh_db, recorder):
    """Linking a message to an existing node announces it."""
    fresh_db.add_node(NodeData.create(id="n1"))
    recorder.clear()

    updated = fresh_db.set_node_message("n1", "m1")

    assert updated.message_id == "m1"
    assert kinds(recorder) == [EventKind.ADD_MESSAGE, EventKind.SYNC_MESSAGE_ORDER]
    assert fresh_db.find_node_by_message("m1").id == "n1"


def test_relinking_retires_the_old_message(fresh_db, projector, recorder):
    """The preview never keeps a message that no node owns."""
    fresh_db.add_node(NodeData.create(id="n1", message_id="m1"))
    recorder.clear()

    fresh_db.set_node_message("n1", "m2")

    assert kinds(recorder) == [
        EventKind.DELETE_MESSAGE,
        EventKind.ADD_MESSAGE,
        EventKind.SYNC_MESSAGE_ORDER,
    ]
    assert recorder[0].targets == frozenset({"m1"})
    assert fresh_db.resolve().order == ("m2",)
    assert projector.order == ["m2"]


def test_relinking_keeps_a_message_shared_with_another_node(fresh_db, projector, recorder):
    fresh_db.add_node(NodeData.create(id="n1", message_id="m1"))
    fresh_db.add_node(NodeData.create(id="n2", message_id="m1"))
    recorder.clear()

    fresh_db.set_node_message("n2", "m2")

    assert EventKind.DELETE_MESSAGE not in kinds(recorder)
    assert projector.order == ["m1", "m2"]


def test_relinking_keeps_canvas_fields(fresh_db):
    fresh_db.add_node(NodeData.create(id="n1", message_id="m1", component_id="c1", data={"title": "Intro"}))

    updated = fresh_db.set_node_message("n1", "m2")

    assert updated.data == {"title": "Intro", "messageId": "m2", "componentId": "c1"}


def test_update_node_id_mismatch(fresh_db):
    fresh_db.add_node(NodeData.create(id="n1"))

    with pytest.raises(ValueError):
        fresh_db.update_node("n1", NodeData.create(id="n2"))


def test_remove_node_publishes_delete_and_sync(db_with_chain, recorder):
    """
    Verifies:
    - deleteMessage for the node's message
    - incident edges are gone
    - the new order skips the message
    """
    db_with_chain.remove_node("n2")

    assert kinds(recorder) == [EventKind.DELETE_MESSAGE, EventKind.SYNC_MESSAGE_ORDER]
    assert recorder[0].targets == frozenset({"m2"})
    assert db_with_chain.edge_count == 0
    assert recorder[1].order == ["m1", "m3"]
    assert recorder[1].orphan_ids == ["m1", "m3"]


def test_remove_node_not_found(fresh_db):
    with pytest.raises(NodeNotFoundError):
        fresh_db.remove_node("missing")


def test_remove_node_keeps_message_shared_by_another_node(fresh_db, recorder):
    fresh_db.add_node(NodeData.create(id="n1", message_id="m1"))
    fresh_db.add_node(NodeData.create(id="n2", message_id="m1"))
    recorder.clear()

    fresh_db.remove_node("n1")

    assert EventKind.DELETE_MESSAGE not in kinds(recorder)


# =============================================================================
# EDGE OPERATIONS TESTS
# =============================================================================

def test_add_edge_creates_edge(db_with_chain):
    """
    Verifies:
    - Edge count matches
    - Edge ids are listed in insertion order on both endpoints
    """
    assert db_with_chain.edge_count == 2
    assert db_with_chain.outgoing_edge_ids("n1") == ["e-n1-n2"]
    assert db_with_chain.incoming_edge_ids("n2") == ["e-n1-n2"]
    assert db_with_chain.get_edge("e-n2-n3").target_id == "n3"


def test_add_edge_unknown_node(fresh_db):
    fresh_db.add_node(NodeData.create(id="n1"))

    with pytest.raises(NodeNotFoundError):
        fresh_db.connect("n1", "ghost")


def test_add_edge_existing_pair_returns_existing_id(db_with_chain, recorder):
    edge_id = db_with_chain.add_edge(EdgeData(id="other", source_id="n1", target_id="n2"))

    assert edge_id == "e-n1-n2"
    assert db_with_chain.edge_count == 2
    assert recorder == []


def test_add_edge_duplicate_id_for_other_pair(db_with_chain):
    with pytest.raises(DuplicateEdgeError):
        db_with_chain.add_edge(EdgeData(id="e-n1-n2", source_id="n1", target_id="n3"))


def test_remove_edge(db_with_chain, recorder):
    removed = db_with_chain.remove_edge("e-n2-n3")

    assert removed.source_id == "n2"
    assert not db_with_chain.has_edge("e-n2-n3")
    assert recorder[-1].order == ["m1", "m2", "m3"]
    assert recorder[-1].orphan_ids == ["m3"]


def test_remove_edge_not_found(fresh_db):
    with pytest.raises(EdgeNotFoundError):
        fresh_db.remove_edge("missing")


def test_reconnect_edge_single_sync(db_with_chain, recorder):
    """Moving an edge endpoint publishes exactly one sync."""
    db_with_chain.reconnect_edge("e-n1-n2", target_id="n3")

    assert len(syncs(recorder)) == 1
    assert db_with_chain.get_edge("e-n1-n2").target_id == "n3"
    assert recorder[-1].order == ["m1", "m3", "m2"]


def test_cycle_detection(db_with_chain):
    assert not db_with_chain.has_cycle()

    db_with_chain.connect("n3", "n1")

    assert db_with_chain.has_cycle()
    assert db_with_chain.resolve().order == ("m1", "m2", "m3")


def test_get_descendants(db_with_chain):
    assert [n.id for n in db_with_chain.get_descendants("n1")] == ["n2", "n3"]
    assert db_with_chain.get_descendants("n3") == []


def test_is_isolated(db_with_chain):
    db_with_chain.add_node(NodeData.create(id="n4", message_id="m4"))

    assert db_with_chain.is_isolated("n4")
    assert not db_with_chain.is_isolated("n2")


# =============================================================================
# BATCH OPERATIONS
# =============================================================================

def test_batch_publishes_one_sync(fresh_db, recorder):
    with fresh_db.batch():
        fresh_db.add_node(NodeData.create(id="n1", message_id="m1"))
        fresh_db.add_node(NodeData.create(id="n2", message_id="m2"))
        fresh_db.connect("n1", "n2")

    assert len(syncs(recorder)) == 1
    assert recorder[-1].order == ["m1", "m2"]


def test_nested_batch_syncs_on_outermost_exit(fresh_db, recorder):
    with fresh_db.batch():
        with fresh_db.batch():
            fresh_db.add_node(NodeData.create(id="n1"))
        assert syncs(recorder) == []

    assert len(syncs(recorder)) == 1


def test_empty_batch_publishes_nothing(fresh_db, recorder):
    with fresh_db.batch():
        pass

    assert recorder == []


# =============================================================================
# CHANNEL HANDLERS
# =============================================================================

def test_delete_node_event_removes_node_and_announces(db_with_chain, channel, recorder):
    channel.publish(DeleteNode(message_id="m2", source="projector"))

    assert not db_with_chain.has_node("n2")
    # The store reacts before the wildcard recorder sees the deleteNode itself
    assert kinds(recorder) == [
        EventKind.DELETE_MESSAGE,
        EventKind.SYNC_MESSAGE_ORDER,
        EventKind.DELETE_NODE,
    ]
    assert syncs(recorder)[-1].order == ["m1", "m3"]


def test_delete_node_unknown_message_is_noop(db_with_chain, channel, recorder):
    channel.publish(DeleteNode(message_id="ghost"))

    assert db_with_chain.node_count == 3
    assert kinds(recorder) == [EventKind.DELETE_NODE]


def test_delete_message_event_is_not_republished(db_with_chain, channel, recorder):
    """A batch deleteMessage drops nodes and syncs once, without echoing."""
    channel.publish(DeleteMessage(message_ids=["m1", "m3"], source="projector"))

    assert [n.id for n in db_with_chain.get_all_nodes()] == ["n2"]
    assert kinds(recorder) == [EventKind.SYNC_MESSAGE_ORDER, EventKind.DELETE_MESSAGE]
    assert recorder[0].orphan_ids == ["m2"]


# =============================================================================
# COMPONENTS
# =============================================================================

def test_upsert_component_updates_linked_messages(fresh_db, recorder):
    fresh_db.add_node(NodeData.create(id="n1", message_id="m1", component_id="c1"))
    fresh_db.add_node(NodeData.create(id="n2", message_id="m2", component_id="c2"))
    recorder.clear()

    component = ComponentData(id="c1", ui_tool_type="question", content={"question": {"text": "Q?"}})
    fresh_db.upsert_component(component)

    assert kinds(recorder) == [EventKind.UPDATE_COMPONENT_DATA]
    assert recorder[0].message_id == "m1"
    assert fresh_db.get_component("c1") == component


def test_remove_component(fresh_db):
    fresh_db.upsert_component(ComponentData(id="c1", ui_tool_type="message"))

    assert fresh_db.remove_component("c1").id == "c1"
    assert fresh_db.remove_component("c1") is None


# =============================================================================
# LOADING AND EXPORT
# =============================================================================

def test_load_is_silent_and_drops_bad_edges(fresh_db, recorder, chain_nodes):
    edges = [
        EdgeData.create("n1", "n2"),
        EdgeData.create("n2", "ghost"),
    ]

    fresh_db.load(chain_nodes, edges)

    assert recorder == []
    assert fresh_db.node_count == 3
    assert fresh_db.edge_count == 1
    assert fresh_db.resolve().order == ("m1", "m2", "m3")


def test_load_then_mutation_syncs_again(fresh_db, recorder, chain_nodes):
    fresh_db.load(chain_nodes, [])

    fresh_db.connect("n1", "n2")

    assert len(syncs(recorder)) == 1


def test_create_db_from_nodes_without_channel(chain_nodes):
    db = create_db_from_nodes(chain_nodes, [EdgeData.create("n1", "n2")])

    assert isinstance(db, ThreadlineDB)
    assert db.resolve().orphan_ids == ["m3"]
    db.remove_node("n3")  # no channel: nothing to publish, must not fail


def test_to_polars_nodes(db_with_chain):
    db_with_chain.add_node(NodeData.create(id="n4", message_id="m4"))

    df = db_with_chain.to_polars_nodes()

    assert df.height == 4
    assert df["position"].to_list() == [0, 1, 2, 3]
    assert df["orphan"].to_list() == [False, False, False, True]
    assert df["out_degree"].to_list() == [1, 1, 0, 0]


def test_save_parquet(db_with_chain, tmp_path):
    nodes_path, edges_path = db_with_chain.save_parquet(tmp_path / "flow")

    assert nodes_path.exists()
    assert edges_path.exists()
