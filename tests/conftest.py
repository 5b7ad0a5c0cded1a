"""
Pytest configuration and shared fixtures for Threadline test suite.
"""
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def channel():
    """Provide a fresh EventChannel."""
    from infrastructure.event_bus import EventChannel
    return EventChannel()


@pytest.fixture
def fresh_db(channel):
    """Provide a ThreadlineDB attached to the channel."""
    from core.graph_db import ThreadlineDB
    return ThreadlineDB(channel)


@pytest.fixture
def projector(channel):
    """Provide a ConversationProjector attached to the channel."""
    from core.projector import ConversationProjector
    return ConversationProjector(channel)


@pytest.fixture
def recorder(channel):
    """Record every event published on the channel."""
    events = []
    channel.subscribe_all(events.append)
    return events


@pytest.fixture
def workspace():
    """Provide a Workspace without storage."""
    from core.workspace import Workspace
    ws = Workspace()
    yield ws
    ws.close()


@pytest.fixture
def temp_db_path(tmp_path):
    """Path for a temporary snapshot database."""
    return tmp_path / "threadline.db"


@pytest.fixture
def store(temp_db_path):
    """Provide a SnapshotStore on a temporary database."""
    from infrastructure.storage import SnapshotStore
    return SnapshotStore(temp_db_path)


@pytest.fixture
def chain_nodes():
    """Scenario A nodes: n1 -> n2 -> n3 with messages m1..m3."""
    from core.schemas import NodeData
    return [NodeData.create(id=f"n{i}", message_id=f"m{i}") for i in (1, 2, 3)]


@pytest.fixture
def db_with_chain(fresh_db, chain_nodes):
    """Graph store holding n1 -> n2 -> n3 (one sync published)."""
    n1, n2, n3 = chain_nodes
    with fresh_db.batch():
        for node in chain_nodes:
            fresh_db.add_node(node)
        fresh_db.connect(n1.id, n2.id)
        fresh_db.connect(n2.id, n3.id)
    return fresh_db
