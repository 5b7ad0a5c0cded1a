"""
THREADLINE CORE - Central exports for core functionality.

This module provides access to:
- Vocabulary (event kinds, tool types, test-mode states)
- Entities and message variants
- The order resolver

The graph store, projector, test-mode controller and workspace are imported
from their modules directly (they depend on infrastructure).
"""

from core.ontology import (
    EventKind,
    MessageType,
    PromptState,
    Sender,
    TestModeState,
    UiToolType,
    SNAPSHOT_VERSION,
)
from core.schemas import (
    NodeData,
    EdgeData,
    ComponentData,
    TextMessage,
    CardMessage,
    PillsMessage,
    Message,
    ResolvedOrder,
    FlowSnapshot,
)
from core.order_resolver import resolve

__all__ = [
    # Ontology
    "EventKind",
    "MessageType",
    "PromptState",
    "Sender",
    "TestModeState",
    "UiToolType",
    "SNAPSHOT_VERSION",
    # Schemas
    "NodeData",
    "EdgeData",
    "ComponentData",
    "TextMessage",
    "CardMessage",
    "PillsMessage",
    "Message",
    "ResolvedOrder",
    "FlowSnapshot",
    # Resolver
    "resolve",
]
