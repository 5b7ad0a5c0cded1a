"""
THREADLINE SCHEMAS - The Grammar of the System

If ontology.py is the Dictionary (defining the words we can use),
schemas.py is the Grammar (defining how we structure entities).

This module defines the core data structures that flow through the engine:
- NodeData / EdgeData: The payloads attached to graph vertices and links
- ComponentData: Opaque authoring payload (forwarded, never interpreted)
- Message variants: TextMessage | CardMessage | PillsMessage (tagged union)
- ResolvedOrder: Output of the order resolver
- FlowSnapshot: The persisted shape
- Serialization helpers for persistence and IPC

Design Principles:
1. STRICT TYPING: msgspec.Struct with no silent type coercion
2. TAGGED VARIANTS: Message kind is a msgspec tag; consumers dispatch with `match`
3. KW_ONLY: Enforce keyword arguments to prevent positional mix-ups
4. IMMUTABLE MESSAGES: Messages are frozen; edits produce a replacement
5. CAMELCASE ON THE WIRE: Snapshots keep the canvas editor's key style
"""
import msgspec
from typing import Optional, Dict, Any, List, Tuple, FrozenSet, Union
from datetime import datetime, timezone
import uuid

from core.ontology import (
    Sender,
    MessageType,
    SNAPSHOT_VERSION,
)


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def now_utc() -> str:
    """Fast UTC timestamp as ISO8601 string."""
    return datetime.now(timezone.utc).isoformat()


def now_clock() -> str:
    """Local wall-clock time as HH:MM, used for transcript timestamps."""
    return datetime.now().strftime("%H:%M")


def generate_id(prefix: str = "") -> str:
    """Generate a new id for nodes, edges and message links."""
    return f"{prefix}{uuid.uuid4().hex}"


# =============================================================================
# GRAPH ENTITIES
# =============================================================================

class NodePosition(msgspec.Struct, kw_only=True):
    """Canvas coordinates. Opaque to the engine, persisted as-is."""
    x: float = 0.0
    y: float = 0.0


class NodeData(msgspec.Struct, kw_only=True, rename="camel"):
    """
    The payload attached to every vertex in the rustworkx graph.

    Wire shape is the canvas editor's: {id, type, position, data, createdAt}
    with the message and component links inside `data`.

    Architecture Notes:
    - `id`: Business id (string), NOT the rustworkx integer index
    - `message_id`: Link to the transcript message (`data.messageId`). May
      be None between node creation and message materialization.
    - `data`: Canvas fields (title, description, ...) plus the links. The
      engine reads only the links.

    Incoming/outgoing edge ids are not stored here; the graph store derives
    them from its edge table in insertion order.
    """
    id: str
    type: str = "card"
    position: NodePosition = msgspec.field(default_factory=NodePosition)
    data: Dict[str, Any] = msgspec.field(default_factory=dict)
    created_at: str = msgspec.field(default_factory=now_utc)

    @property
    def message_id(self) -> Optional[str]:
        value = self.data.get("messageId")
        return value if isinstance(value, str) else None

    @property
    def component_id(self) -> Optional[str]:
        value = self.data.get("componentId")
        return value if isinstance(value, str) else None

    @classmethod
    def create(
        cls,
        message_id: Optional[str] = None,
        component_id: Optional[str] = None,
        **kwargs
    ) -> "NodeData":
        """Factory method to create a new NodeData with optional custom ID."""
        node_id = kwargs.pop("id", None) or generate_id("n-")
        data = dict(kwargs.pop("data", None) or {})
        if message_id is not None:
            data["messageId"] = message_id
        if component_id is not None:
            data["componentId"] = component_id
        return cls(id=node_id, data=data, **kwargs)

    def linked(self, message_id: str, component_id: Optional[str] = None) -> "NodeData":
        """Copy of this node pointing at another message (and component)."""
        data = dict(self.data)
        data["messageId"] = message_id
        if component_id is not None:
            data["componentId"] = component_id
        return msgspec.structs.replace(self, data=data)


class EdgeData(msgspec.Struct, kw_only=True, rename="camel"):
    """
    The payload attached to every link in the rustworkx graph.

    Edges are intentionally thin: "source precedes target" and nothing else.
    On the wire the endpoints are `source` / `target`.
    """
    id: str
    source_id: str = msgspec.field(name="source")
    target_id: str = msgspec.field(name="target")
    created_at: str = msgspec.field(default_factory=now_utc)

    @classmethod
    def create(cls, source_id: str, target_id: str, **kwargs) -> "EdgeData":
        """Factory method to create an EdgeData."""
        edge_id = kwargs.pop("id", None) or f"e-{source_id}-{target_id}"
        return cls(id=edge_id, source_id=source_id, target_id=target_id, **kwargs)


class ComponentData(msgspec.Struct, kw_only=True, rename="camel"):
    """
    Authoring payload behind a node.

    `content` is keyed by tool ("message", "question", "multiSelect",
    "banner"); the engine forwards it and only reads the preview text.
    """
    id: str
    ui_tool_type: str
    content: Dict[str, Any] = msgspec.field(default_factory=dict)


# =============================================================================
# MESSAGES (Tagged Variants)
# =============================================================================

class MultiSelectOption(msgspec.Struct, kw_only=True, omit_defaults=True):
    text: str
    image: Optional[str] = None
    icon: Optional[str] = None


class CardData(msgspec.Struct, kw_only=True):
    title: str = ""
    description: str = ""
    illustration: str = ""
    question: str = ""


class PillsData(msgspec.Struct, kw_only=True):
    text: str = ""
    options: List[str] = msgspec.field(default_factory=list)


class MessageBase(
    msgspec.Struct,
    kw_only=True,
    frozen=True,
    rename="camel",
    tag_field="type",
    omit_defaults=True,
):
    """
    Fields shared by every transcript message.

    - `id`: Local sequence key for the projector's list identity. Numeric
      string, stable across reorders.
    - `message_id`: Cross-reference key shared with the owning node.

    Tool-specific fields (suggestions, options, ...) are driven by
    `ui_tool_type`, not by the variant tag, so they live here.
    """
    id: str
    message_id: Optional[str] = None
    component_id: Optional[str] = None
    sender: Sender = Sender.AI
    content: str = ""
    timestamp: str = ""
    ui_tool_type: Optional[str] = None
    show_dropdown: bool = False
    banner_text: Optional[str] = None
    suggestions: Optional[List[str]] = None
    image: Optional[str] = None
    multi_select_options: Optional[List[MultiSelectOption]] = None
    max_selection: Optional[int] = None


class TextMessage(MessageBase, tag=MessageType.TEXT.value):
    """Plain chat bubble."""


class CardMessage(MessageBase, tag=MessageType.CARD.value):
    """Illustrated card with a question."""
    card_data: CardData = msgspec.field(default_factory=CardData)


class PillsMessage(MessageBase, tag=MessageType.PILLS.value):
    """Prompt with selectable pill options."""
    pills_data: PillsData = msgspec.field(default_factory=PillsData)


Message = Union[TextMessage, CardMessage, PillsMessage]


# =============================================================================
# RESOLVER OUTPUT
# =============================================================================

class ResolvedOrder(msgspec.Struct, kw_only=True, frozen=True):
    """
    The linear transcript order derived from the graph.

    Attributes:
        order: Message ids, each live id exactly once
        orphans: Message ids of isolated nodes (also present at the tail of order)
    """
    order: Tuple[str, ...] = ()
    orphans: FrozenSet[str] = frozenset()

    @property
    def orphan_ids(self) -> List[str]:
        """Orphans as a list, in order position."""
        return [mid for mid in self.order if mid in self.orphans]

    def __len__(self) -> int:
        return len(self.order)


# =============================================================================
# PERSISTED SNAPSHOT
# =============================================================================

class FlowSnapshot(msgspec.Struct, kw_only=True, rename="camel"):
    """
    Everything needed to rebuild a workspace.

    Shape: {nodes, edges, components, messages, orphanMessageIds,
    lastSaved, version}.
    """
    nodes: List[NodeData] = msgspec.field(default_factory=list)
    edges: List[EdgeData] = msgspec.field(default_factory=list)
    components: Dict[str, ComponentData] = msgspec.field(default_factory=dict)
    messages: List[Message] = msgspec.field(default_factory=list)
    orphan_message_ids: List[str] = msgspec.field(default_factory=list)
    last_saved: str = msgspec.field(default_factory=now_utc)
    version: str = SNAPSHOT_VERSION


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

# Pre-compiled encoders/decoders, reused across the application
_json_encoder = msgspec.json.Encoder()
_snapshot_decoder = msgspec.json.Decoder(type=FlowSnapshot)
_message_decoder = msgspec.json.Decoder(type=Message)


def serialize_snapshot(snapshot: FlowSnapshot) -> bytes:
    """Serialize a FlowSnapshot to JSON bytes."""
    return _json_encoder.encode(snapshot)


def deserialize_snapshot(data: bytes) -> FlowSnapshot:
    """
    Deserialize JSON bytes to a FlowSnapshot.

    Raises:
        msgspec.DecodeError / msgspec.ValidationError on malformed input
    """
    return _snapshot_decoder.decode(data)


def snapshot_from_builtins(obj: Any) -> FlowSnapshot:
    """Convert an already-parsed JSON object into a FlowSnapshot."""
    return msgspec.convert(obj, type=FlowSnapshot)


def serialize_message(message: Message) -> bytes:
    """Serialize a single message (variant tag included)."""
    return _json_encoder.encode(message)


def deserialize_message(data: bytes) -> Message:
    """Deserialize JSON bytes to the matching message variant."""
    return _message_decoder.decode(data)
