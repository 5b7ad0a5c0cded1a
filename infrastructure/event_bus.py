"""
Typed event channel decoupling the graph store from the chat preview.

Follows publisher-subscriber pattern: the canvas side and the preview side
never hold references to each other, only to a shared EventChannel.

Design Principles:
- Publisher-subscriber pattern (decoupled)
- Injectable instance, no process-wide singleton
- Synchronous fan-out; nothing is queued, retried, merged or deduplicated
- Type-safe events via msgspec tagged structs (one struct per event kind)

Architecture:
    GraphStore --sync/add/delete--> EventChannel --> ConversationProjector
    ConversationProjector --select/highlight/deleteNode--> EventChannel --> GraphStore/Canvas

Usage:
    channel = EventChannel()

    def on_sync(event: SyncMessageOrder):
        print(event.order)

    channel.subscribe(EventKind.SYNC_MESSAGE_ORDER, on_sync)
    channel.publish(SyncMessageOrder(order=["m1"], orphan_ids=[], source="graph_store"))
"""
from typing import Callable, ClassVar, List, Dict, Optional, Union
from collections import defaultdict
import logging

import msgspec

from core.ontology import EventKind
from core.schemas import ComponentData


logger = logging.getLogger("threadline.event_bus")


# =============================================================================
# EVENT PAYLOADS
# =============================================================================

class FlowEvent(
    msgspec.Struct,
    kw_only=True,
    frozen=True,
    rename="camel",
    tag_field="event",
):
    """
    Base for every event crossing the channel.

    Attributes:
        source: Who published the event ("graph_store", "projector", "canvas", ...)
    """
    kind: ClassVar[EventKind]
    source: str = "unknown"


class SyncMessageOrder(FlowEvent, tag=EventKind.SYNC_MESSAGE_ORDER.value):
    kind: ClassVar[EventKind] = EventKind.SYNC_MESSAGE_ORDER
    order: List[str]
    orphan_ids: List[str] = msgspec.field(default_factory=list)


class AddMessage(FlowEvent, tag=EventKind.ADD_MESSAGE.value):
    kind: ClassVar[EventKind] = EventKind.ADD_MESSAGE
    message_id: str
    component_id: Optional[str] = None
    ui_tool_type: Optional[str] = None
    show_dropdown: bool = False


class UpdateMessage(FlowEvent, tag=EventKind.UPDATE_MESSAGE.value):
    kind: ClassVar[EventKind] = EventKind.UPDATE_MESSAGE
    message_id: str
    ui_tool_type: Optional[str] = None
    show_dropdown: bool = False


class UpdateMessageContent(FlowEvent, tag=EventKind.UPDATE_MESSAGE_CONTENT.value):
    kind: ClassVar[EventKind] = EventKind.UPDATE_MESSAGE_CONTENT
    message_id: str
    content: str


class UpdateComponentData(FlowEvent, tag=EventKind.UPDATE_COMPONENT_DATA.value):
    kind: ClassVar[EventKind] = EventKind.UPDATE_COMPONENT_DATA
    message_id: str
    component_data: ComponentData


class DeleteMessage(FlowEvent, tag=EventKind.DELETE_MESSAGE.value):
    """Single (`message_id`) or batch (`message_ids`) removal."""
    kind: ClassVar[EventKind] = EventKind.DELETE_MESSAGE
    message_id: Optional[str] = None
    message_ids: List[str] = msgspec.field(default_factory=list)

    @property
    def targets(self) -> frozenset:
        """All message ids this event removes."""
        ids = set(self.message_ids)
        if self.message_id is not None:
            ids.add(self.message_id)
        return frozenset(ids)


class DeleteNode(FlowEvent, tag=EventKind.DELETE_NODE.value):
    kind: ClassVar[EventKind] = EventKind.DELETE_NODE
    message_id: str


class NodeSelection(FlowEvent, tag=EventKind.NODE_SELECTION.value):
    kind: ClassVar[EventKind] = EventKind.NODE_SELECTION
    selected_message_ids: List[str] = msgspec.field(default_factory=list)


class SelectNode(FlowEvent, tag=EventKind.SELECT_NODE.value):
    kind: ClassVar[EventKind] = EventKind.SELECT_NODE
    message_id: str


class HighlightNode(FlowEvent, tag=EventKind.HIGHLIGHT_NODE.value):
    kind: ClassVar[EventKind] = EventKind.HIGHLIGHT_NODE
    message_id: str


class UnhighlightNode(FlowEvent, tag=EventKind.UNHIGHLIGHT_NODE.value):
    kind: ClassVar[EventKind] = EventKind.UNHIGHLIGHT_NODE
    message_id: str


class HighlightMessage(FlowEvent, tag=EventKind.HIGHLIGHT_MESSAGE.value):
    kind: ClassVar[EventKind] = EventKind.HIGHLIGHT_MESSAGE
    message_id: str


class UnhighlightMessage(FlowEvent, tag=EventKind.UNHIGHLIGHT_MESSAGE.value):
    kind: ClassVar[EventKind] = EventKind.UNHIGHLIGHT_MESSAGE
    message_id: str


class ScrollToMessage(FlowEvent, tag=EventKind.SCROLL_TO_MESSAGE.value):
    kind: ClassVar[EventKind] = EventKind.SCROLL_TO_MESSAGE
    message_id: str


class EditWindowClose(FlowEvent, tag=EventKind.EDIT_WINDOW_CLOSE.value):
    kind: ClassVar[EventKind] = EventKind.EDIT_WINDOW_CLOSE


class OpenEditWindow(FlowEvent, tag=EventKind.OPEN_EDIT_WINDOW.value):
    kind: ClassVar[EventKind] = EventKind.OPEN_EDIT_WINDOW
    message_id: str


class EnterTestMode(FlowEvent, tag=EventKind.ENTER_TEST_MODE.value):
    kind: ClassVar[EventKind] = EventKind.ENTER_TEST_MODE
    message_id: Optional[str] = None


class ExitTestMode(FlowEvent, tag=EventKind.EXIT_TEST_MODE.value):
    kind: ClassVar[EventKind] = EventKind.EXIT_TEST_MODE
    message_id: Optional[str] = None


AnyEvent = Union[
    SyncMessageOrder,
    AddMessage,
    UpdateMessage,
    UpdateMessageContent,
    UpdateComponentData,
    DeleteMessage,
    DeleteNode,
    NodeSelection,
    SelectNode,
    HighlightNode,
    UnhighlightNode,
    HighlightMessage,
    UnhighlightMessage,
    ScrollToMessage,
    EditWindowClose,
    OpenEditWindow,
    EnterTestMode,
    ExitTestMode,
]

EventHandler = Callable[[FlowEvent], None]

_event_encoder = msgspec.json.Encoder()
_event_decoder = msgspec.json.Decoder(type=AnyEvent)


def encode_event(event: FlowEvent) -> bytes:
    """Encode an event to JSON; the kind travels in the "event" tag."""
    return _event_encoder.encode(event)


def decode_event(data: bytes) -> FlowEvent:
    """Decode JSON produced by encode_event (or a foreign publisher)."""
    return _event_decoder.decode(data)


# =============================================================================
# CHANNEL
# =============================================================================

class EventChannel:
    """
    Synchronous pub/sub channel for flow events.

    Thread Safety:
        NOT thread-safe. The engine runs on one cooperative event loop.

    Reentrancy:
        A handler may publish, subscribe or unsubscribe while it is being
        invoked. Each publish iterates over a snapshot of the subscriber
        list, so changes take effect from the next publish.

    Failure isolation:
        An exception in one handler is logged and does not stop delivery to
        the remaining handlers. Nothing is rolled back.
    """

    def __init__(self):
        """Initialize empty subscriber lists."""
        self._subscribers: Dict[EventKind, List[EventHandler]] = defaultdict(list)
        self._wildcard_subscribers: List[EventHandler] = []

    def subscribe(self, kind: EventKind, handler: EventHandler) -> None:
        """
        Subscribe to one event kind.

        Subscribing the same handler twice is a no-op.

        Example:
            channel.subscribe(EventKind.ADD_MESSAGE, projector.on_add_message)
        """
        if handler not in self._subscribers[kind]:
            self._subscribers[kind].append(handler)
            logger.debug(f"Subscribed handler to {kind.value}")

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to every event kind (journals, debuggers)."""
        if handler not in self._wildcard_subscribers:
            self._wildcard_subscribers.append(handler)
            logger.debug("Subscribed wildcard handler")

    def publish(self, event: FlowEvent) -> None:
        """
        Publish an event to all subscribers of its kind, then to wildcard
        subscribers.

        A publish with no subscribers is a silent no-op.
        """
        handlers = list(self._subscribers.get(event.kind, ()))
        handlers.extend(self._wildcard_subscribers)
        if not handlers:
            return

        logger.debug(f"Publishing {event.kind.value} from {event.source} to {len(handlers)} handler(s)")

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Error in handler for {event.kind.value}: {e}",
                    exc_info=True
                )

    def unsubscribe(self, kind: EventKind, handler: EventHandler) -> None:
        """Unsubscribe a handler (must be the same callable) from one kind."""
        if handler in self._subscribers.get(kind, ()):
            self._subscribers[kind].remove(handler)
            logger.debug(f"Unsubscribed handler from {kind.value}")

    def unsubscribe_all(self, handler: EventHandler) -> None:
        """Remove a handler from every kind and from the wildcard list."""
        for handlers in self._subscribers.values():
            if handler in handlers:
                handlers.remove(handler)
        if handler in self._wildcard_subscribers:
            self._wildcard_subscribers.remove(handler)

    def clear_subscribers(self, kind: Optional[EventKind] = None) -> None:
        """
        Clear all subscribers for an event kind (or everything).

        Warning:
            This is primarily for testing.
        """
        if kind is None:
            self._subscribers.clear()
            self._wildcard_subscribers.clear()
            logger.info("Cleared all event subscribers")
        else:
            self._subscribers.pop(kind, None)
            logger.info(f"Cleared subscribers for {kind.value}")

    def subscriber_count(self, kind: Optional[EventKind] = None) -> int:
        """Count subscribers for a kind (None = all kinds plus wildcards)."""
        if kind is None:
            total = sum(len(handlers) for handlers in self._subscribers.values())
            return total + len(self._wildcard_subscribers)
        return len(self._subscribers.get(kind, ()))
