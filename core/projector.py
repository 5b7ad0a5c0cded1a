"""
THREADLINE CONVERSATION PROJECTOR - The Chat Preview Model

Owns the preview-side message list and reconciles the graph's events into an
ordered, renderable transcript.

State (every field is replaced wholesale, never edited in place):
- messages:     tuple of Message variants, list identity keyed by message_id
- orphan_ids:   presentation flag set from the last syncMessageOrder
- selected_ids: mirror of the canvas selection
- highlighted:  single id hovered on the canvas (or None)

Inbound events:   syncMessageOrder, addMessage, updateMessage,
                  updateMessageContent, updateComponentData, deleteMessage,
                  nodeSelection, highlightMessage, unhighlightMessage,
                  scrollToMessage, editWindowClose, enter/exitTestMode
Outbound signals: highlightNode, unhighlightNode, selectNode, openEditWindow,
                  deleteNode (+ deleteMessage batch)

Unknown message ids are silent no-ops everywhere: events may race with
deletions.
"""
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple
from enum import Enum
import logging

import msgspec

from core.ontology import (
    EventKind,
    Sender,
    UiToolType,
    DEFAULT_BANNER_TEXT,
    DEFAULT_QUESTION_TEXT,
    DEFAULT_MULTI_SELECT_TEXT,
    DEFAULT_MESSAGE_TEXT,
    DEFAULT_COMPONENT_LABEL,
    PLACEHOLDER_TEXT,
    default_content_for,
)
from core.schemas import (
    CardMessage,
    ComponentData,
    Message,
    MultiSelectOption,
    PillsMessage,
    TextMessage,
    now_clock,
)
from infrastructure.config import PreviewConfig
from infrastructure.event_bus import (
    EventChannel,
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
)
from infrastructure.scheduler import Scheduler, Viewport, make_scroll_step


logger = logging.getLogger("threadline.projector")

SOURCE = "projector"


# =============================================================================
# RENDER MODEL
# =============================================================================

class RowKind(str, Enum):
    MESSAGE = "message"
    PLACEHOLDER = "placeholder"


class TranscriptRow(msgspec.Struct, kw_only=True, frozen=True):
    """
    One rendered line of the preview.

    Placeholder rows are synthetic: no message, no message id.
    """
    kind: RowKind
    message: Optional[Message] = None
    text: str = ""
    orphan: bool = False
    selected: bool = False
    highlighted: bool = False
    flashing: bool = False
    show_choices: bool = True
    choices: Tuple[str, ...] = ()
    choice_label: str = ""

    @property
    def message_id(self) -> Optional[str]:
        return self.message.message_id if self.message is not None else None


class DeletePrompt(msgspec.Struct, kw_only=True, frozen=True):
    """Pending delete confirmation."""
    message_ids: Tuple[str, ...]
    label: str


# =============================================================================
# COMPONENT DATA DERIVATION
# =============================================================================

def _section(content: Dict, key: str) -> Dict:
    section = content.get(key)
    return section if isinstance(section, dict) else {}


def _str_or_none(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _text_of(content: Dict, key: str) -> Optional[str]:
    return _str_or_none(_section(content, key).get("text"))


def _strings(value) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _options(value) -> List[MultiSelectOption]:
    """Well-formed multi-select options; malformed entries are dropped."""
    options = []
    for option in value if isinstance(value, list) else []:
        try:
            options.append(msgspec.convert(option, type=MultiSelectOption))
        except msgspec.ValidationError as e:
            logger.debug(f"Skipping malformed multi-select option {option!r}: {e}")
    return options


def apply_component_data(message: Message, component: ComponentData) -> Message:
    """
    Derive preview fields from a component payload.

    banner      -> content from banner text
    question    -> content, suggestions, image
    multiSelect -> content, options, max_selection (default 1)
    otherwise   -> content from message text

    Sections or values of the wrong shape fall back to the defaults.

    Returns:
        A new message; the input is left untouched
    """
    content = component.content or {}
    tool = component.ui_tool_type

    suggestions = None
    image = None
    options = None
    max_selection = None

    if tool == UiToolType.BANNER.value:
        text = _text_of(content, "banner") or DEFAULT_BANNER_TEXT
    elif tool == UiToolType.QUESTION.value:
        question = _section(content, "question")
        text = _str_or_none(question.get("text")) or DEFAULT_QUESTION_TEXT
        suggestions = _strings(question.get("suggestions"))
        image = _str_or_none(question.get("image"))
    elif tool == UiToolType.MULTI_SELECT.value:
        multi = _section(content, "multiSelect")
        text = _str_or_none(multi.get("text")) or DEFAULT_MULTI_SELECT_TEXT
        options = _options(multi.get("options"))
        limit = multi.get("maxSelection")
        max_selection = limit if isinstance(limit, int) and not isinstance(limit, bool) and limit > 0 else 1
    else:
        text = _text_of(content, "message") or DEFAULT_MESSAGE_TEXT

    return msgspec.structs.replace(
        message,
        content=text,
        ui_tool_type=tool,
        banner_text=_text_of(content, "banner"),
        suggestions=suggestions,
        image=image,
        multi_select_options=options,
        max_selection=max_selection,
    )


def next_local_id(messages: Sequence[Message]) -> str:
    """max(existing numeric ids) + 1, starting at 1."""
    highest = 0
    for message in messages:
        try:
            highest = max(highest, int(message.id))
        except ValueError:
            continue
    return str(highest + 1)


class RenderedBody(msgspec.Struct, kw_only=True, frozen=True):
    """What a message row displays: text plus any selectable choices."""
    text: str
    choices: Tuple[str, ...] = ()
    choice_label: str = ""


def render_body(message: Message) -> RenderedBody:
    """
    Display text and choices for a message, dispatched on its variant.

    card  -> title, description and question, one per line
    pills -> pill prompt text, options as choices
    text  -> content, with multi-select options or suggestions as choices
    """
    match message:
        case CardMessage(card_data=card):
            parts = [part for part in (card.title, card.description, card.question) if part]
            return RenderedBody(text="\n".join(parts) or message.content)
        case PillsMessage(pills_data=pills):
            return RenderedBody(
                text=pills.text or message.content,
                choices=tuple(pills.options),
                choice_label="pills",
            )
        case TextMessage(multi_select_options=options) if options:
            return RenderedBody(
                text=message.content,
                choices=tuple(option.text for option in options),
                choice_label=f"options (max {message.max_selection or 1})",
            )
        case TextMessage(suggestions=suggestions) if suggestions:
            return RenderedBody(
                text=message.content,
                choices=tuple(suggestions),
                choice_label="suggestions",
            )
        case TextMessage():
            return RenderedBody(text=message.content)
    raise TypeError(f"Unknown message variant: {type(message).__name__}")


def shows_placeholder(message: Message, boundary: Optional[str] = None) -> bool:
    """
    A user-response placeholder follows every AI message, except
    multi-select prompts (the options are the response) and the active
    test-mode boundary (the tester answers there).
    """
    if message.sender != Sender.AI:
        return False
    if message.ui_tool_type == UiToolType.MULTI_SELECT.value:
        return False
    return boundary is None or message.message_id != boundary


# =============================================================================
# PROJECTOR
# =============================================================================

class ConversationProjector:
    """
    Preview-side transcript, kept consistent with the graph via events.

    Usage:
        channel = EventChannel()
        projector = ConversationProjector(channel)
        channel.publish(AddMessage(message_id="m1"))
        channel.publish(SyncMessageOrder(order=["m1"], orphan_ids=[]))
        [row.kind for row in projector.transcript()]
        # [RowKind.MESSAGE, RowKind.PLACEHOLDER]
    """

    def __init__(
        self,
        channel: EventChannel,
        scheduler: Optional[Scheduler] = None,
        viewport: Optional[Viewport] = None,
        config: Optional[PreviewConfig] = None,
    ):
        self.config = config or PreviewConfig()
        self.scheduler = scheduler or Scheduler(frame_interval_ms=self.config.frame_interval_ms)
        self.viewport = viewport or Viewport()

        self._channel = channel
        self._messages: Tuple[Message, ...] = ()
        self._orphan_ids: FrozenSet[str] = frozenset()
        self._selected_ids: FrozenSet[str] = frozenset()
        self._highlighted_id: Optional[str] = None
        self._flashing_id: Optional[str] = None
        self._locked = False
        self.delete_prompt: Optional[DeletePrompt] = None

        self._handlers = {
            EventKind.SYNC_MESSAGE_ORDER: self.on_sync_message_order,
            EventKind.ADD_MESSAGE: self.on_add_message,
            EventKind.UPDATE_MESSAGE: self.on_update_message,
            EventKind.UPDATE_MESSAGE_CONTENT: self.on_update_message_content,
            EventKind.UPDATE_COMPONENT_DATA: self.on_update_component_data,
            EventKind.DELETE_MESSAGE: self.on_delete_message,
            EventKind.NODE_SELECTION: self.on_node_selection,
            EventKind.HIGHLIGHT_MESSAGE: self.on_highlight_message,
            EventKind.UNHIGHLIGHT_MESSAGE: self.on_unhighlight_message,
            EventKind.SCROLL_TO_MESSAGE: self.on_scroll_to_message,
            EventKind.EDIT_WINDOW_CLOSE: self.on_edit_window_close,
            EventKind.ENTER_TEST_MODE: self.on_enter_test_mode,
            EventKind.EXIT_TEST_MODE: self.on_exit_test_mode,
        }
        for kind, handler in self._handlers.items():
            channel.subscribe(kind, handler)

    def close(self) -> None:
        """Detach from the channel and stop any animation."""
        for kind, handler in self._handlers.items():
            self._channel.unsubscribe(kind, handler)
        self.scheduler.cancel_all()

    # =========================================================================
    # READ-ONLY VIEW
    # =========================================================================

    @property
    def messages(self) -> Tuple[Message, ...]:
        return self._messages

    @property
    def order(self) -> List[str]:
        """Message ids in current transcript order."""
        return [m.message_id for m in self._messages if m.message_id is not None]

    @property
    def orphan_ids(self) -> FrozenSet[str]:
        return self._orphan_ids

    @property
    def selected_ids(self) -> FrozenSet[str]:
        return self._selected_ids

    @property
    def highlighted_id(self) -> Optional[str]:
        return self._highlighted_id

    @property
    def flashing_id(self) -> Optional[str]:
        return self._flashing_id

    @property
    def interaction_locked(self) -> bool:
        """True while a test session is running."""
        return self._locked

    def get_message(self, message_id: str) -> Optional[Message]:
        for message in self._messages:
            if message.message_id == message_id:
                return message
        return None

    def index_of(self, message_id: str) -> int:
        """Position in the transcript, -1 if absent."""
        for i, message in enumerate(self._messages):
            if message.message_id == message_id:
                return i
        return -1

    def load(self, messages: Sequence[Message], orphan_ids: Sequence[str] = ()) -> None:
        """Replace the whole transcript (snapshot restore)."""
        self._messages = tuple(messages)
        self._orphan_ids = frozenset(orphan_ids)
        self._selected_ids = frozenset()
        self._highlighted_id = None
        self.delete_prompt = None

    # =========================================================================
    # INBOUND: TOPOLOGY AND CONTENT
    # =========================================================================

    def on_sync_message_order(self, event: SyncMessageOrder) -> None:
        """
        Reorder to match the resolved order.

        Ids without a message are skipped (addMessage will bring them);
        messages missing from the order are kept at the end rather than
        dropped.
        """
        lookup: Dict[str, Message] = {}
        unlinked: List[Message] = []
        for message in self._messages:
            if message.message_id is None or message.message_id in lookup:
                unlinked.append(message)
            else:
                lookup[message.message_id] = message

        ordered: List[Message] = []
        for message_id in event.order:
            message = lookup.pop(message_id, None)
            if message is not None:
                ordered.append(message)

        leftovers = [m for m in self._messages if m.message_id in lookup]
        if leftovers:
            logger.debug(f"{len(leftovers)} message(s) not in synced order; kept at the end")

        self._messages = tuple(ordered + leftovers + unlinked)
        self._orphan_ids = frozenset(event.orphan_ids)

    def on_add_message(self, event: AddMessage) -> None:
        """Materialize a message at the end, pending the next sync."""
        if self.get_message(event.message_id) is not None:
            return
        message = TextMessage(
            id=next_local_id(self._messages),
            message_id=event.message_id,
            component_id=event.component_id,
            sender=Sender.AI,
            content=default_content_for(event.ui_tool_type),
            timestamp=now_clock(),
            ui_tool_type=event.ui_tool_type,
            show_dropdown=event.show_dropdown,
        )
        self._messages = self._messages + (message,)

    def on_update_message(self, event: UpdateMessage) -> None:
        def merge(message: Message) -> Message:
            content = DEFAULT_BANNER_TEXT if event.ui_tool_type == UiToolType.BANNER.value else message.content
            return msgspec.structs.replace(
                message,
                ui_tool_type=event.ui_tool_type,
                show_dropdown=event.show_dropdown,
                content=content,
            )

        self._replace_one(event.message_id, merge)

    def on_update_message_content(self, event: UpdateMessageContent) -> None:
        self._replace_one(
            event.message_id,
            lambda message: msgspec.structs.replace(message, content=event.content),
        )

    def on_update_component_data(self, event: UpdateComponentData) -> None:
        self._replace_one(
            event.message_id,
            lambda message: apply_component_data(message, event.component_data),
        )

    def on_delete_message(self, event: DeleteMessage) -> None:
        """Remove every targeted message in one replacement."""
        targets = event.targets
        survivors = tuple(m for m in self._messages if m.message_id not in targets)
        if len(survivors) == len(self._messages):
            return

        self._messages = survivors
        self._orphan_ids = self._orphan_ids - targets
        self._selected_ids = self._selected_ids - targets
        if self._highlighted_id in targets:
            self._highlighted_id = None
        if self.delete_prompt is not None and set(self.delete_prompt.message_ids) & targets:
            self.delete_prompt = None

    # =========================================================================
    # INBOUND: SELECTION AND HIGHLIGHT
    # =========================================================================

    def on_node_selection(self, event: NodeSelection) -> None:
        self._selected_ids = frozenset(event.selected_message_ids)

    def on_highlight_message(self, event: HighlightMessage) -> None:
        self._highlighted_id = event.message_id

    def on_unhighlight_message(self, event: UnhighlightMessage) -> None:
        self._highlighted_id = None

    def on_edit_window_close(self, event: EditWindowClose) -> None:
        self._highlighted_id = None

    def on_scroll_to_message(self, event: ScrollToMessage) -> None:
        self.scroll_to(event.message_id, flash=True)

    def on_enter_test_mode(self, event: EnterTestMode) -> None:
        self._locked = True
        self.delete_prompt = None

    def on_exit_test_mode(self, event: ExitTestMode) -> None:
        self._locked = False

    # =========================================================================
    # OUTBOUND: INTERACTION SIGNALS
    # =========================================================================

    def hover(self, message_id: str) -> None:
        """Pointer entered a message row."""
        if self._interactive(message_id):
            self._channel.publish(HighlightNode(message_id=message_id, source=SOURCE))

    def unhover(self, message_id: str) -> None:
        if self._interactive(message_id):
            self._channel.publish(UnhighlightNode(message_id=message_id, source=SOURCE))

    def click(self, message_id: str) -> None:
        if self._interactive(message_id):
            self._channel.publish(SelectNode(message_id=message_id, source=SOURCE))

    def open_editor(self, message_id: str) -> None:
        if self._interactive(message_id):
            self._channel.publish(OpenEditWindow(message_id=message_id, source=SOURCE))

    def request_delete(self, message_ids: Sequence[str]) -> List[str]:
        """
        Ask the graph to delete the nodes behind these messages, then drop
        the messages from every pane in one batch.

        Not transactional: the graph store and this projector react to the
        same signals independently.

        Returns:
            The ids that were known and therefore requested
        """
        if self._locked:
            return []
        known = [mid for mid in dict.fromkeys(message_ids) if self.get_message(mid) is not None]
        if not known:
            return []

        for message_id in known:
            self._channel.publish(DeleteNode(message_id=message_id, source=SOURCE))
        self._channel.publish(DeleteMessage(message_ids=known, source=SOURCE))
        logger.info(f"Requested deletion of {len(known)} message(s)")
        return known

    def prompt_delete_selection(self) -> Optional[DeletePrompt]:
        """
        Open the delete confirmation for the current selection.

        Label: the single message's content, or "N components".
        """
        if self._locked:
            return None
        selected = [mid for mid in self.order if mid in self._selected_ids]
        if not selected:
            return None

        if len(selected) == 1:
            message = self.get_message(selected[0])
            label = (message.content if message is not None else "") or DEFAULT_COMPONENT_LABEL
        else:
            label = f"{len(selected)} components"

        self.delete_prompt = DeletePrompt(message_ids=tuple(selected), label=label)
        return self.delete_prompt

    def confirm_delete(self) -> List[str]:
        prompt, self.delete_prompt = self.delete_prompt, None
        if prompt is None:
            return []
        return self.request_delete(prompt.message_ids)

    def cancel_delete(self) -> None:
        self.delete_prompt = None

    # =========================================================================
    # RENDERING
    # =========================================================================

    def transcript(
        self,
        boundary: Optional[str] = None,
        messages: Optional[Sequence[Message]] = None,
    ) -> List[TranscriptRow]:
        """
        Render rows for the given messages (default: the main list).

        Args:
            boundary: Active test-mode start message id, if any
            messages: Alternative message list (the frozen test transcript)
        """
        rows: List[TranscriptRow] = []
        for message in self._messages if messages is None else messages:
            mid = message.message_id
            body = render_body(message)
            show_choices = boundary is None or mid == boundary
            rows.append(TranscriptRow(
                kind=RowKind.MESSAGE,
                message=message,
                text=body.text,
                orphan=mid is not None and mid in self._orphan_ids,
                selected=mid is not None and mid in self._selected_ids,
                highlighted=mid is not None and mid == self._highlighted_id,
                flashing=mid is not None and mid == self._flashing_id,
                show_choices=show_choices,
                choices=body.choices if show_choices else (),
                choice_label=body.choice_label,
            ))
            if shows_placeholder(message, boundary):
                rows.append(TranscriptRow(kind=RowKind.PLACEHOLDER, text=PLACEHOLDER_TEXT))
        return rows

    def scroll_to(
        self,
        message_id: str,
        flash: bool = False,
        rows: Optional[List[TranscriptRow]] = None,
    ) -> bool:
        """
        Animate the viewport so the message's row is centered.

        Starting a new scroll cancels the running one. Unknown id: no-op.

        Returns:
            True if an animation was scheduled
        """
        rows = self.transcript() if rows is None else rows
        row_index = next((i for i, row in enumerate(rows) if row.message_id == message_id), -1)
        if row_index < 0:
            return False

        target = self.viewport.target_for(row_index)
        self.scheduler.schedule(
            "scroll",
            make_scroll_step(
                self.viewport,
                target,
                self.config.scroll_min_ms,
                self.config.scroll_max_ms,
            ),
        )
        if flash:
            self._flashing_id = message_id
            self.scheduler.call_later("flash", self.config.flash_ms, self._end_flash)
        return True

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _end_flash(self) -> None:
        self._flashing_id = None

    def _interactive(self, message_id: Optional[str]) -> bool:
        return not self._locked and message_id is not None and self.get_message(message_id) is not None

    def _replace_one(self, message_id: str, merge) -> bool:
        """Swap the message with this id for merge(message). Unknown id: no-op."""
        index = self.index_of(message_id)
        if index < 0:
            return False
        updated = merge(self._messages[index])
        self._messages = self._messages[:index] + (updated,) + self._messages[index + 1:]
        return True

    def __repr__(self) -> str:
        return f"ConversationProjector(messages={len(self._messages)}, orphans={len(self._orphan_ids)})"
