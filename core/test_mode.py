"""
THREADLINE TEST MODE - Prefix Replay Sessions

Lets the author "play" the conversation up to a chosen message without
touching the main transcript.

State machine:
    INACTIVE --enter(id in order)--> ACTIVE(start_id) --exit()--> INACTIVE

The prompt state (select-a-component, exit warning) is orthogonal: it can
be shown in either session state, and clearing it never changes the
session.

While ACTIVE the test transcript is frozen: addMessage, deleteMessage,
syncMessageOrder and nodeSelection keep updating the main projector in the
background but never touch the snapshot taken on entry.
"""
from typing import Optional, Tuple
import logging

from core.ontology import EventKind, PromptState, TestModeState
from core.projector import ConversationProjector, TranscriptRow
from core.schemas import Message
from infrastructure.config import PreviewConfig
from infrastructure.event_bus import EventChannel, EnterTestMode, ExitTestMode, NodeSelection


logger = logging.getLogger("threadline.test_mode")

SOURCE = "test_mode"


class TestModeController:
    """
    Owns one test session at a time.

    Usage:
        controller = TestModeController(channel, projector)
        controller.enter("m2")          # transcript [m1, m2]
        controller.test_transcript
        controller.exit()
    """
    __test__ = False  # not a pytest class

    def __init__(
        self,
        channel: EventChannel,
        projector: ConversationProjector,
        config: Optional[PreviewConfig] = None,
    ):
        self.config = config or projector.config
        self._channel = channel
        self._projector = projector

        self._state = TestModeState.INACTIVE
        self._start_id: Optional[str] = None
        self._transcript: Tuple[Message, ...] = ()
        self.input_buffer = ""
        self.prompt = PromptState.NONE

        channel.subscribe(EventKind.NODE_SELECTION, self.on_node_selection)

    def close(self) -> None:
        self._channel.unsubscribe(EventKind.NODE_SELECTION, self.on_node_selection)

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def state(self) -> TestModeState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == TestModeState.ACTIVE

    @property
    def start_message_id(self) -> Optional[str]:
        """Boundary message id; None whenever INACTIVE."""
        return self._start_id

    @property
    def test_transcript(self) -> Tuple[Message, ...]:
        return self._transcript

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def enter(self, start_message_id: str) -> bool:
        """
        Start a session ending at start_message_id (inclusive).

        No-op (stays as is) when the id is not in the current order.
        Entering while ACTIVE restarts from the new boundary.

        Returns:
            True if a session started
        """
        index = self._projector.index_of(start_message_id)
        if index < 0:
            logger.debug(f"Cannot enter test mode at unknown message {start_message_id}")
            return False

        self._state = TestModeState.ACTIVE
        self._start_id = start_message_id
        self._transcript = self._projector.messages[: index + 1]
        self.input_buffer = ""
        self.prompt = PromptState.NONE

        logger.info(f"Entered test mode at {start_message_id} ({len(self._transcript)} message(s))")
        self._channel.publish(EnterTestMode(message_id=start_message_id, source=SOURCE))
        self._scroll_to_boundary()
        return True

    def exit(self) -> bool:
        """
        End the session. Never mutates the main transcript.

        Returns:
            False if no session was running
        """
        if not self.is_active:
            self.prompt = PromptState.NONE
            return False

        start_id = self._start_id
        self._state = TestModeState.INACTIVE
        self._start_id = None
        self._transcript = ()
        self.input_buffer = ""
        self.prompt = PromptState.NONE
        self._projector.scheduler.cancel("test-scroll")

        logger.info("Exited test mode")
        self._channel.publish(ExitTestMode(message_id=start_id, source=SOURCE))
        return True

    # =========================================================================
    # UI GESTURES
    # =========================================================================

    def request_start(self) -> bool:
        """
        The chat input got focus.

        With nothing selected the author is asked to pick a component;
        otherwise the session starts at the first selected message in
        transcript order.
        """
        if self.is_active:
            return False
        selected = [mid for mid in self._projector.order if mid in self._projector.selected_ids]
        if not selected:
            self.prompt = PromptState.SELECT_COMPONENT
            return False
        return self.enter(selected[0])

    def on_node_selection(self, event: NodeSelection) -> None:
        """A pending select-a-component prompt resolves on the next selection."""
        if self.is_active or self.prompt != PromptState.SELECT_COMPONENT:
            return
        if event.selected_message_ids:
            self.prompt = PromptState.NONE
            self.enter(event.selected_message_ids[0])

    def request_exit(self) -> None:
        """Clicked outside the input while testing: warn first."""
        if self.is_active:
            self.prompt = PromptState.EXIT_WARNING

    def confirm_exit(self) -> bool:
        return self.exit()

    def dismiss_prompt(self) -> None:
        self.prompt = PromptState.NONE

    def type_input(self, text: str) -> None:
        if self.is_active:
            self.input_buffer = text

    # =========================================================================
    # RENDERING
    # =========================================================================

    def rows(self) -> list[TranscriptRow]:
        """Rows of the test surface (frozen transcript, boundary rules applied)."""
        if not self.is_active:
            return []
        return self._projector.transcript(boundary=self._start_id, messages=self._transcript)

    def _scroll_to_boundary(self) -> None:
        start_id = self._start_id
        rows = self.rows()

        def scroll() -> None:
            self._projector.scroll_to(start_id, rows=rows)

        self._projector.scheduler.call_later("test-scroll", self.config.scroll_delay_ms, scroll)

    def __repr__(self) -> str:
        return f"TestModeController(state={self._state.value}, start={self._start_id})"
