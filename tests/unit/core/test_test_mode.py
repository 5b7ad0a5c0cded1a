"""
Unit tests for core/test_mode.py - TestModeController

Tests:
- enter/exit transitions and the frozen prefix transcript
- Unknown start ids leave the session inactive
- Prompt state (select component, exit warning) and its transitions
- Background updates never reach the frozen transcript
- Scroll to the boundary after the configured delay
"""
import pytest

from core.ontology import EventKind, PromptState, TestModeState
from core.projector import ConversationProjector, RowKind
from core.test_mode import TestModeController
from infrastructure.event_bus import AddMessage, DeleteMessage, NodeSelection, SyncMessageOrder
from infrastructure.scheduler import Scheduler, Viewport


@pytest.fixture
def controller(channel, projector):
    for message_id in ("m1", "m2", "m3"):
        channel.publish(AddMessage(message_id=message_id))
    channel.publish(SyncMessageOrder(order=["m1", "m2", "m3"]))
    return TestModeController(channel, projector)


def test_enter_freezes_prefix(controller):
    """
    Verifies:
    - enter(m2) on [m1, m2, m3] gives [m1, m2]
    - state ACTIVE with boundary m2
    """
    assert controller.enter("m2")

    assert controller.state == TestModeState.ACTIVE
    assert controller.start_message_id == "m2"
    assert [m.message_id for m in controller.test_transcript] == ["m1", "m2"]


def test_enter_unknown_id_stays_inactive(controller, recorder):
    assert not controller.enter("ghost")

    assert controller.state == TestModeState.INACTIVE
    assert controller.start_message_id is None
    assert recorder == []


def test_enter_publishes_and_locks_projector(controller, projector, recorder):
    controller.enter("m1")

    assert [e.kind for e in recorder] == [EventKind.ENTER_TEST_MODE]
    assert recorder[0].message_id == "m1"
    assert projector.interaction_locked


def test_exit_clears_everything(controller, projector, recorder):
    controller.enter("m3")
    controller.type_input("hello")

    assert controller.exit()

    assert controller.state == TestModeState.INACTIVE
    assert controller.start_message_id is None
    assert controller.test_transcript == ()
    assert controller.input_buffer == ""
    assert recorder[-1].kind == EventKind.EXIT_TEST_MODE
    assert not projector.interaction_locked
    assert projector.order == ["m1", "m2", "m3"]


def test_exit_while_inactive_is_noop(controller, recorder):
    assert not controller.exit()
    assert recorder == []


def test_reenter_restarts_from_new_boundary(controller):
    controller.enter("m1")
    controller.enter("m3")

    assert controller.start_message_id == "m3"
    assert len(controller.test_transcript) == 3


def test_background_updates_do_not_touch_frozen_transcript(controller, channel, projector):
    controller.enter("m2")
    frozen = controller.test_transcript

    channel.publish(AddMessage(message_id="m4"))
    channel.publish(DeleteMessage(message_id="m1"))
    channel.publish(SyncMessageOrder(order=["m4", "m3", "m2"]))
    channel.publish(NodeSelection(selected_message_ids=["m3"]))

    assert controller.test_transcript is frozen
    assert [m.message_id for m in controller.test_transcript] == ["m1", "m2"]
    assert projector.order == ["m4", "m3", "m2"]
    assert controller.is_active


def test_rows_apply_boundary_rules(controller):
    assert controller.rows() == []

    controller.enter("m2")
    rows = controller.rows()

    assert [(r.kind, r.message_id) for r in rows] == [
        (RowKind.MESSAGE, "m1"),
        (RowKind.PLACEHOLDER, None),
        (RowKind.MESSAGE, "m2"),
    ]


# =============================================================================
# PROMPTS
# =============================================================================

def test_request_start_without_selection_prompts(controller):
    assert not controller.request_start()

    assert controller.prompt == PromptState.SELECT_COMPONENT
    assert controller.state == TestModeState.INACTIVE


def test_pending_prompt_resolves_on_selection(controller, channel):
    controller.request_start()

    channel.publish(NodeSelection(selected_message_ids=["m2", "m1"]))

    assert controller.prompt == PromptState.NONE
    assert controller.start_message_id == "m2"


def test_selection_without_pending_prompt_does_not_start(controller, channel):
    channel.publish(NodeSelection(selected_message_ids=["m2"]))

    assert controller.state == TestModeState.INACTIVE


def test_request_start_uses_first_selected_in_order(controller, channel):
    channel.publish(NodeSelection(selected_message_ids=["m3", "m2"]))

    assert controller.request_start()
    assert controller.start_message_id == "m2"


def test_exit_warning_flow(controller):
    controller.request_exit()
    assert controller.prompt == PromptState.NONE  # nothing to warn about

    controller.enter("m2")
    controller.request_exit()
    assert controller.prompt == PromptState.EXIT_WARNING
    assert controller.is_active

    controller.dismiss_prompt()
    assert controller.prompt == PromptState.NONE
    assert controller.is_active

    controller.request_exit()
    assert controller.confirm_exit()
    assert controller.prompt == PromptState.NONE
    assert controller.state == TestModeState.INACTIVE


def test_type_input_only_while_active(controller):
    controller.type_input("ignored")
    assert controller.input_buffer == ""

    controller.enter("m1")
    controller.type_input("Alice")
    assert controller.input_buffer == "Alice"


# =============================================================================
# SCROLL
# =============================================================================

def test_enter_scrolls_to_boundary_after_delay(channel):
    now = {"t": 0.0}
    scheduler = Scheduler(clock=lambda: now["t"])
    projector = ConversationProjector(channel, scheduler=scheduler, viewport=Viewport(height=100, row_height=100))
    for message_id in ("m1", "m2", "m3"):
        channel.publish(AddMessage(message_id=message_id))
    controller = TestModeController(channel, projector)

    controller.enter("m3")
    assert scheduler.is_active("test-scroll")

    scheduler.advance(50.0)
    assert not scheduler.is_active("scroll")

    now["t"] = 100.0
    scheduler.advance(100.0)
    assert scheduler.is_active("scroll")

    for t in range(116, 1000, 16):
        scheduler.advance(float(t))
    # rows: m1, ph, m2, ph, m3 -> row 4
    assert projector.viewport.scroll_top == pytest.approx(400.0)


def test_exit_cancels_pending_scroll(controller, projector):
    controller.enter("m2")
    controller.exit()

    assert not projector.scheduler.is_active("test-scroll")
