"""
THREADLINE ONTOLOGY - The Dictionary of the System

If schemas.py is the Grammar (how we structure entities),
ontology.py is the Dictionary (the words we can use).

This module defines:
- Enums: The vocabulary (Sender, MessageType, UiToolType, EventKind)
- Test-mode states: One explicit state enum plus the orthogonal prompt state
- Default preview strings used when a component has no text yet

Key Principle: impossible combinations are unrepresentable.
Test mode is ONE enum value plus an optional boundary id, never a set of
independent booleans.
"""
from enum import Enum
from typing import Literal, Optional


# =============================================================================
# ENUMS (The Vocabulary)
# =============================================================================

class Sender(str, Enum):
    """Who authored a transcript entry."""
    USER = "user"
    AI = "ai"


class MessageType(str, Enum):
    """Message variant tags (msgspec tag values)."""
    TEXT = "text"
    CARD = "card"
    PILLS = "pills"


class UiToolType(str, Enum):
    """Component kinds the authoring tools can produce."""
    MESSAGE = "message"
    QUESTION = "question"
    MULTI_SELECT = "multiSelect"
    BANNER = "banner"


class EventKind(str, Enum):
    """Event kinds carried by the event channel (tag values on the wire)."""
    # Topology -> preview
    SYNC_MESSAGE_ORDER = "syncMessageOrder"
    ADD_MESSAGE = "addMessage"
    UPDATE_MESSAGE = "updateMessage"
    UPDATE_MESSAGE_CONTENT = "updateMessageContent"
    UPDATE_COMPONENT_DATA = "updateComponentData"
    DELETE_MESSAGE = "deleteMessage"
    # Preview -> canvas
    DELETE_NODE = "deleteNode"
    SELECT_NODE = "selectNode"
    HIGHLIGHT_NODE = "highlightNode"
    UNHIGHLIGHT_NODE = "unhighlightNode"
    OPEN_EDIT_WINDOW = "openEditWindow"
    # Canvas -> preview
    NODE_SELECTION = "nodeSelection"
    HIGHLIGHT_MESSAGE = "highlightMessage"
    UNHIGHLIGHT_MESSAGE = "unhighlightMessage"
    SCROLL_TO_MESSAGE = "scrollToMessage"
    EDIT_WINDOW_CLOSE = "editWindowClose"
    # Test mode boundary crossing
    ENTER_TEST_MODE = "enterTestMode"
    EXIT_TEST_MODE = "exitTestMode"


class TestModeState(str, Enum):
    """
    Test-mode session states.

    INACTIVE -> ACTIVE -> INACTIVE. There are no other states; the boundary
    message id lives next to the state on the controller and is only set
    while ACTIVE.
    """
    __test__ = False  # not a pytest class

    INACTIVE = "inactive"
    ACTIVE = "active"


class PromptState(str, Enum):
    """UI prompt shown next to the preview (orthogonal to TestModeState)."""
    NONE = "none"
    SELECT_COMPONENT = "select_component"   # input focused with nothing selected
    EXIT_WARNING = "exit_warning"           # clicked outside while testing


# =============================================================================
# Type Aliases
# =============================================================================

SenderValue = Literal["user", "ai"]


# =============================================================================
# PREVIEW DEFAULTS
# =============================================================================

DEFAULT_BANNER_TEXT = "New banner"
DEFAULT_QUESTION_TEXT = "New question"
DEFAULT_MULTI_SELECT_TEXT = "New multi-select question"
DEFAULT_MESSAGE_TEXT = "New component added"
DEFAULT_COMPONENT_LABEL = "Component"
PLACEHOLDER_TEXT = "User response placeholder"

SNAPSHOT_VERSION = "1.0.0"


def default_content_for(ui_tool_type: Optional[str]) -> str:
    """Preview text for a freshly materialized message."""
    if ui_tool_type == UiToolType.BANNER.value:
        return DEFAULT_BANNER_TEXT
    return DEFAULT_MESSAGE_TEXT
