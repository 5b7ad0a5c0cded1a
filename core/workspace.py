"""
THREADLINE WORKSPACE - One Editing Session

Wires the graph store, the conversation projector, the test-mode controller
and the event journal to a single EventChannel, and moves the whole state in
and out of FlowSnapshots.

    channel ──> ThreadlineDB            (topology, components)
            ──> ConversationProjector   (messages, selection, highlight)
            ──> TestModeController      (prefix replay)
            ──> EventJournal            (every event, for debugging)

Restoring rebuilds the graph store and the message list before the first
resolve, then publishes a single syncMessageOrder.
"""
from typing import Any, Dict, List, Optional
import logging

from core.graph_db import ThreadlineDB
from core.projector import ConversationProjector, TranscriptRow
from core.schemas import ComponentData, FlowSnapshot, NodeData, NodePosition, generate_id
from core.test_mode import TestModeController
from infrastructure.config import ThreadlineConfig
from infrastructure.event_bus import EventChannel, NodeSelection, ScrollToMessage
from infrastructure.event_journal import EventJournal
from infrastructure.scheduler import Scheduler
from infrastructure.storage import AutoSaver, SnapshotStore


logger = logging.getLogger("threadline.workspace")


class Workspace:
    """
    Usage:
        ws = Workspace()
        a = ws.add_component("banner", {"banner": {"text": "Welcome"}})
        b = ws.add_component("question", {"question": {"text": "Name?"}})
        ws.db.connect(a.id, b.id)
        ws.projector.order     # [a.message_id, b.message_id]
    """

    def __init__(
        self,
        config: Optional[ThreadlineConfig] = None,
        store: Optional[SnapshotStore] = None,
        channel: Optional[EventChannel] = None,
        scheduler: Optional[Scheduler] = None,
    ):
        self.config = config or ThreadlineConfig()
        self.store = store
        self.channel = channel or EventChannel()

        preview = self.config.preview
        self.journal = EventJournal(
            self.channel,
            max_size=self.config.logging.journal_size,
            log_path=self.config.logging.journal_path,
        )
        self.db = ThreadlineDB(self.channel)
        self.projector = ConversationProjector(
            self.channel,
            scheduler=scheduler or Scheduler(frame_interval_ms=preview.frame_interval_ms),
            config=preview,
        )
        self.test_mode = TestModeController(self.channel, self.projector)
        self.autosaver: Optional[AutoSaver] = None

    @classmethod
    def from_config(cls, config: ThreadlineConfig) -> "Workspace":
        """Workspace with a SnapshotStore at the configured path."""
        store = SnapshotStore(
            config.storage.path,
            key=config.storage.key,
            default_key=config.storage.default_key,
        )
        return cls(config=config, store=store)

    def close(self) -> None:
        self.test_mode.close()
        self.projector.close()
        self.journal.close()

    # =========================================================================
    # CANVAS CONVENIENCES
    # =========================================================================

    def add_component(
        self,
        ui_tool_type: str,
        content: Optional[Dict[str, Any]] = None,
        position: Optional[NodePosition] = None,
        message_id: Optional[str] = None,
    ) -> NodeData:
        """
        Drop a component on the canvas: register the component, create its
        node and materialize its message, all under one sync.
        """
        component = ComponentData(
            id=generate_id("c-"),
            ui_tool_type=ui_tool_type,
            content=content or {},
        )
        node = NodeData.create(
            message_id=message_id or generate_id("msg-"),
            component_id=component.id,
            position=position or NodePosition(),
        )
        with self.db.batch():
            self.db.upsert_component(component)
            self.db.add_node(node)
        return node

    def select(self, message_ids: List[str]) -> None:
        """Canvas selection changed."""
        self.channel.publish(NodeSelection(selected_message_ids=list(message_ids), source="canvas"))

    def scroll_to(self, message_id: str) -> None:
        self.channel.publish(ScrollToMessage(message_id=message_id, source="canvas"))

    def delete_messages(self, message_ids: List[str]) -> List[str]:
        return self.projector.request_delete(message_ids)

    def transcript(self) -> List[TranscriptRow]:
        """Test surface while a session runs, main transcript otherwise."""
        if self.test_mode.is_active:
            return self.test_mode.rows()
        return self.projector.transcript()

    # =========================================================================
    # SNAPSHOTS
    # =========================================================================

    def snapshot(self) -> FlowSnapshot:
        return FlowSnapshot(
            nodes=self.db.get_all_nodes(),
            edges=self.db.get_all_edges(),
            components=self.db.components,
            messages=list(self.projector.messages),
            orphan_message_ids=[mid for mid in self.projector.order if mid in self.projector.orphan_ids],
        )

    def restore(self, snapshot: FlowSnapshot) -> None:
        """Replace the whole state. Any running test session is ended first."""
        self.test_mode.exit()
        self.projector.scheduler.cancel_all()
        self.db.load(snapshot.nodes, snapshot.edges, snapshot.components)
        self.projector.load(snapshot.messages, snapshot.orphan_message_ids)
        self.db.sync()
        logger.info(
            f"Restored snapshot ({len(snapshot.nodes)} nodes, {len(snapshot.edges)} edges, "
            f"{len(snapshot.messages)} messages)"
        )

    def reset(self) -> None:
        """Empty workspace."""
        self.restore(FlowSnapshot())

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def save(self) -> bool:
        return self._require_store().save(self.snapshot())

    def load_saved(self) -> bool:
        """Restore the saved snapshot. Returns False if there is none usable."""
        snapshot = self._require_store().load()
        if snapshot is None:
            return False
        self.restore(snapshot)
        return True

    def save_as_default(self) -> bool:
        return self._require_store().save_default(self.snapshot())

    def reset_to_default(self) -> bool:
        """Restore the default-state snapshot, or empty the workspace if there is none."""
        snapshot = self._require_store().load_default()
        self.restore(snapshot if snapshot is not None else FlowSnapshot())
        return snapshot is not None

    def start_autosave(self) -> Optional[AutoSaver]:
        """Start periodic saving on the running loop (if enabled)."""
        if not self.config.autosave.enabled:
            return None
        if self.autosaver is None:
            self.autosaver = AutoSaver(
                self._require_store(),
                self.snapshot,
                interval_seconds=self.config.autosave.interval_seconds,
            )
        self.autosaver.start()
        return self.autosaver

    def _require_store(self) -> SnapshotStore:
        if self.store is None:
            raise RuntimeError("Workspace has no SnapshotStore")
        return self.store

    def __repr__(self) -> str:
        return f"Workspace(db={self.db!r}, projector={self.projector!r})"
