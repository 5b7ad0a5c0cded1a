"""
THREADLINE INFRASTRUCTURE - System-Level Modules

This package contains infrastructure components:
- config: TOML + environment configuration
- event_bus: Typed event channel between graph store and preview
- event_journal: Ring buffer / JSONL record of channel traffic
- scheduler: Cancellable frame tasks (scroll animation, timers)
- storage: SQLite snapshot persistence and auto-save
"""

from infrastructure.config import ThreadlineConfig, load_config
from infrastructure.event_bus import EventChannel
from infrastructure.event_journal import EventJournal
from infrastructure.scheduler import Scheduler
from infrastructure.storage import AutoSaver, SnapshotStore

__all__ = [
    "ThreadlineConfig",
    "load_config",
    "EventChannel",
    "EventJournal",
    "Scheduler",
    "AutoSaver",
    "SnapshotStore",
]
